"""Logging utilities for the trickle mail service.

The actual logging setup (level, handlers, format) is configured via
``logging.basicConfig()`` in the entry points (``server.py`` and the
``serve`` CLI command) to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from trickle_mail.logger import get_logger

        logger = get_logger("Scheduler")
        logger.info("Job %s scheduled", job_id)
"""

import logging


def get_logger(name: str = "TrickleMail") -> logging.Logger:
    """Retrieve a logger under the ``trickle_mail`` hierarchy.

    Args:
        name: Logger name suffix. Defaults to "TrickleMail".

    Returns:
        A ``logging.Logger`` instance named ``trickle_mail.<name>``.
    """
    if name.startswith("trickle_mail"):
        return logging.getLogger(name)
    return logging.getLogger(f"trickle_mail.{name}")
