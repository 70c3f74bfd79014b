import logging

from trickle_mail.logger import get_logger


def test_get_logger_namespaces_and_reuses():
    logger = get_logger("Scheduler")
    assert logger.name == "trickle_mail.Scheduler"
    assert get_logger("Scheduler") is logger
    assert get_logger("trickle_mail.core") is logging.getLogger("trickle_mail.core")
    assert get_logger().name == "trickle_mail.TrickleMail"
