"""Rate-paced bulk email delivery with job tracking and event classification.

This package distributes one authored email to many recipients as discrete
messages, spaced by a configurable interval to respect provider rate limits:

- Fan-out of a submitted job into one scheduled delivery trigger per recipient
- Delivery worker with bounded retry and atomic per-job progress counters
- Ingestion of provider delivery notifications (SES-style events)
- Classification of bounces, complaints, rejects and engagement events
- Per-job bounce and complaint metrics with threshold warnings
- FastAPI REST API, Prometheus metrics and a click command line

Example:
    Basic usage with the FastAPI application::

        from trickle_mail.core import TrickleCore
        from trickle_mail.api import create_app

        core = TrickleCore(db_path="/data/trickle.db")
        app = create_app(core, api_token="secret")
"""

__version__ = "0.4.0"
