"""
Logging setup shared by the library and the scripts.
"""

import logging

LOG_FORMAT  = "%(asctime)s  [%(levelname)s]  %(name)-12s  %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that drown out ours at DEBUG
NOISY_LOGGERS = ("aioice", "aiortc", "aiortc.rtcpeerconnection",
                 "aiortc.rtcdtlstransport", "aiortc.rtcicetransport",
                 "websockets")


def configure_logging(level: int = logging.INFO) -> None:
    """Configure the root logger once and quiet down noisy libraries."""
    if logging.getLogger().handlers:
        # Respect whatever the host application already set up.
        return

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT)
    for _quiet in NOISY_LOGGERS:
        logging.getLogger(_quiet).setLevel(logging.WARNING)
