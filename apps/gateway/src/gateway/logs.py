import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(verbose: bool) -> logging.Logger:
    """Configure process-wide logging once and return the gateway's root logger.

    Components never look this logger up themselves; callers hand out children of
    it through constructors.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )
    logger = logging.getLogger("gateway")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    return logger
