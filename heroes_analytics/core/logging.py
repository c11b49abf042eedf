import logging

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Compliance audit channel; receives field names and pattern classes only
AUDIT_LOGGER_NAME = 'compliance_audit'


def configure_logging(level: str = "INFO") -> None:
    """Attach a stream handler to the package and audit loggers once."""
    for name in ("heroes_analytics", AUDIT_LOGGER_NAME):
        logger = logging.getLogger(name)
        logger.setLevel(level.upper())

        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)


def get_audit_logger() -> logging.Logger:
    return logging.getLogger(AUDIT_LOGGER_NAME)
