import logging

from previz.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Root logging setup shared by the API and the CLI."""
    level = (level or get_settings().log_level).upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # basicConfig is a no-op once handlers exist; the level still applies
    logging.getLogger().setLevel(level)
