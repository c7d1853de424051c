import logging

from app.core.config import settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)
    # SQL echo is noisy at INFO; keep engine logs opt-in
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
