import logging
from pathlib import Path
from typing import Optional

from .config import Settings, settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
PACKAGE_LOGGER = "magic_ledger"


def _handler_named(logger: logging.Logger, name: str) -> Optional[logging.Handler]:
    return next((h for h in logger.handlers if h.get_name() == name), None)


def configure_logging(config: Settings = settings) -> logging.Logger:
    """Attach console and optional file output to the ``magic_ledger`` logger.

    Safe to call more than once: handlers are looked up by name, so a reload
    under uvicorn does not double every line.
    """
    level = logging.getLevelName((config.log_level or "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    logger.propagate = False
    formatter = logging.Formatter(LOG_FORMAT)

    if _handler_named(logger, "console") is None:
        console = logging.StreamHandler()
        console.set_name("console")
        console.setFormatter(formatter)
        logger.addHandler(console)

    if config.log_file and _handler_named(logger, "ledger_file") is None:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        ledger_file = logging.FileHandler(log_path, encoding="utf-8")
        ledger_file.set_name("ledger_file")
        ledger_file.setFormatter(formatter)
        logger.addHandler(ledger_file)

    # Driver heartbeats and pool events are noise next to ledger lines
    logging.getLogger("pymongo").setLevel(max(level, logging.WARNING))
    return logger
