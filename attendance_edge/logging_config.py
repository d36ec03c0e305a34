"""
Logging configuration utilities.

All components log through named loggers (``Lane-<camera>``,
``EventEmitter``, ``Outbox`` ...) that propagate to the root logger
configured here.
"""

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
QUIET_LOGGERS = ("urllib3", "insightface", "paho")


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """Route all loggers to stderr and, when ``log_file`` is given, to that file as well.

    Calling it again replaces the previous handlers, so ``main`` can apply
    the CLI level after defaults were set.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
