"""Logging setup — called once by the CLI.

Console output goes through rich on stderr (WARNING by default, DEBUG with
``--debug``); the log file under the state directory always gets full detail.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

_FMT_FILE = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"


def setup_logging(debug: bool = False, log_file: Optional[Path] = None) -> None:
    level = logging.DEBUG if debug else _parse_level(os.environ.get("FP_INSTALLER_LOG_LEVEL"))

    console = RichHandler(
        console=Console(stderr=True),
        show_path=debug,
        rich_tracebacks=debug,
        markup=False,
    )
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.addHandler(console)
    effective_level = level

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            logging.getLogger(__name__).warning("Log file %s unavailable: %s", log_file, e)
        else:
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
            root.addHandler(fh)
            effective_level = logging.DEBUG

    root.setLevel(effective_level)
    logging.raiseExceptions = False


def _parse_level(level: Optional[str]) -> int:
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
