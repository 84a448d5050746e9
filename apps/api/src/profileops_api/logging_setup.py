from __future__ import annotations

import logging
import sys
from pathlib import Path

_QUIET_THIRD_PARTY = ("httpx", "httpcore", "uvicorn.access")


class _ConsoleNoiseFilter(logging.Filter):
    """Keep service logs; let chatty HTTP libraries through only at WARNING+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("profileops_api"):
            return True
        if record.name.startswith(_QUIET_THIRD_PARTY):
            return record.levelno >= logging.WARNING
        return True


def setup_logging(*, level: str | int = logging.INFO, log_file: str | Path | None = None) -> None:
    """Configure root logging once, before the app starts serving."""
    root = logging.getLogger()
    root.setLevel(level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(path), encoding="utf-8")
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)

    logging.captureWarnings(True)
