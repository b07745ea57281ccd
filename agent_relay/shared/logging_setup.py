"""Process-wide logging: a stderr handler plus an optional NDJSON debug trace."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

ROOT_LOGGER = "agent_relay"


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(verbose: bool = False, trace_path: Path | None = None) -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(
        logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(console)

    if trace_path is not None:
        trace_path.parent.mkdir(parents=True, exist_ok=True)
        trace = logging.FileHandler(trace_path, encoding="utf-8")
        trace.setLevel(logging.DEBUG)
        trace.setFormatter(JsonLineFormatter())
        logger.addHandler(trace)
    return logger
