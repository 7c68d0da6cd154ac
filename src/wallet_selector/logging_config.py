"""
Log output for the wallet selector.

Human-readable output goes through rich on stderr. With ``--json-logs``
each record becomes one JSON object per line, carrying the exchange fields
the correlator attaches through ``extra``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

EXCHANGE_FIELDS = ("exchange_id", "protocol", "wallet_id")


class JsonFormatter(logging.Formatter):
    """Formats a record as a single JSON line.

    The timestamp is the time the record was created, in UTC.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(
            (name, record.__dict__[name])
            for name in EXCHANGE_FIELDS
            if record.__dict__.get(name) is not None
        )
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Install a single handler on the ``wallet_selector`` logger.

    Human output goes to stderr so it never mixes with command results
    printed on stdout.

    Args:
        level: Level name; unknown names fall back to INFO.
        json_output: Emit JSON lines instead of rich output.
    """
    if json_output:
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
    else:
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )

    logger = logging.getLogger("wallet_selector")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers = [handler]
