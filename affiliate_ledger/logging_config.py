import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

PACKAGE_LOGGER = "affiliate_ledger"
HANDLER_NAME = "affiliate-ledger-json"

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class LedgerJsonFormatter(logging.Formatter):
    """One JSON object per line.

    Fields passed with ``extra=`` (``user_id``, ``purchase_id``,
    ``withdrawal_id``, ``earning_ids``) become top-level keys. UUIDs and
    Decimals are written as strings.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, value) for key, value in vars(record).items() if key not in _STANDARD_ATTRS
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


def setup_logging(level: Optional[str] = None) -> logging.Handler:
    """Send the package's logs to stdout as JSON; repeated calls only update the level."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel((level or "INFO").upper())

    for handler in logger.handlers:
        if handler.get_name() == HANDLER_NAME:
            return handler

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(LedgerJsonFormatter())
    logger.addHandler(handler)
    return handler
