import json
import logging
import sys
from decimal import Decimal
from uuid import uuid4

from affiliate_ledger.logging_config import (
    HANDLER_NAME,
    PACKAGE_LOGGER,
    LedgerJsonFormatter,
    setup_logging,
)


class TestJsonLogging:
    """Tests for the JSON log format."""

    def test_extra_fields_become_keys(self):
        user_id = uuid4()
        record = logging.LogRecord(
            "affiliate_ledger.commission", logging.WARNING, __file__, 1,
            "Rejected duplicate purchase %s", ("order-1",), None,
        )
        record.user_id = user_id
        record.purchase_id = "order-1"
        record.amount = Decimal("12.50")

        entry = json.loads(LedgerJsonFormatter().format(record))

        assert entry["level"] == "WARNING"
        assert entry["logger"] == "affiliate_ledger.commission"
        assert entry["message"] == "Rejected duplicate purchase order-1"
        assert entry["user_id"] == str(user_id)
        assert entry["purchase_id"] == "order-1"
        assert entry["amount"] == "12.50"
        assert "args" not in entry
        assert "exception" not in entry

    def test_exception_text_is_included(self):
        try:
            raise RuntimeError("rail down")
        except RuntimeError:
            record = logging.LogRecord(
                "affiliate_ledger.withdrawals", logging.ERROR, __file__, 1, "failed", None,
                exc_info=sys.exc_info(),
            )

        entry = json.loads(LedgerJsonFormatter().format(record))

        assert "RuntimeError: rail down" in entry["exception"]

    def test_setup_installs_one_handler(self):
        logger = logging.getLogger(PACKAGE_LOGGER)

        first = setup_logging("debug")
        second = setup_logging("warning")

        assert first is second
        assert [h.get_name() for h in logger.handlers].count(HANDLER_NAME) == 1
        assert logger.level == logging.WARNING
