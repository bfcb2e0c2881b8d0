"""
Tests for structured billing logs (billing_kernel/logging_config.py).

Covers:
- JSON lines for engine and service events
- Typed error fields on failure records
- Ids bound by LogContext
- configure_logging / reset_logging
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from billing_engines.change_detection import QUOTE_TRACKED_FIELDS, EditSession
from billing_engines.sequencer import OrderKeySequencer
from billing_engines.waterfall import WaterfallAllocator, WaterfallMilestone
from billing_kernel.exceptions import (
    AuditMutationFailedError,
    ScheduleAlreadyReconciledError,
)
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture
def log_stream():
    """Send billing logs to a fresh stream, then restore the suite's setup."""
    reset_logging()
    stream = StringIO()
    configure_logging(level=logging.DEBUG, handler=logging.StreamHandler(stream))
    yield stream
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _records(stream: StringIO, message: str | None = None) -> list[dict]:
    parsed = [json.loads(line) for line in stream.getvalue().splitlines() if line]
    if message is None:
        return parsed
    return [r for r in parsed if r["message"] == message]


def _edit(quote, **changes):
    form = {f.name: getattr(quote, f.name) for f in QUOTE_TRACKED_FIELDS}
    form.update(changes)
    edit = EditSession(quote, form)
    edit.set_attribution("jd")
    edit.set_source("phone")
    return edit


class TestBillingEvents:
    """Tests for the JSON shape of engine and service events."""

    def test_reorder_renumbered(self, log_stream):
        OrderKeySequencer(gap=10).reorder(
            ordered=[("a", 10), ("b", 11), ("c", 12)], source_index=2, destination_index=1,
        )

        (record,) = _records(log_stream, "reorder_renumbered")
        assert record["level"] == "INFO"
        assert record["logger"] == "billing_kernel.engines.sequencer"
        assert record["collection_size"] == 3
        assert record["destination_index"] == 1
        assert record["gap"] == 10
        assert datetime.fromisoformat(record["ts"]).tzinfo is not None

    def test_waterfall_overpayment(self, log_stream):
        deposit = WaterfallMilestone(milestone_id=uuid4(), sequence_index=0, amount_cents=5000)

        WaterfallAllocator().allocate([deposit], 6500)

        (record,) = _records(log_stream, "waterfall_overpayment")
        assert record["level"] == "WARNING"
        assert record["total_due_cents"] == 5000
        assert record["total_paid_cents"] == 6500
        assert record["unallocated_credit_cents"] == 1500

    def test_audit_mutation_failed(self, log_stream, change_audit_service, quote):
        def mutate(candidates):
            raise RuntimeError("disk full")

        with pytest.raises(AuditMutationFailedError):
            change_audit_service.commit(
                _edit(quote, guest_count=140), "EventQuote", quote.id, mutate,
            )

        (record,) = _records(log_stream, "audit_mutation_failed")
        assert record["level"] == "CRITICAL"
        assert record["entity_id"] == str(quote.id)
        assert record["record_count"] == 1
        assert record["exc_type"] == "AuditMutationFailedError"
        assert record["exc_code"] == "AUDIT_MUTATION_FAILED"
        assert record["exc_entity_type"] == "EventQuote"
        assert record["exc_reason"] == "disk full"
        assert "disk full" in record["traceback"]

    def test_regeneration_refusal_carries_error_fields(self, log_stream, schedule_service):
        document_id = uuid4()
        schedule_service.generate_schedule(document_id, 10000, 45)
        schedule_service.record_payment(document_id, 1000)

        with pytest.raises(ScheduleAlreadyReconciledError):
            schedule_service.regenerate_schedule(document_id, 12000, 20)

        (record,) = _records(log_stream, "schedule_regeneration_refused")
        assert record["exc_code"] == "SCHEDULE_ALREADY_RECONCILED"
        assert record["exc_allocated_cents"] == 1000
        assert len(record["exc_milestone_ids"]) == 1

    def test_ids_amounts_and_sets_serialized(self, log_stream):
        schedule_id = uuid4()
        get_logger("services.schedule").info(
            "payment_summary_built",
            extra={
                "schedule_id": schedule_id,
                "percent_paid": Decimal("62.50"),
                "tiers": {"SHORT", "RUSH"},
            },
        )

        (record,) = _records(log_stream, "payment_summary_built")
        assert record["schedule_id"] == str(schedule_id)
        assert record["percent_paid"] == "62.50"
        assert record["tiers"] == ["RUSH", "SHORT"]

    def test_info_record_has_no_error_fields(self, log_stream):
        get_logger("engines.milestones").info("milestones_planned")

        (record,) = _records(log_stream)
        assert not [key for key in record if key.startswith("exc_")]
        assert "traceback" not in record


class TestLogContext:
    """Tests for ids bound around a unit of work."""

    def test_bind_sets_and_restores(self):
        document_id = uuid4()
        with LogContext.bind(document_id=document_id):
            assert LogContext.get_all() == {"document_id": str(document_id)}
        assert LogContext.get_all() == {}

    def test_nested_bind_restores_outer(self):
        with LogContext.bind(entity_id="quote-1", document_id="doc-1"):
            with LogContext.bind(entity_id="quote-2"):
                assert LogContext.get_all() == {
                    "document_id": "doc-1", "entity_id": "quote-2",
                }
            assert LogContext.get_all()["entity_id"] == "quote-1"

    def test_none_leaves_field_unchanged(self):
        with LogContext.bind(entity_id="quote-1"):
            with LogContext.bind(entity_id=None, document_id=None):
                assert LogContext.get_all() == {"entity_id": "quote-1"}

    def test_unknown_field_rejected(self):
        with pytest.raises(KeyError):
            with LogContext.bind(invoice_id="inv-1"):
                pass

    def test_restored_after_error(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(entity_id="quote-1"):
                raise RuntimeError("boom")
        assert LogContext.get_all() == {}

    def test_commit_records_carry_entity_id(self, log_stream, change_audit_service, quote):
        change_audit_service.commit_to_entity(_edit(quote, guest_count=140), quote)
        get_logger("services.change_audit").info("after_commit")

        (appended,) = _records(log_stream, "change_records_appended")
        assert appended["entity_id"] == str(quote.id)
        (after,) = _records(log_stream, "after_commit")
        assert "entity_id" not in after


class TestConfigureLogging:
    """Tests for handler installation."""

    def test_second_call_is_noop(self, log_stream):
        other = StringIO()
        configure_logging(handler=logging.StreamHandler(other))

        get_logger("services.schedule").info("payment_recorded")

        assert len(_records(log_stream, "payment_recorded")) == 1
        assert other.getvalue() == ""

    def test_reset_keeps_foreign_handlers(self, log_stream):
        root = logging.getLogger("billing_kernel")
        foreign = logging.StreamHandler(StringIO())
        root.addHandler(foreign)
        try:
            reset_logging()
            assert root.handlers == [foreign]
        finally:
            root.removeHandler(foreign)

    def test_default_level_drops_debug(self):
        reset_logging()
        stream = StringIO()
        configure_logging(handler=logging.StreamHandler(stream))
        try:
            logger = get_logger("engines.waterfall")
            logger.debug("waterfall_line")
            logger.info("waterfall_done")
        finally:
            reset_logging()
            configure_logging(level=logging.DEBUG)

        assert [r["message"] for r in _records(stream)] == ["waterfall_done"]

    def test_installed_handler_formats_json(self, log_stream):
        root = logging.getLogger("billing_kernel")
        assert any(isinstance(h.formatter, StructuredFormatter) for h in root.handlers)

    def test_get_logger_namespaced(self):
        assert get_logger("services.schedule").name == "billing_kernel.services.schedule"

    def test_engine_trace_shares_namespace(self, log_stream):
        OrderKeySequencer().reorder(
            ordered=[("a", 10), ("b", 20)], source_index=1, destination_index=0,
        )

        loggers = {r["logger"] for r in _records(log_stream)}
        assert "billing_kernel.engines.tracer" in loggers
