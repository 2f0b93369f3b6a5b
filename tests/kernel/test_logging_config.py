"""Tests for structured logging and observability sinks."""

import json
import logging
from decimal import Decimal
from io import StringIO

import pytest

from budget_kernel.domain.values import Phase
from budget_kernel.exceptions import DuplicateApprovalRequestError
from budget_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)
from budget_kernel.observability import LoggingObservability, RecordingObservability
from budget_services import BatchEditRequest, TitleCreate

from tests.conftest import TEST_ACTOR_ID, TEST_APPROVER_ID, TEST_PROJECT_ID


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


class TestStructuredFormatter:
    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_all_logs(stream)[0]
        assert record["level"] == "INFO"
        assert record["event"] == "hello"
        assert record["logger"] == "budget_kernel.test"
        assert "ts" in record

    def test_decimal_and_enum_extras_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("priced", extra={"total": Decimal("2100.00"), "phase": Phase.BIDDING})

        record = _parse_all_logs(stream)[0]
        assert record["total"] == "2100.00"
        assert record["phase"] == "BIDDING"

    def test_bound_ids_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        with LogContext.bind(project_id=TEST_PROJECT_ID, budget_id="PTO0000000002"):
            get_logger("test").info("with_context")

        record = _parse_all_logs(stream)[0]
        assert record["project_id"] == TEST_PROJECT_ID
        assert record["budget_id"] == "PTO0000000002"

    def test_kernel_exception_fields_extracted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise DuplicateApprovalRequestError(
                "PTO0000000001", "BIDDING_TO_CONTRACTUAL", "APB0000000001"
            )
        except DuplicateApprovalRequestError:
            get_logger("test").error("request_failed", exc_info=True)

        record = _parse_all_logs(stream)[0]
        assert record["exc_code"] == "DUPLICATE_APPROVAL_REQUEST"
        assert record["exc_type"] == "DuplicateApprovalRequestError"
        assert record["exc_existing_request_id"] == "APB0000000001"
        assert "traceback" in record

    def test_debug_hidden_at_default_level(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.debug("second")

        assert [r["event"] for r in _parse_all_logs(stream)] == ["first"]


class TestLogContext:
    def test_nested_bind_restores_outer_ids(self):
        with LogContext.bind(actor_id="outer"):
            with LogContext.bind(actor_id="inner", project_id=TEST_PROJECT_ID):
                assert LogContext.current() == {"actor_id": "inner", "project_id": TEST_PROJECT_ID}
            assert LogContext.current() == {"actor_id": "outer"}
        assert LogContext.current() == {}

    def test_none_values_are_not_bound(self):
        with LogContext.bind(actor_id=TEST_ACTOR_ID, request_id=None):
            assert LogContext.current() == {"actor_id": TEST_ACTOR_ID}

    def test_unknown_field_refused(self):
        with pytest.raises(ValueError):
            with LogContext.bind(tenant_id="x"):
                pass

    def test_for_budget(self, draft_budget):
        with LogContext.for_budget(draft_budget, actor_id=TEST_ACTOR_ID) as bound:
            assert bound == {
                "actor_id": TEST_ACTOR_ID,
                "project_id": TEST_PROJECT_ID,
                "group_id": draft_budget.group_id,
                "budget_id": draft_budget.budget_id,
            }


class TestConfigureLogging:
    def test_idempotent(self):
        h1, _ = _make_handler()
        installed = configure_logging(handler=h1)
        h2, _ = _make_handler()
        again = configure_logging(handler=h2, level=logging.ERROR)

        handlers = logging.getLogger("budget_kernel").handlers
        assert installed is h1 and again is h1
        assert h1 in handlers and h2 not in handlers
        assert logging.getLogger("budget_kernel").level == logging.INFO

    def test_reset_removes_only_structured_handlers(self):
        plain = logging.NullHandler()
        root = logging.getLogger("budget_kernel")
        root.addHandler(plain)
        try:
            h1, _ = _make_handler()
            configure_logging(handler=h1)
            reset_logging()
            assert h1 not in root.handlers
            assert plain in root.handlers
        finally:
            root.removeHandler(plain)

    def test_get_logger_returns_child(self):
        assert get_logger("services.lifecycle").name == "budget_kernel.services.lifecycle"


class TestServiceLogContext:
    def test_batch_edit_records_carry_the_budget(self, services, draft_budget, captured_logs):
        services.batch.apply(
            BatchEditRequest(
                budget_id=draft_budget.budget_id,
                titles_to_create=[TitleCreate("01", "Earthworks", temp_id="temp_1")],
            )
        )

        logs = captured_logs()
        applied = next(r for r in logs if r["event"] == "batch_edit_applied")
        assert applied["project_id"] == TEST_PROJECT_ID
        assert applied["group_id"] == draft_budget.group_id
        unit = next(
            r for r in logs if r["event"] == "transaction_unit_completed" and r["unit"] == "batch_edit"
        )
        assert unit["budget_id"] == draft_budget.budget_id
        assert LogContext.current() == {}

    def test_approval_records_carry_request_and_actor(self, services, draft_budget, captured_logs):
        services.lifecycle.submit_to_bidding(draft_budget.budget_id)
        request = services.lifecycle.request_contractual(draft_budget.budget_id, TEST_ACTOR_ID)

        services.approvals.approve(request.request_id, TEST_APPROVER_ID)

        unit = next(
            r
            for r in captured_logs()
            if r["event"] == "transaction_unit_completed" and r["unit"] == "approval_approve"
        )
        assert unit["request_id"] == request.request_id
        assert unit["actor_id"] == TEST_APPROVER_ID
        assert unit["budget_id"] == draft_budget.budget_id


class TestObservability:
    def test_logging_observability_emits_event_name_and_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LoggingObservability("services").child("lifecycle").event(
            "budget_group_created", group_id="GRP0000000001"
        )

        record = _parse_all_logs(stream)[0]
        assert record["logger"] == "budget_kernel.services.lifecycle"
        assert record["event"] == "budget_group_created"
        assert record["group_id"] == "GRP0000000001"

    def test_failure_logs_exception(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LoggingObservability().failure("totals_recompute_failed", RuntimeError("db gone"), budget_id="B")

        record = _parse_all_logs(stream)[0]
        assert record["level"] == "ERROR"
        assert record["exc_message"] == "db gone"

    def test_recording_observability_keeps_events_and_forwards(self):
        forwarded = RecordingObservability()
        recorder = RecordingObservability(forward_to=forwarded)
        recorder.event("a", x=1)
        recorder.warning("b")
        recorder.failure("c", ValueError("v"))

        assert [(e.level, e.name) for e in recorder.events] == [
            ("info", "a"),
            ("warning", "b"),
            ("error", "c"),
        ]
        assert recorder.named("a")[0].fields == {"x": 1}
        assert len(forwarded.events) == 3
        assert recorder.child("anything") is recorder

        recorder.clear()
        assert recorder.events == []
