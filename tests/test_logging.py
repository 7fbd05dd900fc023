# ═══════════════════════════════════════════════════════════════
# HarborList Billing - Logging Tests
# Context propagation, formatters and the audit trail
# ═══════════════════════════════════════════════════════════════

import json
import logging

from harbor_billing.core.logging import (
    BillingAuditLogger,
    ConsoleFormatter,
    JSONFormatter,
    get_context,
    logging_context,
)


def make_record(message="hello", **extra_fields):
    record = logging.LogRecord("harbor_billing.test", logging.INFO, __file__, 1, message, None, None)
    if extra_fields:
        record.extra_fields = extra_fields
    return record


class TestLoggingContext:

    def test_sets_and_resets(self):
        with logging_context(request_id="req-1", failure_id="fail_1"):
            context = get_context()
            assert context["request_id"] == "req-1"
            assert context["failure_id"] == "fail_1"
            assert context["billing_account_id"] is None

        assert get_context()["request_id"] is None

    def test_nested_contexts_restore_outer(self):
        with logging_context(billing_account_id="acct_1"):
            with logging_context(billing_account_id="acct_2", webhook_event_id="evt_1"):
                assert get_context()["billing_account_id"] == "acct_2"
            assert get_context()["billing_account_id"] == "acct_1"
            assert get_context()["webhook_event_id"] is None


class TestFormatters:

    def test_json_includes_context_and_fields(self):
        with logging_context(failure_id="fail_1"):
            line = JSONFormatter().format(make_record("Retry scheduled", attempt=2))

        entry = json.loads(line)
        assert entry["message"] == "Retry scheduled"
        assert entry["failure_id"] == "fail_1"
        assert entry["attempt"] == 2
        assert "request_id" not in entry

    def test_console_appends_context(self):
        with logging_context(billing_account_id="acct_1"):
            line = ConsoleFormatter().format(make_record("Suspended"))

        assert "Suspended" in line
        assert "billing_account_id=acct_1" in line


class TestAuditLogger:

    def test_status_transition_record(self, caplog):
        caplog.set_level(logging.INFO, logger="harbor_billing.audit")

        BillingAuditLogger().log_status_transition("acct_1", "past_due", "suspended", "retries_exhausted")

        [record] = [r for r in caplog.records if r.name == "harbor_billing.audit"]
        assert record.extra_fields["audit_type"] == "status_transition"
        assert record.extra_fields["to_status"] == "suspended"
        assert "past_due -> suspended" in record.getMessage()

    def test_failed_webhook_logged_as_error(self, caplog):
        caplog.set_level(logging.INFO, logger="harbor_billing.audit")

        BillingAuditLogger().log_webhook_outcome("stripe", "evt_1", "invoice.paid", "failed", {"error": "boom"})

        [record] = [r for r in caplog.records if r.name == "harbor_billing.audit"]
        assert record.levelno == logging.ERROR
        assert record.extra_fields["error"] == "boom"
