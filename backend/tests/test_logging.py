import json
import logging

from pulse.infra.logging import RedactingJsonFormatter, clear_log_context, redact, update_log_context


def _record(message, **extra):
    record = logging.LogRecord("pulse.test", logging.INFO, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_redact_masks_secrets_in_free_text():
    text = (
        "sent to ops@example.com via https://hooks.slack.com/services/T0/B0/abc "
        "with Bearer abc.def token=s3cr3t header sha256=0123456789abcdef0123"
    )
    redacted = redact(text)
    assert "ops@example.com" not in redacted
    assert "[REDACTED_EMAIL]" in redacted
    assert "[REDACTED_SLACK_URL]" in redacted
    assert "Bearer [REDACTED_TOKEN]" in redacted
    assert "token=[REDACTED_TOKEN]" in redacted
    assert "sha256=[REDACTED_SIGNATURE]" in redacted


def test_formatter_merges_context_and_redacts_sensitive_keys():
    formatter = RedactingJsonFormatter()
    update_log_context(request_id="req-1", org_id="org-1", ignored=None)
    try:
        payload = json.loads(
            formatter.format(
                _record(
                    "webhook_delivered",
                    extra={"subscription_id": "sub-1", "secret": "whsec_123", "target": "a@b.io"},
                )
            )
        )
    finally:
        clear_log_context()

    assert payload["message"] == "webhook_delivered"
    assert payload["level"] == "INFO"
    assert payload["request_id"] == "req-1"
    assert payload["org_id"] == "org-1"
    assert "ignored" not in payload
    assert payload["subscription_id"] == "sub-1"
    assert payload["secret"] == "[REDACTED]"
    assert payload["target"] == "[REDACTED_EMAIL]"


def test_cleared_context_is_not_emitted():
    update_log_context(job_id="job-1")
    clear_log_context()
    payload = json.loads(RedactingJsonFormatter().format(_record("job_complete")))
    assert "job_id" not in payload
