from __future__ import annotations

from backend_common.logging_config import REDACTED, redact_secrets_processor, single_line_processor


def test_credentials_are_redacted_at_any_depth():
    event = {
        "event": "dispatch",
        "authorization": "Bearer abc",
        "headers": {"Authorization": "Bearer abc", "X-Api-Key": "k", "Content-Type": "application/json"},
        "attempts": [{"client_secret": "s"}],
    }

    redacted = redact_secrets_processor(None, "info", event)

    assert redacted["authorization"] == REDACTED
    assert redacted["headers"] == {"Authorization": REDACTED, "X-Api-Key": REDACTED, "Content-Type": "application/json"}
    assert redacted["attempts"] == [{"client_secret": REDACTED}]
    assert redacted["event"] == "dispatch"


def test_single_line_processor_escapes_newlines():
    event = single_line_processor(None, "error", {"event": "boom", "exception": "Traceback\n  line"})
    assert event["exception"] == "Traceback\\n  line"
