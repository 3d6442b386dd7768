from core.logging_config import redact_secrets


def test_secrets_are_redacted_from_log_events():
    event = redact_secrets(None, "info", {
        "event": "razorpay_request",
        "key_secret": "rzp_secret",
        "signature": "abc",
        "order_ref": "order_1",
    })
    assert event["key_secret"] == "***"
    assert event["signature"] == "***"
    assert event["order_ref"] == "order_1"
