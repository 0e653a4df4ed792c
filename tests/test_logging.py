from tokenward.logging import (
    _add_correlation_id,
    _redact_pii,
    get_correlation_id,
    set_correlation_id,
)


def test_tokens_are_masked():
    event = _redact_pii(None, "info", {"refresh_token": "eyJhbGciOi.payload.sig", "subject_id": "u1"})
    assert event["refresh_token"] == "ey***ig"
    assert event["subject_id"] == "u1"


def test_login_identifiers_are_masked():
    event = _redact_pii(None, "warning", {"identifier": "alice@example.com", "attempts": 3})
    assert event["identifier"] == "al***om"
    assert event["attempts"] == 3


def test_token_identifiers_pass_through():
    event = _redact_pii(None, "info", {"token_id": "abcdef", "token_type": "refresh"})
    assert event == {"token_id": "abcdef", "token_type": "refresh"}


def test_correlation_id_is_bound():
    cid = set_correlation_id("req-123")
    assert get_correlation_id() == "req-123"
    assert _add_correlation_id(None, "info", {})["correlation_id"] == cid
    set_correlation_id(None)
    assert get_correlation_id() != "req-123"
