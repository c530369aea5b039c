from galleryauth.logging import (
    _add_correlation_id,
    _redact_credentials,
    email_digest,
    set_correlation_id,
)


def test_credentials_are_masked():
    event = _redact_credentials(
        None,
        "info",
        {"event": "x", "refresh_token": "abcdefgh", "password": "abc"},
    )

    assert event["refresh_token"] == "ab***gh"
    assert event["password"] == "***"
    assert event["event"] == "x"


def test_email_fields_become_digests():
    event = _redact_credentials(
        None, "info", {"email": "Curator@Example.com", "recipient_email": "a@b.co"}
    )

    assert "email" not in event
    assert event["email_digest"] == email_digest("curator@example.com")
    assert event["recipient_email_digest"] == email_digest("a@b.co")


def test_hashed_identifiers_are_kept():
    digest = email_digest("curator@example.com")

    event = _redact_credentials(
        None, "info", {"email_digest": digest, "token_hash_prefix": "deadbeef"}
    )

    assert event == {"email_digest": digest, "token_hash_prefix": "deadbeef"}


def test_email_digest_normalizes():
    assert email_digest(" Curator@Example.com ") == email_digest("curator@example.com")


def test_correlation_id_is_attached():
    cid = set_correlation_id("req-1")

    assert _add_correlation_id(None, "info", {})["correlation_id"] == cid


def test_fields_that_only_mention_credentials_are_kept():
    event = _redact_credentials(
        None,
        "info",
        {"password_strength": "medium", "token_type": "access", "smtp_password": "hunter22"},
    )

    assert event["password_strength"] == "medium"
    assert event["token_type"] == "access"
    assert event["smtp_password"] == "hu***22"
