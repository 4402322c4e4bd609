"""Tests for logging helpers and verifier encryption."""

import pytest

from connect_core.utils.crypto import (
    CryptoService,
    CryptoServiceError,
    DecryptionError,
    generate_fernet_key,
)
from connect_core.utils.logging import (
    clear_request_context,
    filter_sensitive_data,
    request_context,
    set_request_context,
    truncate_state,
)


class TestSensitiveDataFilter:
    def test_masks_token_values(self):
        event = filter_sensitive_data(
            None,
            "info",
            {
                "event": "Token refresh",
                "refresh_token": "rt-1234567890abcdef",
                "client_secret": "short",
            },
        )

        assert event["refresh_token"] == "rt-1...cdef"
        assert event["client_secret"] == "***REDACTED***"
        assert event["event"] == "Token refresh"

    def test_keeps_boolean_flags(self):
        event = filter_sensitive_data(None, "info", {"has_refresh_token": True})
        assert event["has_refresh_token"] is True

    def test_truncate_state(self):
        assert truncate_state("abcdefghijklmnop") == "abcdefgh..."
        assert truncate_state(None) == "<none>"


class TestRequestContext:
    def test_set_and_clear(self):
        set_request_context(request_id="req-1")
        set_request_context(path="/oauth/state")

        assert request_context.get() == {
            "request_id": "req-1",
            "path": "/oauth/state",
        }

        clear_request_context()
        assert request_context.get() is None


class TestCryptoService:
    def test_round_trip(self):
        crypto = CryptoService(generate_fernet_key())

        token = crypto.encrypt_value("verifier")

        assert token != "verifier"
        assert crypto.decrypt_value(token) == "verifier"

    def test_previous_keys_decrypt(self):
        old_key = generate_fernet_key()
        old = CryptoService(old_key)
        rotated = CryptoService(generate_fernet_key(), [old_key, " "])

        assert rotated.get_key_count() == 2
        assert rotated.decrypt_value(old.encrypt_value("verifier")) == "verifier"

    def test_wrong_key_fails(self):
        token = CryptoService(generate_fernet_key()).encrypt_value("verifier")

        with pytest.raises(DecryptionError):
            CryptoService(generate_fernet_key()).decrypt_value(token)

    def test_invalid_key_rejected(self):
        with pytest.raises(CryptoServiceError):
            CryptoService("not-a-fernet-key")

    def test_empty_value_rejected(self):
        with pytest.raises(CryptoServiceError):
            CryptoService(generate_fernet_key()).encrypt_value("")
