"""
Credential redaction and call-id tagging in log records.
"""

import pytest

from voicebot.logging_config import (
    REDACTED,
    add_call_id,
    add_component,
    bind_call_id,
    get_call_id,
    is_credential_key,
    redact_credentials,
)


class TestCredentialKeys:
    @pytest.mark.parametrize(
        "key", ["api_key", "API_KEY", "api-key", "Password", "ari_password", "pass", "authorization", "client_secret"]
    )
    def test_credential_keys(self, key):
        assert is_credential_key(key) is True

    @pytest.mark.parametrize("key", ["passthrough_codecs", "username", "phone_number", "channel_id", "author"])
    def test_ordinary_keys(self, key):
        assert is_credential_key(key) is False


class TestRedactCredentials:
    def test_long_values_keep_two_characters(self):
        result = redact_credentials(None, None, {"event": "Config loaded", "api_key": "sk-1234567890abcdef"})

        assert result["api_key"] == "sk" + REDACTED
        assert result["event"] == "Config loaded"

    def test_short_and_non_string_values_fully_masked(self):
        result = redact_credentials(None, None, {"pwd": "abc", "token": 12345})

        assert result == {"pwd": REDACTED, "token": REDACTED}

    def test_empty_and_none_untouched(self):
        result = redact_credentials(None, None, {"api_key": "", "token": None})

        assert result == {"api_key": "", "token": None}

    def test_dumped_config_blocks(self):
        """Nested config dicts are scrubbed field by field."""
        event_dict = {
            "event": "Effective config",
            "asterisk": {"host": "127.0.0.1", "username": "dialer", "password": "secret-pass"},
            "providers": {"openai": {"api_key": "sk-nested", "voice": "nova"}},
            "trunks": [{"name": "mx", "secret": "trunk-pass"}, "plain"],
        }

        result = redact_credentials(None, None, event_dict)

        assert result["asterisk"] == {"host": "127.0.0.1", "username": "dialer", "password": "se" + REDACTED}
        assert result["providers"]["openai"] == {"api_key": "sk" + REDACTED, "voice": "nova"}
        assert result["trunks"] == [{"name": "mx", "secret": "tr" + REDACTED}, "plain"]

    def test_list_of_credentials(self):
        result = redact_credentials(None, None, {"tokens_auth": ["abcdefgh", None]})

        assert result["tokens_auth"] == ["ab" + REDACTED, None]

    def test_call_bookkeeping_preserved(self):
        event_dict = {
            "event": "Call dispatched",
            "phone_number": "4421234567",
            "channel_id": "voicebot-abc",
            "active_calls": 2,
            "passthrough_codecs": ["ulaw", "alaw"],
        }

        assert redact_credentials(None, None, dict(event_dict)) == event_dict


class TestContextProcessors:
    def test_bound_call_id_added(self):
        with bind_call_id("call-1"):
            assert get_call_id() == "call-1"
            result = add_call_id(None, None, {"event": "Turn recorded"})

        assert result["call_id"] == "call-1"
        assert get_call_id() is None

    def test_explicit_call_id_wins(self):
        with bind_call_id("call-1"):
            result = add_call_id(None, None, {"event": "x", "call_id": "analysis"})

        assert result["call_id"] == "analysis"

    def test_unbound_context_adds_nothing(self):
        assert "call_id" not in add_call_id(None, None, {"event": "idle"})

    def test_nested_binding_restores_outer(self):
        with bind_call_id("outer"):
            with bind_call_id("inner"):
                assert get_call_id() == "inner"
            assert get_call_id() == "outer"

    def test_component_from_logger_name(self):
        result = add_component(None, None, {"event": "x", "logger": "voicebot.core.dispatcher"})

        assert result["service"] == "voicebot-dialer"
        assert result["component"] == "voicebot.core.dispatcher"

    def test_component_unknown_without_name(self):
        assert add_component(None, None, {"event": "x"})["component"] == "unknown"
