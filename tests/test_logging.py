"""Log formatting, actor stamping and secret scrubbing."""

from __future__ import annotations

import json
import logging
import os
from unittest.mock import patch

import pytest

from accesscore import (
    LogLevel,
    PortalConfig,
    get_actor_logger,
    redact_secrets,
    safe_log_value,
    safe_preview,
    setup_logging,
)
from accesscore.logging import PortalLogFormatter


def _make_record(msg: str = "Team t1 updated", **attrs) -> logging.LogRecord:
    record = logging.LogRecord("accesscore.roles", logging.INFO, __file__, 1, msg, (), None)
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


class TestPreview:
    """safe_preview renders any value as one bounded line."""

    def test_none_is_empty(self) -> None:
        assert safe_preview(None) == ""

    def test_collapses_whitespace(self) -> None:
        assert safe_preview("approve\n\trequest   r1") == "approve request r1"

    def test_truncates_with_ellipsis(self) -> None:
        preview = safe_preview("x" * 300, limit=50)
        assert len(preview) == 50
        assert preview[-1] == "…"

    def test_short_text_untouched(self) -> None:
        assert safe_preview("pending", limit=50) == "pending"

    def test_mapping_rendered_as_json(self) -> None:
        preview = safe_preview({"uid": "u1", "isAdmin": True})
        assert json.loads(preview) == {"uid": "u1", "isAdmin": True}


class TestRedaction:
    """redact_secrets hides credentials and identity tokens."""

    def test_password_value_hidden(self) -> None:
        scrubbed = redact_secrets('password: "hunter22"')
        assert "hunter22" not in scrubbed
        assert "[REDACTED]" in scrubbed

    def test_bearer_header_hidden(self) -> None:
        assert "abc123.def456" not in redact_secrets("authorization: Bearer abc123.def456")

    def test_identity_token_header(self) -> None:
        result = redact_secrets("x-identity-token: hmac-001.eyJ1aWQiOiJ1MSJ9.c2ln")
        assert "eyJ1aWQiOiJ1MSJ9" not in result

    def test_bare_serialized_token(self) -> None:
        result = redact_secrets("rejected unsigned.eyJ1aWQiOiJtYWxsb3J5In0. from 10.0.0.1")
        assert "eyJ1aWQiOiJtYWxsb3J5In0" not in result
        assert "10.0.0.1" in result

    def test_plain_business_text_kept(self) -> None:
        text = "Request r1 approved for user u1"
        assert redact_secrets(text) == text

    def test_replacement_marker(self) -> None:
        assert redact_secrets("secret=abc", replacement="***") == "***"


class TestSafeLogValue:
    """safe_log_value = preview + optional redaction."""

    def test_redacts_by_default(self) -> None:
        assert "sk-1234567890" not in safe_log_value("api_key: sk-1234567890")

    def test_redaction_can_be_disabled(self) -> None:
        assert "sk-1234567890" in safe_log_value("api_key: sk-1234567890", redact=False)

    def test_respects_limit(self) -> None:
        assert len(safe_log_value("y" * 500, limit=80)) <= 80


@pytest.mark.usefixtures("restore_root_logger")
class TestSetup:
    """setup_logging installs one root handler."""

    def test_level_from_config(self) -> None:
        setup_logging(config=PortalConfig(log_level=LogLevel.DEBUG), json_format=False)
        assert logging.getLogger().level == logging.DEBUG

    @patch.dict(os.environ, {"LOG_LEVEL": "WARNING"}, clear=True)
    def test_level_from_environment(self) -> None:
        setup_logging(json_format=False)
        assert logging.getLogger().level == logging.WARNING

    def test_replaces_existing_handlers(self) -> None:
        setup_logging(config=PortalConfig())
        setup_logging(config=PortalConfig())
        assert len(logging.getLogger().handlers) == 1

    def test_emits_json_lines(self, capsys: pytest.CaptureFixture) -> None:
        setup_logging(config=PortalConfig(log_level=LogLevel.INFO), json_format=True)
        logging.getLogger("accesscore.requests").info("Request r1 submitted")

        entry = json.loads(capsys.readouterr().err.strip())
        assert entry["level"] == "INFO"
        assert entry["logger"] == "accesscore.requests"
        assert entry["message"] == "Request r1 submitted"

    def test_emits_plain_lines(self, capsys: pytest.CaptureFixture) -> None:
        setup_logging(config=PortalConfig(log_level=LogLevel.INFO), json_format=False)
        logging.getLogger("accesscore.requests").info("Request r1 submitted")

        line = capsys.readouterr().err.strip()
        assert line.startswith("[")
        assert "INFO accesscore.requests" in line
        assert line.endswith("Request r1 submitted")


class TestActorLogger:
    """The actor logger adapter."""

    def test_logger_stamps_actor(self, caplog: pytest.LogCaptureFixture) -> None:
        log = get_actor_logger("test", actor_id="admin", request_id="r1")
        with caplog.at_level(logging.INFO):
            log.info("Team t1 updated")

        stamped = caplog.records[0]
        assert stamped.actor_id == "admin"
        assert stamped.request_id == "r1"

    def test_per_call_override(self, caplog: pytest.LogCaptureFixture) -> None:
        log = get_actor_logger("test", actor_id="admin")
        with caplog.at_level(logging.INFO):
            log.info("Resynced", actor_id="system")
        assert caplog.records[0].actor_id == "system"

    def test_unbound_logger_adds_nothing(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO):
            get_actor_logger("test").info("Profile created")
        assert not hasattr(caplog.records[0], "actor_id")


class TestFormatter:
    """PortalLogFormatter output."""

    def test_json_carries_context_and_extras(self) -> None:
        entry = json.loads(
            PortalLogFormatter(json_format=True).format(_make_record(actor_id="admin", target_uid="u1"))
        )
        assert entry["level"] == "INFO"
        assert entry["actor_id"] == "admin"
        assert entry["target_uid"] == "u1"

    def test_plain_shows_actor(self) -> None:
        line = PortalLogFormatter(json_format=False).format(_make_record(actor_id="admin"))
        assert " actor=admin" in line
        assert line.endswith(": Team t1 updated")

    def test_context_can_be_omitted(self) -> None:
        entry = json.loads(PortalLogFormatter(include_context=False).format(_make_record(actor_id="admin")))
        assert "actor_id" not in entry

    def test_message_redacted(self) -> None:
        entry = json.loads(PortalLogFormatter(json_format=True).format(_make_record("token: abc.def.ghi")))
        assert "abc.def.ghi" not in entry["message"]
