"""Tests for smartaudit.modules.notifier — rendering + sinks."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
import requests

from smartaudit.core.errors import ConfigurationError, NotificationError
from smartaudit.modules.notifier import (
    RENDERERS,
    CompositeNotifier,
    LogNotifier,
    TelegramNotifier,
    md_code,
    md_text,
    render_command_reply,
    render_message,
)

BOT_TOKEN = "123456789:" + "A" * 35


class _Response:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


class _Session:
    def __init__(self, outcome: Any) -> None:
        self.outcome = outcome
        self.calls: list[dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> _Response:
        self.calls.append({"url": url, **kwargs})
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


# ── Rendering ───────────────────────────────────────────────
class TestRenderMessage:
    def test_every_lifecycle_event_has_a_renderer(self) -> None:
        assert set(RENDERERS) == {
            "audit_started",
            "acquisition_complete",
            "analysis_complete",
            "dynamic_test_complete",
            "publication_complete",
            "audit_completed",
            "audit_failed",
        }

    def test_started(self) -> None:
        text = render_message("audit_started", {"run_id": "audit-1", "repo_ref": "https://x/y", "branch": "main"})
        assert "Audit Started" in text
        assert "audit-1" in text
        assert "`main`" in text

    def test_analysis_lists_top_findings_and_failures(self) -> None:
        text = render_message(
            "analysis_complete",
            {
                "run_id": "audit-1",
                "summary": {"total": 3, "critical": 1, "high": 1, "medium": 1},
                "top_findings": [
                    {"title": "Reentrancy", "severity": "critical", "file": "Vault.sol", "line": 12},
                    {"title": "tx.origin", "severity": "high", "file": "Vault.sol", "line": 7},
                ],
                "failed_analyzers": ["slither"],
            },
        )
        assert "Total Issues: 3" in text
        assert "Top 2 Issues" in text
        assert text.index("Reentrancy") < text.index("tx.origin")
        assert "`Vault.sol:12`" in text
        assert "Analyzers failed: slither" in text

    def test_dynamic(self) -> None:
        text = render_message(
            "dynamic_test_complete",
            {"chain_id": 421614, "deployed_count": 2, "tx_count": 4, "success_rate": 75.0},
        )
        assert "421614" in text
        assert "75.0%" in text

    def test_completed_mentions_degraded_stages(self) -> None:
        text = render_message(
            "audit_completed",
            {
                "run_id": "audit-1",
                "summary": {"total": 2, "critical": 0, "high": 1},
                "duration_seconds": 12.34,
                "publication_url": "https://github.com/acme/vault/pull/5",
                "degraded_stages": ["dynamic_test"],
            },
        )
        assert "12.3s" in text
        assert "pull/5" in text
        assert "Degraded stages: dynamic\\_test" in text

    def test_failed(self) -> None:
        text = render_message("audit_failed", {"run_id": "audit-1", "error": "Clone failed"})
        assert "Audit Failed" in text
        assert "Clone failed" in text

    def test_unknown_event_is_generic(self) -> None:
        text = render_message("something_else", {"run_id": "audit-9"})
        assert "something\\_else" in text
        assert "audit-9" in text

    def test_secrets_are_redacted(self) -> None:
        key = "0x" + "ab" * 32
        text = render_message("audit_failed", {"run_id": "audit-1", "error": f"bad key {key}"})
        assert key not in text
        assert "[REDACTED-PRIVATE-KEY]" in text

    def test_markdown_specials_in_values_are_escaped(self) -> None:
        text = render_message(
            "analysis_complete",
            {
                "run_id": "audit-1",
                "summary": {"total": 1},
                "top_findings": [
                    {"title": "tx_origin *auth* [check]", "severity": "high", "file": "my_vault.sol", "line": 3}
                ],
                "failed_analyzers": ["custom_tool"],
            },
        )
        assert r"tx\_origin \*auth\* \[check]" in text
        assert "`my_vault.sol:3`" in text
        assert r"custom\_tool" in text

    def test_error_and_refs_cannot_open_entities(self) -> None:
        text = render_message(
            "audit_failed", {"run_id": "audit`1", "error": "Stage 'acquisition' failed: bad_ref `x`"}
        )
        assert "`audit'1`" in text
        assert r"bad\_ref \`x\`" in text

    def test_escaping_helpers(self) -> None:
        assert md_text("a_b*c`d[e\\f") == r"a\_b\*c\`d\[e\\f"
        assert md_code("x`y") == "`x'y`"

    def test_secrets_are_redacted_before_escaping(self) -> None:
        token = "ghp_" + "a" * 36
        text = render_message("audit_failed", {"run_id": "audit-1", "error": f"push with {token}"})
        assert "ghp" not in text
        assert "REDACTED" in text


# ── Sinks ───────────────────────────────────────────────────
class TestTelegramNotifier:
    @pytest.mark.parametrize("token, chat_id", [("", "42"), (BOT_TOKEN, "")])
    def test_requires_credentials(self, token: str, chat_id: str) -> None:
        with pytest.raises(ConfigurationError):
            TelegramNotifier(token=token, chat_id=chat_id)

    def test_posts_send_message(self) -> None:
        session = _Session(_Response(200))
        sink = TelegramNotifier(token=BOT_TOKEN, chat_id="42", session=session)  # type: ignore[arg-type]

        asyncio.run(sink.notify("audit_started", {"run_id": "audit-1"}))

        [call] = session.calls
        assert call["url"] == f"https://api.telegram.org/bot{BOT_TOKEN}/sendMessage"
        assert call["json"]["chat_id"] == "42"
        assert call["json"]["parse_mode"] == "Markdown"
        assert "Audit Started" in call["json"]["text"]

    @pytest.mark.parametrize(
        "outcome",
        [requests.ConnectionError(f"https://api.telegram.org/bot{BOT_TOKEN}/sendMessage refused"), _Response(500)],
    )
    def test_delivery_failure_is_swallowed(self, outcome: Any) -> None:
        sink = TelegramNotifier(token=BOT_TOKEN, chat_id="42", session=_Session(outcome))  # type: ignore[arg-type]
        asyncio.run(sink.notify("audit_failed", {"run_id": "audit-1"}))

    def test_transport_error_hides_token(self) -> None:
        boom = requests.ConnectionError(f"https://api.telegram.org/bot{BOT_TOKEN}/sendMessage refused")
        sink = TelegramNotifier(token=BOT_TOKEN, chat_id="42", session=_Session(boom))  # type: ignore[arg-type]
        with pytest.raises(NotificationError) as excinfo:
            sink.send_message("hi")
        assert BOT_TOKEN not in str(excinfo.value)

    def test_unexpected_transport_error_is_swallowed(self) -> None:
        session = _Session(ValueError(f"bad header for bot{BOT_TOKEN}"))
        sink = TelegramNotifier(token=BOT_TOKEN, chat_id="42", session=session)  # type: ignore[arg-type]
        asyncio.run(sink.notify("audit_started", {"run_id": "audit-1"}))
        assert len(session.calls) == 1

    def test_render_error_is_swallowed(self) -> None:
        session = _Session(_Response(200))
        sink = TelegramNotifier(token=BOT_TOKEN, chat_id="42", session=session)  # type: ignore[arg-type]
        asyncio.run(sink.notify("audit_completed", {"run_id": "audit-1", "duration_seconds": "soon"}))
        assert session.calls == []

    def test_send_message_to_other_chat(self) -> None:
        session = _Session(_Response(200))
        sink = TelegramNotifier(token=BOT_TOKEN, chat_id="42", session=session)  # type: ignore[arg-type]
        sink.send_message("hi", chat_id=7)
        assert session.calls[0]["json"]["chat_id"] == 7


# ── Chat commands ───────────────────────────────────────────
STATUS = {
    "model": "gemini-2.0-flash",
    "chain_id": 421614,
    "static_analysis": True,
    "dynamic_testing": False,
    "api_url": "http://127.0.0.1:3000",
}


class TestCommandReplies:
    def test_start_lists_commands(self) -> None:
        text = render_command_reply("/start", STATUS)
        assert text is not None
        assert "/help" in text
        assert "/status" in text

    def test_help_points_at_http_api(self) -> None:
        text = render_command_reply("/help", STATUS) or ""
        assert "`http://127.0.0.1:3000/api/audit/start`" in text

    def test_status_reports_configuration(self) -> None:
        text = render_command_reply("/status@SmartAuditBot", STATUS) or ""
        assert "Online" in text
        assert "gemini-2.0-flash" in text
        assert "421614" in text
        assert "Static Analysis: Enabled" in text
        assert "Dynamic Testing: Disabled" in text

    @pytest.mark.parametrize("text", ["", "hello", "/unknown", "   "])
    def test_other_text_gets_no_reply(self, text: str) -> None:
        assert render_command_reply(text, STATUS) is None


class _Recorder:
    def __init__(self) -> None:
        self.events: list[str] = []

    async def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append(event_type)


class _Broken:
    async def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        raise RuntimeError("sink down")


def test_composite_isolates_failing_sink() -> None:
    recorder = _Recorder()
    composite = CompositeNotifier([_Broken(), recorder])
    asyncio.run(composite.notify("audit_started", {"run_id": "audit-1"}))
    assert recorder.events == ["audit_started"]


def test_log_notifier_never_raises() -> None:
    asyncio.run(LogNotifier().notify("audit_completed", {"run_id": "audit-1"}))
