"""Lifecycle notification sinks and chat command replies.

The coordinator calls ``notify(event_type, payload)`` at each milestone.
Sinks never raise: delivery problems are logged and dropped so that a
flaky chat API cannot change the outcome of an audit.

Messages use Telegram's legacy Markdown.  Every interpolated value is
redacted first, then either escaped (plain text) or stripped of
backticks (code spans), so a title such as ``tx_origin`` cannot break
the message.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import requests
import structlog

from smartaudit.core.contracts import NotificationSink
from smartaudit.core.errors import ConfigurationError, NotificationError
from smartaudit.modules.redact import redact_secrets

logger = structlog.get_logger()

TELEGRAM_API = "https://api.telegram.org"

_SEVERITY_EMOJI = {"critical": "🔴", "high": "🟠", "medium": "🟡", "low": "🔵", "info": "⚪"}

_MARKDOWN_SPECIALS = ("\\", "_", "*", "`", "[")


# ── Escaping ────────────────────────────────────────────────
def md_text(value: Any) -> str:
    """*value* as plain text outside any Markdown entity."""
    text = redact_secrets(str(value))
    for char in _MARKDOWN_SPECIALS:
        text = text.replace(char, "\\" + char)
    return text


def md_code(value: Any) -> str:
    """*value* as an inline code span (no escapes apply inside one)."""
    return "`" + redact_secrets(str(value)).replace("`", "'") + "`"


# ── Message rendering ───────────────────────────────────────
def _render_started(p: dict[str, Any]) -> str:
    return (
        "🚀 *Audit Started*\n\n"
        f"📦 Repository: {md_code(p.get('repo_ref', '?'))}\n"
        f"🌿 Branch: {md_code(p.get('branch', '?'))}\n"
        f"🆔 Audit ID: {md_code(p.get('run_id', '?'))}"
    )


def _render_acquired(p: dict[str, Any]) -> str:
    return (
        "✅ *Source Acquired*\n\n"
        f"📦 Repository: {md_code(p.get('repo_ref', '?'))}\n"
        f"🔖 Commit: {md_code(str(p.get('commit', 'unknown'))[:12])}\n"
        f"📄 Found {p.get('file_count', 0)} Solidity contracts"
    )


def _render_analysis(p: dict[str, Any]) -> str:
    summary = p.get("summary") or {}
    lines = [
        "🔍 *Static Analysis Complete*",
        "",
        f"🔴 Critical: {summary.get('critical', 0)}",
        f"🟠 High: {summary.get('high', 0)}",
        f"🟡 Medium: {summary.get('medium', 0)}",
        f"📝 Total Issues: {summary.get('total', 0)}",
    ]
    top = p.get("top_findings") or []
    if top:
        lines += ["", f"🎯 *Top {len(top)} Issues:*"]
        for i, f in enumerate(top, start=1):
            emoji = _SEVERITY_EMOJI.get(f.get("severity", ""), "⚪")
            location = f"{f.get('file', '')}:{f.get('line', 0)}"
            lines.append(f"{i}. {emoji} {md_text(f.get('title', ''))}")
            lines.append(f"   📁 {md_code(location)}")
    failed = p.get("failed_analyzers") or []
    if failed:
        lines += ["", f"⚠️ Analyzers failed: {md_text(', '.join(map(str, failed)))}"]
    return "\n".join(lines)


def _render_dynamic(p: dict[str, Any]) -> str:
    return (
        "🧪 *Dynamic Testing Complete*\n\n"
        f"⛓️ Chain ID: {md_text(p.get('chain_id', '?'))}\n"
        f"✅ Contracts Deployed: {p.get('deployed_count', 0)}\n"
        f"🔄 Transactions Executed: {p.get('tx_count', 0)}\n"
        f"📈 Success Rate: {float(p.get('success_rate', 0.0)):.1f}%"
    )


def _render_published(p: dict[str, Any]) -> str:
    return (
        "✅ *Pull Request Created*\n\n"
        f"🔗 [View PR]({p.get('url', '')})\n"
        f"🌿 Branch: {md_code(p.get('branch', '?'))}\n"
        f"🔧 Fixes included: {p.get('fix_count', 0)}"
    )


def _render_completed(p: dict[str, Any]) -> str:
    summary = p.get("summary") or {}
    lines = [
        "🎉 *Audit Complete*",
        "",
        f"🆔 Audit ID: {md_code(p.get('run_id', '?'))}",
        f"📝 Total Issues: {summary.get('total', 0)} "
        f"({summary.get('critical', 0)} critical, {summary.get('high', 0)} high)",
        f"⏱️ Duration: {float(p.get('duration_seconds', 0.0)):.1f}s",
    ]
    if p.get("publication_url"):
        lines.append(f"🔗 [View PR]({p['publication_url']})")
    degraded = p.get("degraded_stages") or []
    if degraded:
        lines.append(f"⚠️ Degraded stages: {md_text(', '.join(map(str, degraded)))}")
    return "\n".join(lines)


def _render_failed(p: dict[str, Any]) -> str:
    return (
        "❌ *Audit Failed*\n\n"
        f"🆔 Audit ID: {md_code(p.get('run_id', '?'))}\n"
        f"⚠️ Error: {md_text(p.get('error') or 'unknown error')}"
    )


RENDERERS: dict[str, Callable[[dict[str, Any]], str]] = {
    "audit_started": _render_started,
    "acquisition_complete": _render_acquired,
    "analysis_complete": _render_analysis,
    "dynamic_test_complete": _render_dynamic,
    "publication_complete": _render_published,
    "audit_completed": _render_completed,
    "audit_failed": _render_failed,
}


def render_message(event_type: str, payload: dict[str, Any]) -> str:
    """Markdown text for *event_type*; unknown events get a generic line."""
    renderer = RENDERERS.get(event_type)
    if renderer is None:
        text = f"ℹ️ Event: {md_text(event_type)}\n\n🆔 Audit ID: {md_code(payload.get('run_id', '?'))}"
    else:
        text = renderer(payload)
    return redact_secrets(text)


# ── Chat commands ───────────────────────────────────────────
def _enabled(flag: Any) -> str:
    return "Enabled" if flag else "Disabled"


def render_command_reply(text: str, status: dict[str, Any]) -> str | None:
    """Reply to a bot command (``/start``, ``/help``, ``/status``).

    *status* carries ``model``, ``chain_id``, ``static_analysis``,
    ``dynamic_testing`` and ``api_url``.  Anything that is not a known
    command yields ``None``.
    """
    command = text.strip().split(maxsplit=1)[0] if text.strip() else ""
    command = command.split("@", 1)[0].lower()
    if command == "/start":
        return (
            "🤖 *SmartAudit Agent*\n\n"
            "I run automated security audits of Solidity repositories.\n\n"
            "Commands:\n"
            "/help - Show available commands\n"
            "/status - Check agent status"
        )
    if command == "/help":
        return (
            "📚 *Available Commands:*\n\n"
            "/start - Start the bot\n"
            "/help - Show this help\n"
            "/status - Check agent status\n\n"
            f"To run an audit, POST to {md_code(str(status.get('api_url', '')) + '/api/audit/start')}"
        )
    if command == "/status":
        return (
            "✅ *Agent Status:* Online\n\n"
            "⚙️ Configuration:\n"
            f"- Model: {md_text(status.get('model', '?'))}\n"
            f"- Chain ID: {md_text(status.get('chain_id', '?'))}\n"
            f"- Static Analysis: {_enabled(status.get('static_analysis'))}\n"
            f"- Dynamic Testing: {_enabled(status.get('dynamic_testing'))}"
        )
    return None


# ── Sinks ───────────────────────────────────────────────────
class LogNotifier:
    """Writes each event to the structured log."""

    async def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("notification", event_type=event_type, run_id=payload.get("run_id"))


class TelegramNotifier:
    """Posts Markdown messages through the Telegram Bot API ``sendMessage``."""

    def __init__(
        self,
        *,
        token: str,
        chat_id: str,
        timeout_seconds: float = 10.0,
        api_url: str = TELEGRAM_API,
        session: requests.Session | None = None,
    ) -> None:
        if not token or not chat_id:
            raise ConfigurationError("Telegram notifications need a bot token and a chat id")
        self.token = token
        self.chat_id = chat_id
        self.timeout_seconds = timeout_seconds
        self.api_url = api_url.rstrip("/")
        self.session = session or requests.Session()

    async def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.send_message, render_message(event_type, payload))
        except Exception as exc:
            logger.warning(
                "notification_failed",
                event_type=event_type,
                error=redact_secrets(f"{type(exc).__name__}: {exc}"),
            )
            return
        logger.debug("notification_sent", event_type=event_type)

    def send_message(self, text: str, *, chat_id: str | int | None = None) -> None:
        """Deliver *text* to *chat_id* (the configured chat by default).

        Raises
        ------
        NotificationError
            On transport errors or a non-OK API answer.
        """
        try:
            resp = self.session.post(
                f"{self.api_url}/bot{self.token}/sendMessage",
                json={
                    "chat_id": self.chat_id if chat_id is None else chat_id,
                    "text": text,
                    "parse_mode": "Markdown",
                    "disable_web_page_preview": True,
                },
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            # The bot token is part of the URL and leaks into exception text.
            raise NotificationError(redact_secrets(str(exc))) from exc
        if resp.status_code >= 400:
            raise NotificationError(f"Telegram API returned {resp.status_code}")


class CompositeNotifier:
    """Fans one event out to several sinks concurrently."""

    def __init__(self, sinks: list[NotificationSink]) -> None:
        self.sinks = list(sinks)

    async def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        results = await asyncio.gather(
            *(sink.notify(event_type, payload) for sink in self.sinks),
            return_exceptions=True,
        )
        for sink, outcome in zip(self.sinks, results):
            if isinstance(outcome, Exception):
                logger.warning(
                    "notification_failed",
                    event_type=event_type,
                    sink=type(sink).__name__,
                    error=str(outcome),
                )
