"""HTTP control surface (FastAPI).

Routes::

    GET  /health               configuration health and enabled features
    POST /api/audit/start      queue an audit; answers 202 with its id
    GET  /api/audit/{run_id}   snapshot of one run
    GET  /api/audits           every run, most recent first
    POST /telegram/webhook     bot commands (/start, /help, /status)

Handlers run on the server's event loop, which is also the loop
``PipelineCoordinator.start_audit`` schedules run tasks on.  Error bodies
are ``{"error": message}``.  Shutting the app down cancels in-flight runs.
"""

from __future__ import annotations

import asyncio
import hmac
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from smartaudit.core.coordinator import PipelineCoordinator
from smartaudit.core.errors import NotificationError, RunNotFound
from smartaudit.core.models import AuditOptions
from smartaudit.core.settings import Settings
from smartaudit.core.state import utc_now
from smartaudit.modules.notifier import TelegramNotifier, render_command_reply

logger = structlog.get_logger()

WEBHOOK_SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


class StartAuditRequest(BaseModel):
    """Body of ``POST /api/audit/start``; camelCase and snake_case keys both work."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    repo_url: str = Field(alias="repoUrl")
    branch: str | None = None
    run_dynamic_tests: bool = Field(default=True, alias="runDynamicTests")
    create_pull_request: bool = Field(default=True, alias="createPullRequest")


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def health_payload(settings: Settings) -> dict[str, Any]:
    report = settings.config_report()
    return {
        "status": "healthy",
        "timestamp": utc_now(),
        "config": {
            "model": settings.llm_model,
            "chainId": settings.chain_id,
            "features": {
                "staticAnalysis": settings.enable_static_analysis,
                "dynamicTesting": settings.dynamic_testing_available,
                "autoPR": settings.publication_available,
                "telegram": settings.notifications_available,
            },
        },
        "validation": {"valid": report.is_valid, "missing": report.missing, "warnings": report.warnings},
    }


def bot_status(settings: Settings) -> dict[str, Any]:
    """What ``/status`` and ``/help`` report back to the chat."""
    return {
        "model": settings.llm_model,
        "chain_id": settings.chain_id,
        "static_analysis": settings.enable_static_analysis,
        "dynamic_testing": settings.dynamic_testing_available,
        "api_url": settings.api_url,
    }


def _secret_matches(given: str, expected: str) -> bool:
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def create_app(
    coordinator: PipelineCoordinator,
    settings: Settings,
    *,
    telegram: TelegramNotifier | None = None,
) -> FastAPI:
    """Bind the routes to *coordinator*.

    Without *telegram* the webhook route answers 404.
    """

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info("api_started", url=settings.api_url, telegram=telegram is not None)
        try:
            yield
        finally:
            cancelled = await coordinator.shutdown()
            logger.info("api_stopped", cancelled_runs=cancelled)

    api = FastAPI(title="SmartAudit Ops", version="0.1.0", lifespan=lifespan)

    @api.exception_handler(RequestValidationError)
    async def _invalid_request(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        details = [
            f"{'.'.join(str(p) for p in e.get('loc', ()) if p != 'body') or 'body'}: {e.get('msg', 'invalid')}"
            for e in errors
        ]
        repo_missing = any(
            e.get("type") == "missing" and tuple(e.get("loc", ()))[-1:] == ("repoUrl",) for e in errors
        )
        message = "Repository URL is required" if repo_missing else "Invalid request body"
        logger.info("api_request_rejected", errors=details)
        return _error(400, message, details=details)

    @api.get("/health")
    async def health() -> dict[str, Any]:
        return health_payload(settings)

    @api.post("/api/audit/start", status_code=202, response_model=None)
    async def start_audit(body: StartAuditRequest) -> Any:
        try:
            options = AuditOptions(
                branch=body.branch or settings.default_branch,
                run_dynamic_tests=body.run_dynamic_tests,
                create_publication=body.create_pull_request,
            )
            run_id = coordinator.start_audit(body.repo_url, options)
        except ValueError as exc:
            logger.info("api_audit_rejected", error=str(exc))
            return _error(400, str(exc))
        return {"auditId": run_id, "status": "queued", "message": "Audit started successfully"}

    @api.get("/api/audit/{run_id}", response_model=None)
    async def get_audit(run_id: str) -> Any:
        try:
            run = coordinator.get_run(run_id)
        except RunNotFound:
            return _error(404, "Audit not found")
        return run.snapshot()

    @api.get("/api/audits")
    async def list_audits() -> dict[str, Any]:
        return {"audits": [run.snapshot() for run in coordinator.list_runs()]}

    @api.post("/telegram/webhook", response_model=None)
    async def telegram_webhook(request: Request) -> Any:
        if telegram is None:
            return _error(404, "Telegram bot is not configured")
        secret = settings.telegram_webhook_secret
        if secret and not _secret_matches(request.headers.get(WEBHOOK_SECRET_HEADER, ""), secret):
            logger.warning("webhook_rejected", reason="secret token mismatch")
            return _error(403, "Forbidden")
        try:
            update = await request.json()
        except ValueError:
            return _error(400, "Invalid JSON")

        message = update.get("message") if isinstance(update, dict) else None
        if not isinstance(message, dict):
            return {"ok": True}
        chat = message.get("chat")
        text = message.get("text")
        if not isinstance(chat, dict) or chat.get("id") is None or not isinstance(text, str):
            return {"ok": True}

        reply = render_command_reply(text, bot_status(settings))
        if reply is None:
            return {"ok": True}
        try:
            await asyncio.to_thread(telegram.send_message, reply, chat_id=chat["id"])
        except NotificationError as exc:
            logger.warning("webhook_reply_failed", error=str(exc))
        else:
            logger.info("webhook_command_answered", command=text.split(maxsplit=1)[0])
        return {"ok": True}

    return api
