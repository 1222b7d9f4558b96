"""Composition root: builds a :class:`PipelineCoordinator` (and its HTTP API) from settings."""

from __future__ import annotations

import structlog
from fastapi import FastAPI

from smartaudit.core.contracts import NotificationSink, StaticAnalyzer
from smartaudit.core.coordinator import PipelineCoordinator
from smartaudit.core.settings import Settings
from smartaudit.core.store import InMemoryAuditStore
from smartaudit.modules.acquisition import GitSourceAcquirer, SolidityContentValidator
from smartaudit.modules.analyzers import PatternAnalyzer, SlitherAnalyzer, SolhintAnalyzer
from smartaudit.modules.dynamic import HardhatTestRunner
from smartaudit.modules.fixes import GeminiFixGenerator, TemplateFixGenerator
from smartaudit.modules.notifier import CompositeNotifier, LogNotifier, TelegramNotifier
from smartaudit.modules.publisher import GitHubPublisher
from smartaudit.rules import DEFAULT_RULES, load_pattern_rules
from smartaudit.server import create_app

logger = structlog.get_logger()


def build_analyzers(settings: Settings) -> list[StaticAnalyzer]:
    """Slither, Solhint and the regex pattern scanner.

    Raises
    ------
    RulesNotFound, RulesInvalid
        If ``pattern_rules_path`` is set but unusable.
    """
    rules = DEFAULT_RULES
    if settings.pattern_rules_path is not None:
        rules = load_pattern_rules(
            settings.pattern_rules_path, max_size_bytes=settings.rules_max_size_kb * 1024
        )
    timeout = settings.stage_timeout_seconds
    return [
        SlitherAnalyzer(timeout_seconds=timeout),
        SolhintAnalyzer(timeout_seconds=timeout),
        PatternAnalyzer(rules),
    ]


def build_telegram(settings: Settings) -> TelegramNotifier | None:
    if not settings.notifications_available:
        return None
    return TelegramNotifier(token=settings.telegram_token, chat_id=settings.telegram_chat_id)


def build_notifier(settings: Settings) -> NotificationSink:
    telegram = build_telegram(settings)
    if telegram is None:
        return LogNotifier()
    return CompositeNotifier([LogNotifier(), telegram])


def build_coordinator(settings: Settings) -> PipelineCoordinator:
    """Wire every shipped collaborator according to *settings*.

    Optional collaborators are left out when their credentials are missing,
    which makes the coordinator skip the matching stage.
    """
    assert settings.clones_dir is not None and settings.reports_dir is not None
    settings.ensure_dirs()

    fix_generator = (
        GeminiFixGenerator(
            api_key=settings.gemini_api_key,
            model=settings.llm_model,
            max_fixes=settings.max_model_fixes,
        )
        if settings.gemini_api_key
        else TemplateFixGenerator()
    )

    dynamic_runner = None
    if settings.testnet_private_key and settings.rpc_urls:
        dynamic_runner = HardhatTestRunner(
            rpc_urls=settings.rpc_urls,
            private_key=settings.testnet_private_key,
            chain_id=settings.chain_id,
            network=settings.hardhat_network,
            deploy_script=settings.deploy_script,
            command_timeout_seconds=settings.dynamic_test_timeout_seconds,
        )

    publisher = None
    if settings.github_token:
        publisher = GitHubPublisher(token=settings.github_token, api_url=settings.github_api_url)

    coordinator = PipelineCoordinator(
        store=InMemoryAuditStore(max_runs=settings.max_runs),
        acquirer=GitSourceAcquirer(settings.clones_dir, timeout_seconds=settings.stage_timeout_seconds),
        validator=SolidityContentValidator(),
        analyzers=build_analyzers(settings),
        fix_generator=fix_generator,
        notifier=build_notifier(settings),
        reports_dir=settings.reports_dir,
        dynamic_runner=dynamic_runner,
        publisher=publisher,
        enable_static_analysis=settings.enable_static_analysis,
        enable_dynamic_testing=settings.enable_dynamic_testing,
        enable_auto_pr=settings.enable_auto_pr,
        stage_timeout_seconds=settings.stage_timeout_seconds,
        dynamic_test_timeout_seconds=settings.dynamic_test_timeout_seconds,
        notification_top_k=settings.notification_top_k,
    )
    logger.info(
        "coordinator_built",
        analyzers=[a.name for a in coordinator.analyzers],
        fix_generator=getattr(fix_generator, "name", type(fix_generator).__name__),
        dynamic_testing=dynamic_runner is not None,
        publication=publisher is not None,
    )
    return coordinator


def build_api(settings: Settings) -> FastAPI:
    """The HTTP control surface over a freshly built coordinator."""
    return create_app(build_coordinator(settings), settings, telegram=build_telegram(settings))
