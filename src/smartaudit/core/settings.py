"""SmartAudit runtime settings (Pydantic v2 Settings).

Centralises every configurable path, feature flag and credential so that:

* Stage gating reads one object instead of scattered ``os.environ`` calls.
* Environment overrides work (``SMARTAUDIT_GITHUB_TOKEN``, etc.).
* Tests can inject a custom root via ``Settings(repo_root=tmp_path)``.

Usage
-----
::

    from smartaudit.core.settings import Settings

    s = Settings()
    if s.dynamic_testing_available:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from smartaudit.core.paths import anchor, find_repo_root


@dataclass(frozen=True)
class ConfigReport:
    """Outcome of :meth:`Settings.config_report`."""

    missing: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.missing


class Settings(BaseSettings):
    """All runtime configuration for SmartAudit.

    *repo_root* anchors every derived path.  If not supplied, it is
    auto-detected via :func:`smartaudit.core.paths.find_repo_root`.
    """

    model_config = SettingsConfigDict(
        env_prefix="SMARTAUDIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Root + derived directories ──────────────────────────
    repo_root: Path | None = None
    workspace_dir: Path | None = None
    clones_dir: Path | None = None
    reports_dir: Path | None = None

    # ── Feature flags ───────────────────────────────────────
    enable_static_analysis: bool = True
    enable_dynamic_testing: bool = True
    enable_auto_pr: bool = True
    enable_notifications: bool = True

    # ── Credentials / collaborators ─────────────────────────
    github_token: str = ""
    github_api_url: str = "https://api.github.com"
    testnet_private_key: str = ""
    rpc_urls: Annotated[list[str], NoDecode] = []
    chain_id: int = 421614  # Arbitrum Sepolia
    hardhat_network: str = "smartaudit"
    deploy_script: str = "scripts/smartaudit-deploy.js"
    telegram_token: str = ""
    telegram_chat_id: str = ""
    gemini_api_key: str = ""
    llm_model: str = "gemini-2.5-flash"
    max_model_fixes: int = 10

    # ── Pipeline ────────────────────────────────────────────
    default_branch: str = "main"
    stage_timeout_seconds: float = 300.0
    dynamic_test_timeout_seconds: float = 900.0
    notification_top_k: int = 5
    max_runs: int = 0  # 0 = keep every run for the process lifetime
    pattern_rules_path: Path | None = None
    rules_max_size_kb: int = 256

    # ── HTTP API ────────────────────────────────────────────
    server_host: str = "127.0.0.1"
    server_port: int = 3000
    public_url: str = ""  # base URL quoted in chat replies; defaults to host:port
    telegram_webhook_secret: str = ""

    # ── Logging ─────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("rpc_urls", mode="before")
    @classmethod
    def _split_rpc_urls(cls, v: object) -> object:
        """Accept ``RPC_URLS=a,b,c`` as well as a real list."""
        if isinstance(v, str):
            return [u.strip() for u in v.split(",") if u.strip()]
        return v

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        """Fill in any path that was not explicitly overridden."""
        if self.repo_root is None:
            self.repo_root = find_repo_root()

        root = self.repo_root
        if self.workspace_dir is None:
            self.workspace_dir = root / "workspace"
        if self.clones_dir is None:
            self.clones_dir = self.workspace_dir / "clones"
        if self.reports_dir is None:
            self.reports_dir = root / "reports"
        if self.pattern_rules_path is not None:
            self.pattern_rules_path = anchor(self.pattern_rules_path, root)
        return self

    # ── Stage availability ──────────────────────────────────
    @property
    def dynamic_testing_available(self) -> bool:
        """Flag on *and* a funded key plus at least one RPC endpoint."""
        return self.enable_dynamic_testing and bool(self.testnet_private_key) and bool(self.rpc_urls)

    @property
    def publication_available(self) -> bool:
        return self.enable_auto_pr and bool(self.github_token)

    @property
    def notifications_available(self) -> bool:
        return self.enable_notifications and bool(self.telegram_token) and bool(self.telegram_chat_id)

    @property
    def api_url(self) -> str:
        return self.public_url.rstrip("/") or f"http://{self.server_host}:{self.server_port}"

    def config_report(self, *, require_all: bool = False) -> ConfigReport:
        """List missing settings and the stages they disable.

        With *require_all*, absent optional credentials count as missing
        instead of producing warnings.
        """
        missing: list[str] = []
        warnings: list[str] = []

        optional = [
            ("GITHUB_TOKEN", bool(self.github_token), "PR creation will be disabled"),
            ("TESTNET_PRIVATE_KEY", bool(self.testnet_private_key), "dynamic testing will be disabled"),
            ("RPC_URLS", bool(self.rpc_urls), "dynamic testing will be disabled"),
        ]
        for name, present, consequence in optional:
            if present:
                continue
            if require_all:
                missing.append(f"SMARTAUDIT_{name}")
            else:
                warnings.append(f"SMARTAUDIT_{name} not set - {consequence}")

        if not self.gemini_api_key:
            warnings.append("SMARTAUDIT_GEMINI_API_KEY not set - fixes will use templates only")

        if self.enable_notifications:
            if not self.telegram_token:
                warnings.append("SMARTAUDIT_TELEGRAM_TOKEN not set - notifications will be logged only")
            if not self.telegram_chat_id:
                warnings.append("SMARTAUDIT_TELEGRAM_CHAT_ID not set - notifications will be logged only")

        if not self.enable_static_analysis:
            missing.append("SMARTAUDIT_ENABLE_STATIC_ANALYSIS (static analysis is required)")

        return ConfigReport(missing=missing, warnings=warnings)

    def ensure_dirs(self) -> None:
        """Create the workspace and report directories if they don't exist."""
        for d in (self.workspace_dir, self.clones_dir, self.reports_dir):
            assert d is not None  # guaranteed after validation
            d.mkdir(parents=True, exist_ok=True)
