"""Dynamic testing on a live test network (Hardhat).

Steps:

1. Ping every configured RPC endpoint with ``eth_blockNumber`` and keep
   the fastest one that answers.
2. ``npx hardhat compile`` in the checkout.
3. Run the project's deploy script with ``npx hardhat run`` against that
   endpoint.  The script receives the RPC URL, key, chain id and a report
   path through the environment and writes a JSON report::

       {"deployments": [{"contractName": ..., "address": ...}, ...],
        "transactions": [{"hash": ..., "status": "success" | "reverted"}, ...]}

4. Summarise deployments and transaction outcomes.

Any failure raises :class:`DynamicTestError`; the stage is soft, so the
audit completes without a dynamic-test summary.
"""

from __future__ import annotations

import asyncio
import json
import tempfile
import time
from pathlib import Path
from typing import Any

import requests
import structlog

from smartaudit.core.contracts import DynamicTestSummary
from smartaudit.core.errors import ConfigurationError, DynamicTestError
from smartaudit.modules.proc import run_cmd

logger = structlog.get_logger()


def _ping_rpc(url: str, timeout: float) -> float:
    """Return the round-trip latency of ``eth_blockNumber`` in seconds."""
    t0 = time.monotonic()
    resp = requests.post(
        url,
        json={"jsonrpc": "2.0", "method": "eth_blockNumber", "params": [], "id": 1},
        timeout=timeout,
    )
    resp.raise_for_status()
    body = resp.json()
    if "result" not in body:
        raise ValueError(f"no result in RPC response: {body.get('error')}")
    return time.monotonic() - t0


async def select_best_rpc(rpc_urls: list[str], *, timeout: float = 10.0) -> str:
    """Pick the lowest-latency endpoint that answers.

    Raises
    ------
    DynamicTestError
        If no endpoint answers.
    """
    if not rpc_urls:
        raise DynamicTestError("No RPC URLs configured")

    results = await asyncio.gather(
        *(asyncio.to_thread(_ping_rpc, url, timeout) for url in rpc_urls),
        return_exceptions=True,
    )
    latencies: list[tuple[float, str]] = []
    for url, outcome in zip(rpc_urls, results):
        if isinstance(outcome, BaseException):
            logger.warning("rpc_ping_failed", rpc=url, error=str(outcome))
            continue
        latencies.append((outcome, url))

    if not latencies:
        raise DynamicTestError("No working RPC URLs found")
    latency, best = min(latencies)
    logger.info("rpc_selected", rpc=best, latency_ms=round(latency * 1000))
    return best


def summarize_report(report: Any, *, rpc_url: str, chain_id: int) -> DynamicTestSummary:
    """Turn the deploy script's JSON report into a :class:`DynamicTestSummary`."""
    if not isinstance(report, dict):
        raise DynamicTestError("deploy report is not a JSON object")
    deployments = [d for d in report.get("deployments") or [] if isinstance(d, dict)]
    transactions = [t for t in report.get("transactions") or [] if isinstance(t, dict)]
    successful = sum(1 for t in transactions if str(t.get("status", "")).lower() == "success")
    return DynamicTestSummary(
        deployed_count=len(deployments),
        tx_count=len(transactions),
        successful_tx=successful,
        failed_tx=len(transactions) - successful,
        rpc_url=rpc_url,
        chain_id=chain_id,
        deployments=deployments,
        transactions=transactions,
    )


class HardhatTestRunner:
    """Compile, deploy and exercise contracts through Hardhat."""

    def __init__(
        self,
        *,
        rpc_urls: list[str],
        private_key: str,
        chain_id: int,
        network: str = "smartaudit",
        deploy_script: str = "scripts/smartaudit-deploy.js",
        npx: str = "npx",
        command_timeout_seconds: float = 600.0,
    ) -> None:
        if not private_key or not rpc_urls:
            raise ConfigurationError("dynamic testing needs a testnet private key and at least one RPC URL")
        self.rpc_urls = rpc_urls
        self.private_key = private_key
        self.chain_id = chain_id
        self.network = network
        self.deploy_script = deploy_script
        self.npx = npx
        self.command_timeout_seconds = command_timeout_seconds

    async def run(self, local_path: Path) -> DynamicTestSummary:
        rpc_url = await select_best_rpc(self.rpc_urls)

        compiled = await self._npx(["hardhat", "compile"], cwd=local_path)
        if compiled.exit_code != 0:
            raise DynamicTestError("Contract compilation failed")
        logger.info("contracts_compiled", path=str(local_path))

        script = local_path / self.deploy_script
        if not script.is_file():
            raise DynamicTestError(f"Deploy script not found: {self.deploy_script}")

        with tempfile.TemporaryDirectory(prefix="smartaudit-dyn-") as tmp:
            report_file = Path(tmp) / "dynamic-report.json"
            env = {
                "SMARTAUDIT_RPC_URL": rpc_url,
                "SMARTAUDIT_PRIVATE_KEY": self.private_key,
                "SMARTAUDIT_CHAIN_ID": str(self.chain_id),
                "SMARTAUDIT_REPORT_PATH": str(report_file),
            }
            deployed = await self._npx(
                ["hardhat", "run", self.deploy_script, "--network", self.network],
                cwd=local_path,
                env=env,
            )
            if deployed.exit_code != 0:
                raise DynamicTestError(f"Deploy script failed (exit {deployed.exit_code})")
            try:
                report = json.loads(report_file.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise DynamicTestError(f"Deploy script produced no readable report: {exc}") from exc

        summary = summarize_report(report, rpc_url=rpc_url, chain_id=self.chain_id)
        logger.info(
            "dynamic_tests_complete",
            deployed=summary.deployed_count,
            transactions=summary.tx_count,
            success_rate=round(summary.success_rate, 1),
        )
        return summary

    async def _npx(self, args: list[str], *, cwd: Path, env: dict[str, str] | None = None):
        try:
            return await run_cmd([self.npx, *args], cwd=cwd, env=env, timeout_seconds=self.command_timeout_seconds)
        except FileNotFoundError as exc:
            raise DynamicTestError("npx not available") from exc
        except asyncio.TimeoutError as exc:
            raise DynamicTestError(f"'npx {' '.join(args[:2])}' timed out") from exc
