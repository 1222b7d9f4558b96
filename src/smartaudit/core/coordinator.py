"""Pipeline coordinator: drives one audit run through its stages.

Stage sequence::

    acquisition -> validation -> analysis (fan-out/fan-in) -> dynamic_test
                -> fixes -> publication

Hard stages (acquisition, validation, analysis) abort the run on failure.
Analysis only counts as failed when no analyzer produced output.  Soft
stages (dynamic_test, fixes, publication) record their failure in
``stage_results`` and the run carries on.  A gated-off stage is recorded
as ``skipped`` with the reason in its payload.

Every collaborator call runs under ``asyncio.wait_for`` with a per-stage
budget.  Milestone notifications are delivered in order on background
tasks and never influence the run's status.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Awaitable, Mapping

import structlog

from smartaudit.core.contracts import (
    AcquiredSource,
    ContentValidator,
    DynamicTestRunner,
    DynamicTestSummary,
    FixBatch,
    FixGenerator,
    NotificationSink,
    Publisher,
    SourceAcquirer,
    StaticAnalyzer,
    ValidationSummary,
)
from smartaudit.core.errors import AnalyzerError, ReportWriteFailed, RunNotFound, StageError, StageTimeout
from smartaudit.core.logging import bind_run_context
from smartaudit.core.models import AuditOptions, AuditRun, RunStatus, Stage, StageOutcome, StageResult
from smartaudit.core.normalizer import SourceOutput, is_well_formed, normalize, top_k
from smartaudit.core.reports import write_report
from smartaudit.core.state import transition, utc_now
from smartaudit.core.store import AuditStore
from smartaudit.modules.redact import validate_repo_ref

logger = structlog.get_logger()

NOTIFICATION_DRAIN_SECONDS = 30.0


class _HardStageFailed(Exception):
    """Internal signal: a hard stage failed and the run must stop."""

    def __init__(self, stage: Stage, message: str) -> None:
        super().__init__(message)
        self.stage = stage


def _advance(run: AuditRun, to_status: RunStatus, *, error: str | None = None) -> None:
    event = transition(run, to_status, error=error)
    logger.debug(
        "run_transition",
        run_id=event.run_id,
        from_status=event.from_status.value,
        to_status=event.to_status.value,
        at=event.at_utc,
    )


def _payload_of(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    return to_dict() if callable(to_dict) else value


class PipelineCoordinator:
    """Runs audits against injected collaborators and records them in *store*.

    ``dynamic_runner`` and ``publisher`` are ``None`` when their credentials
    are not configured; the matching stages are then skipped.
    """

    def __init__(
        self,
        *,
        store: AuditStore,
        acquirer: SourceAcquirer,
        validator: ContentValidator,
        analyzers: list[StaticAnalyzer],
        fix_generator: FixGenerator,
        notifier: NotificationSink,
        reports_dir: Path,
        dynamic_runner: DynamicTestRunner | None = None,
        publisher: Publisher | None = None,
        enable_static_analysis: bool = True,
        enable_dynamic_testing: bool = True,
        enable_auto_pr: bool = True,
        stage_timeout_seconds: float = 300.0,
        dynamic_test_timeout_seconds: float = 900.0,
        notification_top_k: int = 5,
    ) -> None:
        self.store = store
        self.acquirer = acquirer
        self.validator = validator
        self.analyzers = list(analyzers)
        self.fix_generator = fix_generator
        self.notifier = notifier
        self.reports_dir = reports_dir
        self.dynamic_runner = dynamic_runner
        self.publisher = publisher
        self.enable_static_analysis = enable_static_analysis
        self.enable_dynamic_testing = enable_dynamic_testing
        self.enable_auto_pr = enable_auto_pr
        self.stage_timeout_seconds = stage_timeout_seconds
        self.dynamic_test_timeout_seconds = dynamic_test_timeout_seconds
        self.notification_top_k = notification_top_k

        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._deliveries: dict[str, asyncio.Task[None]] = {}

    # ── Control surface ─────────────────────────────────────
    def start_audit(self, repo_ref: str, options: AuditOptions | Mapping[str, Any] | None = None) -> str:
        """Register a queued run and schedule it on the running event loop.

        Returns the run id immediately.

        Raises
        ------
        ValueError
            If *repo_ref* or *options* are invalid (pydantic's
            ``ValidationError`` is a ``ValueError``).
        """
        repo_ref = validate_repo_ref(repo_ref)
        if options is None:
            options = AuditOptions()
        elif not isinstance(options, AuditOptions):
            options = AuditOptions.model_validate(dict(options))

        loop = asyncio.get_running_loop()
        run = AuditRun(id=self._new_run_id(), repo_ref=repo_ref, options=options, started_at=utc_now())
        self.store.set(run)
        logger.info("audit_queued", run_id=run.id, repo=repo_ref, branch=options.branch)

        task = loop.create_task(self._execute(run), name=f"smartaudit:{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda t, run_id=run.id: self._on_task_done(run_id, t))
        return run.id

    def get_run(self, run_id: str) -> AuditRun:
        """Raises :class:`RunNotFound` for unknown ids."""
        return self.store.get(run_id)

    def list_runs(self) -> list[AuditRun]:
        return self.store.list()

    async def wait(self, run_id: str) -> AuditRun:
        """Block until *run_id* reaches a terminal state."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait({task})
        return self.store.get(run_id)

    async def run_audit(self, repo_ref: str, options: AuditOptions | Mapping[str, Any] | None = None) -> AuditRun:
        return await self.wait(self.start_audit(repo_ref, options))

    async def shutdown(self) -> int:
        """Cancel every in-flight run and wait for it to settle.

        Cancelled runs end ``failed``.  Returns the number of runs cancelled.
        """
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        return len(tasks)

    def _new_run_id(self) -> str:
        base = f"audit-{int(time.time() * 1000)}"
        run_id, n = base, 0
        while run_id in self._tasks or self._known(run_id):
            n += 1
            run_id = f"{base}-{n}"
        return run_id

    def _known(self, run_id: str) -> bool:
        try:
            self.store.get(run_id)
        except RunNotFound:
            return False
        return True

    def _on_task_done(self, run_id: str, task: asyncio.Task[None]) -> None:
        self._tasks.pop(run_id, None)
        if not task.cancelled():
            return
        # Cancelled before the coroutine could record anything.
        try:
            run = self.store.get(run_id)
        except RunNotFound:
            return
        if not run.status.is_terminal:
            _advance(run, RunStatus.FAILED, error="audit cancelled")
            self.store.set(run)
            logger.warning("audit_cancelled", run_id=run_id)

    # ── Execution ───────────────────────────────────────────
    async def _execute(self, run: AuditRun) -> None:
        bind_run_context(run.id)
        try:
            await self._run_pipeline(run)
        finally:
            self._deliveries.pop(run.id, None)

    async def _run_pipeline(self, run: AuditRun) -> None:
        payloads: dict[str, Any] = {}
        t0 = time.monotonic()

        try:
            _advance(run, RunStatus.RUNNING)
            self.store.set(run)
            logger.info("audit_started", repo=run.repo_ref, branch=run.options.branch)
            self._notify(
                run.id,
                "audit_started",
                {"run_id": run.id, "repo_ref": run.repo_ref, "branch": run.options.branch},
            )

            source: AcquiredSource = await self._hard_stage(
                run, Stage.ACQUISITION, self.acquirer.acquire(run.repo_ref, run.options.branch), payloads
            )
            validation: ValidationSummary = await self._hard_stage(
                run, Stage.VALIDATION, self.validator.validate(source.local_path), payloads
            )
            self._notify(
                run.id,
                "acquisition_complete",
                {
                    "run_id": run.id,
                    "repo_ref": run.repo_ref,
                    "commit": source.commit,
                    "file_count": validation.file_count,
                },
            )

            await self._analysis_stage(run, source.local_path, payloads)
            dynamic = await self._dynamic_stage(run, source.local_path, payloads)
            await self._fixes_stage(run, source.local_path, payloads)
            await self._publication_stage(run, source.local_path, dynamic, payloads)
        except _HardStageFailed as exc:
            _advance(run, RunStatus.FAILED, error=str(exc))
            logger.error("audit_failed", stage=exc.stage.value, error=str(exc))
        except asyncio.CancelledError:
            if not run.status.is_terminal:
                _advance(run, RunStatus.FAILED, error="audit cancelled")
                self.store.set(run)
                await asyncio.shield(self._persist(run, payloads))
            logger.warning("audit_cancelled")
            raise
        except Exception as exc:
            # Coordinator bug or unexpected collaborator behaviour outside a stage.
            _advance(run, RunStatus.FAILED, error=f"internal error: {type(exc).__name__}: {exc}")
            logger.exception("audit_crashed")
        else:
            _advance(run, RunStatus.COMPLETED)
            logger.info(
                "audit_completed",
                findings=len(run.findings),
                fixes=len(run.fixes),
                degraded=run.degraded,
                duration_s=round(time.monotonic() - t0, 2),
            )

        self.store.set(run)
        await self._persist(run, payloads)
        self._notify(run.id, *self._terminal_event(run, time.monotonic() - t0))
        await self._drain_notifications(run.id)

    async def _persist(self, run: AuditRun, payloads: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, run, payloads)

    def _write(self, run: AuditRun, payloads: dict[str, Any]) -> None:
        try:
            path = write_report(self.reports_dir, run, payloads)
        except ReportWriteFailed as exc:
            run.report_error = str(exc)
            logger.error("report_write_failed", run_id=run.id, error=str(exc))
        else:
            run.report_path = str(path)
        self.store.set(run)

    def _terminal_event(self, run: AuditRun, duration: float) -> tuple[str, dict[str, Any]]:
        if run.status is RunStatus.FAILED:
            return "audit_failed", {"run_id": run.id, "repo_ref": run.repo_ref, "error": run.error}
        publication = run.stage_results.get(Stage.PUBLICATION.value)
        url = None
        if publication is not None and publication.outcome is StageOutcome.SUCCESS:
            url = (publication.payload or {}).get("url")
        return "audit_completed", {
            "run_id": run.id,
            "repo_ref": run.repo_ref,
            "summary": run.summary.to_dict(),
            "fix_count": len(run.fixes),
            "duration_seconds": round(duration, 2),
            "publication_url": url,
            "degraded_stages": [
                name for name, r in run.stage_results.items() if r.outcome is StageOutcome.FAILED
            ],
        }

    # ── Stage plumbing ──────────────────────────────────────
    def _record(
        self,
        run: AuditRun,
        stage: Stage,
        outcome: StageOutcome,
        *,
        started: float | None = None,
        payload: Any = None,
        error: str | None = None,
    ) -> StageResult:
        result = StageResult(
            stage=stage.value,
            outcome=outcome,
            payload=payload,
            error=error,
            duration_seconds=time.monotonic() - started if started is not None else 0.0,
        )
        run.stage_results[stage.value] = result
        self.store.set(run)
        logger.info(
            "stage_finished",
            run_id=run.id,
            stage=stage.value,
            outcome=outcome.value,
            duration_s=round(result.duration_seconds, 2),
            error=error,
        )
        return result

    def _skip(self, run: AuditRun, stage: Stage, reason: str) -> None:
        self._record(run, stage, StageOutcome.SKIPPED, payload={"reason": reason})

    async def _call(self, stage: Stage, awaitable: Awaitable[Any], timeout: float) -> Any:
        """Await one collaborator call under *timeout*, normalising errors.

        Raises
        ------
        StageError
            :class:`StageTimeout` on timeout, the collaborator's own
            ``StageError`` as is, and anything else wrapped.
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StageTimeout(stage.value, timeout) from exc
        except StageError:
            raise
        except Exception as exc:
            raise StageError(f"{type(exc).__name__}: {exc}") from exc

    async def _hard_stage(
        self, run: AuditRun, stage: Stage, awaitable: Awaitable[Any], payloads: dict[str, Any]
    ) -> Any:
        started = time.monotonic()
        try:
            value = await self._call(stage, awaitable, self.stage_timeout_seconds)
        except StageError as exc:
            self._record(run, stage, StageOutcome.FAILED, started=started, error=str(exc))
            raise _HardStageFailed(stage, str(exc)) from exc
        payloads[stage.value] = _payload_of(value)
        self._record(run, stage, StageOutcome.SUCCESS, started=started, payload=payloads[stage.value])
        return value

    async def _analysis_stage(self, run: AuditRun, local_path: Path, payloads: dict[str, Any]) -> None:
        stage = Stage.ANALYSIS
        if not self.enable_static_analysis:
            message = "Static analysis is disabled; it is required for an audit"
            self._record(run, stage, StageOutcome.FAILED, error=message)
            raise _HardStageFailed(stage, message)
        if not self.analyzers:
            message = "No static analyzers configured"
            self._record(run, stage, StageOutcome.FAILED, error=message)
            raise _HardStageFailed(stage, message)

        started = time.monotonic()
        outcomes = await asyncio.gather(
            *(self._call(stage, a.analyze(local_path), self.stage_timeout_seconds) for a in self.analyzers),
            return_exceptions=True,
        )

        outputs: list[SourceOutput] = []
        sources: dict[str, dict[str, Any]] = {}
        failures: list[str] = []
        for analyzer, outcome in zip(self.analyzers, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if not isinstance(outcome, BaseException) and not is_well_formed(outcome):
                outcome = AnalyzerError(analyzer.name, f"returned malformed output ({type(outcome).__name__})")
            if isinstance(outcome, BaseException):
                failures.append(str(outcome))
                sources[analyzer.name] = {"status": "failed", "error": str(outcome)}
                logger.warning("analyzer_failed", run_id=run.id, analyzer=analyzer.name, error=str(outcome))
                continue
            outputs.append(outcome)
            sources[analyzer.name] = {"status": "success", "items": len(outcome.items)}

        if not outputs:
            message = "All analyzers failed: " + "; ".join(failures)
            self._record(run, stage, StageOutcome.FAILED, started=started, payload={"sources": sources}, error=message)
            raise _HardStageFailed(stage, message)

        run.findings = normalize(outputs)
        summary = run.summary
        payloads[stage.value] = {"raw": {o.source: list(o.items) for o in outputs}, "sources": sources}
        self._record(
            run,
            stage,
            StageOutcome.SUCCESS,
            started=started,
            payload={"sources": sources, "finding_count": len(run.findings), "summary": summary.to_dict()},
        )
        self._notify(
            run.id,
            "analysis_complete",
            {
                "run_id": run.id,
                "summary": summary.to_dict(),
                "top_findings": [f.to_dict() for f in top_k(run.findings, self.notification_top_k)],
                "failed_analyzers": [name for name, s in sources.items() if s["status"] == "failed"],
            },
        )

    async def _dynamic_stage(
        self, run: AuditRun, local_path: Path, payloads: dict[str, Any]
    ) -> DynamicTestSummary | None:
        stage = Stage.DYNAMIC_TEST
        if not self.enable_dynamic_testing:
            self._skip(run, stage, "dynamic testing disabled in settings")
            return None
        if not run.options.run_dynamic_tests:
            self._skip(run, stage, "dynamic testing not requested")
            return None
        if self.dynamic_runner is None:
            self._skip(run, stage, "testnet private key or RPC URLs not configured")
            return None

        started = time.monotonic()
        try:
            summary: DynamicTestSummary = await self._call(
                stage, self.dynamic_runner.run(local_path), self.dynamic_test_timeout_seconds
            )
        except StageError as exc:
            self._record(run, stage, StageOutcome.FAILED, started=started, error=str(exc))
            return None

        payloads[stage.value] = summary.to_dict()
        self._record(run, stage, StageOutcome.SUCCESS, started=started, payload=payloads[stage.value])
        self._notify(run.id, "dynamic_test_complete", {"run_id": run.id, **summary.to_dict()})
        return summary

    async def _fixes_stage(self, run: AuditRun, local_path: Path, payloads: dict[str, Any]) -> None:
        stage = Stage.FIXES
        started = time.monotonic()
        try:
            batch: FixBatch = await self._call(
                stage, self.fix_generator.generate(list(run.findings), local_path), self.stage_timeout_seconds
            )
        except StageError as exc:
            self._record(run, stage, StageOutcome.FAILED, started=started, error=str(exc))
            return

        run.fixes = list(batch.fixes)
        payloads[stage.value] = batch.to_dict()
        self._record(
            run,
            stage,
            StageOutcome.SUCCESS,
            started=started,
            payload={"fix_count": len(batch.fixes), "errors": list(batch.errors)},
        )

    async def _publication_stage(
        self,
        run: AuditRun,
        local_path: Path,
        dynamic: DynamicTestSummary | None,
        payloads: dict[str, Any],
    ) -> None:
        stage = Stage.PUBLICATION
        if not self.enable_auto_pr:
            self._skip(run, stage, "publication disabled in settings")
            return
        if not run.options.create_publication:
            self._skip(run, stage, "publication not requested")
            return
        if self.publisher is None:
            self._skip(run, stage, "GitHub token not configured")
            return

        started = time.monotonic()
        try:
            publication = await self._call(
                stage,
                self.publisher.publish(
                    run_id=run.id,
                    repo_ref=run.repo_ref,
                    branch=run.options.branch,
                    local_path=local_path,
                    findings=list(run.findings),
                    fixes=list(run.fixes),
                    dynamic_summary=dynamic,
                ),
                self.stage_timeout_seconds,
            )
        except StageError as exc:
            self._record(run, stage, StageOutcome.FAILED, started=started, error=str(exc))
            return

        payloads[stage.value] = publication.to_dict()
        self._record(run, stage, StageOutcome.SUCCESS, started=started, payload=payloads[stage.value])
        self._notify(
            run.id,
            "publication_complete",
            {"run_id": run.id, "url": publication.url, "branch": publication.branch, "fix_count": len(run.fixes)},
        )

    # ── Notifications ───────────────────────────────────────
    def _notify(self, run_id: str, event_type: str, payload: dict[str, Any]) -> None:
        """Queue *event_type* for delivery after the run's previous event."""
        previous = self._deliveries.get(run_id)
        self._deliveries[run_id] = asyncio.get_running_loop().create_task(
            self._deliver(previous, event_type, payload), name=f"notify:{run_id}:{event_type}"
        )

    async def _deliver(
        self, previous: asyncio.Task[None] | None, event_type: str, payload: dict[str, Any]
    ) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        try:
            await self.notifier.notify(event_type, payload)
        except Exception as exc:
            logger.warning("notification_failed", event_type=event_type, run_id=payload.get("run_id"), error=str(exc))

    async def _drain_notifications(self, run_id: str) -> None:
        last = self._deliveries.pop(run_id, None)
        if last is None:
            return
        done, _ = await asyncio.wait({last}, timeout=NOTIFICATION_DRAIN_SECONDS)
        if not done:
            logger.warning("notifications_pending", run_id=run_id, timeout_s=NOTIFICATION_DRAIN_SECONDS)
