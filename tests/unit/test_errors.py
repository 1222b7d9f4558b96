"""Tests for smartaudit.core.errors — typed domain exceptions."""

from __future__ import annotations

from smartaudit.core.errors import (
    AcquisitionError,
    AnalyzerError,
    ConfigurationError,
    DynamicTestError,
    FixGenerationError,
    NotificationError,
    PublicationError,
    ReportIntegrityError,
    ReportPathTraversal,
    ReportWriteFailed,
    RepoRootNotFound,
    RulesInvalid,
    RulesNotFound,
    RulesTooLarge,
    RunNotFound,
    SmartAuditError,
    StageError,
    StageTimeout,
    StateTransitionInvalid,
    ValidationError,
)


def test_all_errors_inherit_from_smartaudit_error() -> None:
    """Every domain exception must be catchable as SmartAuditError."""
    exceptions: list[SmartAuditError] = [
        RepoRootNotFound(),
        ConfigurationError("x"),
        AcquisitionError("x"),
        ValidationError("x"),
        AnalyzerError("slither", "x"),
        DynamicTestError("x"),
        FixGenerationError("x"),
        PublicationError("x"),
        NotificationError("x"),
        StageTimeout("analysis", 1),
        StateTransitionInvalid("a", "b"),
        RunNotFound("audit-1"),
        RulesNotFound("x"),
        RulesInvalid("x"),
        RulesTooLarge("x"),
        ReportWriteFailed("x"),
        ReportPathTraversal("..", "/r"),
        ReportIntegrityError("x"),
    ]
    for exc in exceptions:
        assert isinstance(exc, SmartAuditError), f"{type(exc).__name__} does not inherit SmartAuditError"


def test_stage_errors_share_a_base() -> None:
    for exc in (
        AcquisitionError("x"),
        ValidationError("x"),
        AnalyzerError("a", "x"),
        DynamicTestError("x"),
        FixGenerationError("x"),
        PublicationError("x"),
        StageTimeout("s", 1),
    ):
        assert isinstance(exc, StageError)
    assert not isinstance(NotificationError("x"), StageError)


def test_repo_root_not_found_message() -> None:
    exc = RepoRootNotFound(start_path="/some/path")
    assert "/some/path" in str(exc)
    assert exc.start_path == "/some/path"


def test_state_transition_invalid_attrs() -> None:
    exc = StateTransitionInvalid("completed", "running")
    assert exc.from_status == "completed"
    assert exc.to_status == "running"
    assert "completed" in str(exc) and "running" in str(exc)


def test_analyzer_error_names_analyzer() -> None:
    exc = AnalyzerError("slither", "not installed")
    assert exc.analyzer == "slither"
    assert str(exc) == "slither: not installed"


def test_stage_timeout_attrs() -> None:
    exc = StageTimeout("dynamic_test", 900)
    assert exc.stage == "dynamic_test"
    assert exc.seconds == 900
    assert "900s" in str(exc)


def test_run_not_found_attrs() -> None:
    exc = RunNotFound("audit-42")
    assert exc.run_id == "audit-42"
    assert "audit-42" in str(exc)


def test_rules_too_large_is_rules_invalid() -> None:
    assert isinstance(RulesTooLarge("x"), RulesInvalid)


def test_path_traversal_is_write_failure() -> None:
    exc = ReportPathTraversal("../etc", "/reports")
    assert isinstance(exc, ReportWriteFailed)
    assert exc.component == "../etc"
    assert exc.reports_root == "/reports"
