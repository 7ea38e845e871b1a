"""Tests for the assessment orchestrator and target worker."""

from __future__ import annotations

import threading
import time
from datetime import datetime

import pytest

from sqlcheckup.assessment import (
    AssessmentEngine,
    ExecutorOptions,
    RuleDefinition,
    RuleStatus,
    RuleVerdict,
    TargetWorker,
    build_instance_report,
    collect_rules,
    run_targets,
)
from sqlcheckup.assessment.engine import TargetOutcome, evaluate_snapshot
from sqlcheckup.assessment.snapshot import BackupRecord, InstanceIdentity
from sqlcheckup.providers import InventoryInstanceResolver
from sqlcheckup.targets import Target, TargetResolutionError


class _FailingResolver:
    def resolve(self, target: Target):
        raise TargetResolutionError(f"{target.host}: no such host")


def _engine(provider, *, now: datetime, max_concurrency: int = 4, **kwargs) -> AssessmentEngine:
    return AssessmentEngine(
        provider,
        kwargs.pop("resolver", InventoryInstanceResolver()),
        options=ExecutorOptions(max_concurrency=max_concurrency, query_timeout=30.0),
        clock=lambda: now,
        **kwargs,
    )


def test_worker_builds_report_for_each_instance(fake_provider_factory, now: datetime) -> None:
    """Every pinned instance on a target yields one report."""
    provider = fake_provider_factory()
    worker = TargetWorker(provider, InventoryInstanceResolver(), clock=lambda: now)

    outcome = worker.run(Target("sql01", instances=("DEFAULT", "REPORTING")))

    assert outcome.succeeded
    assert [str(report.identity) for report in outcome.reports] == [
        "sql01/DEFAULT",
        "sql01/REPORTING",
    ]
    report = outcome.reports[0]
    assert report.version_label == "SQL Server 2019"
    assert report.build_number == "15.0.4236.7"
    assert report.max_dop == 8
    assert report.recommended_max_dop == 8
    assert report.unavailable_categories == ()
    assert all(verdict.status is RuleStatus.OK for verdict in report.verdicts.values())


def test_worker_passes_query_timeout(fake_provider_factory, now: datetime) -> None:
    """Every category call carries the configured query timeout."""
    provider = fake_provider_factory()
    worker = TargetWorker(
        provider,
        InventoryInstanceResolver(),
        options=ExecutorOptions(query_timeout=42.0),
        clock=lambda: now,
    )
    worker.run(Target("sql01"))
    assert provider.calls
    assert {timeout for _, _, timeout in provider.calls} == {42.0}


def test_worker_skips_unreachable_instance(fake_provider_factory, now: datetime) -> None:
    """An unreachable instance is skipped while its siblings are assessed."""
    provider = fake_provider_factory(unreachable={"sql01/REPORTING"})
    worker = TargetWorker(provider, InventoryInstanceResolver(), clock=lambda: now)

    outcome = worker.run(Target("sql01", instances=("DEFAULT", "REPORTING")))

    assert outcome.succeeded
    assert [str(report.identity) for report in outcome.reports] == ["sql01/DEFAULT"]
    assert [failure.target for failure in outcome.skipped] == ["sql01/REPORTING"]


def test_worker_fails_target_when_nothing_reachable(fake_provider_factory, now: datetime) -> None:
    """A target whose only instance is unreachable produces an error outcome."""
    provider = fake_provider_factory(unreachable={"sql01/DEFAULT"})
    worker = TargetWorker(provider, InventoryInstanceResolver(), clock=lambda: now)

    outcome = worker.run(Target("sql01"))

    assert not outcome.succeeded
    assert outcome.reports == ()
    assert "login timeout expired" in (outcome.error or "")


def test_worker_resolution_failure(fake_provider_factory) -> None:
    """Resolution errors fail the target without contacting the provider."""
    provider = fake_provider_factory()
    worker = TargetWorker(provider, _FailingResolver())

    outcome = worker.run(Target("missing"))

    assert outcome.error == "missing: no such host"
    assert provider.connected == []


def test_category_failure_degrades_only_dependent_rules(
    fake_provider_factory,
    now: datetime,
) -> None:
    """A failed category only blanks the rules that read it."""
    provider = fake_provider_factory(failing={"sql01/DEFAULT": {"trace_flags"}})
    worker = TargetWorker(provider, InventoryInstanceResolver(), clock=lambda: now)

    (report,) = worker.run(Target("sql01")).reports

    assert report.unavailable_categories == ("trace_flags",)
    assert report.status_of("trace_flags") is RuleStatus.REVIEW
    assert "Data unavailable" in report.verdicts["trace_flags"].detail
    assert report.status_of("memory") is RuleStatus.OK
    assert report.status_of("tempdb") is RuleStatus.OK


def test_missing_server_info_leaves_descriptive_fields_empty(
    fake_provider_factory,
    now: datetime,
) -> None:
    """Without server info the report carries an Unknown version and no topology."""
    provider = fake_provider_factory(failing={"sql01/DEFAULT": {"server_info"}})
    worker = TargetWorker(provider, InventoryInstanceResolver(), clock=lambda: now)

    (report,) = worker.run(Target("sql01")).reports

    assert report.version_label == "Unknown"
    assert report.cpu_count is None
    assert report.recommended_max_dop is None
    assert report.max_dop == 8


def test_evaluate_snapshot_guards_faulty_rule(snapshot_factory) -> None:
    """A rule that raises is reported as REVIEW instead of aborting the instance."""

    def explode(snapshot):
        raise ValueError("boom")

    rules = [
        RuleDefinition("explode", "Explode", explode),
        RuleDefinition("fine", "Fine", lambda snapshot: RuleVerdict.ok("fine")),
    ]
    verdicts = evaluate_snapshot(snapshot_factory(), rules)

    assert verdicts["explode"].status is RuleStatus.REVIEW
    assert "boom" in verdicts["explode"].detail
    assert verdicts["fine"].status is RuleStatus.OK


def test_build_instance_report_orders_verdicts(snapshot_factory) -> None:
    """Verdicts follow the catalogue order."""
    rules = collect_rules()
    report = build_instance_report(snapshot_factory(), rules)
    assert list(report.verdicts) == [rule.id for rule in rules]


def test_run_targets_preserves_input_order() -> None:
    """Outcomes are returned in target order even when completion order differs."""
    delays = {"slow": 0.05, "fast": 0.0}

    class _Worker:
        def run(self, target: Target) -> TargetOutcome:
            time.sleep(delays.get(target.host, 0.0))
            return TargetOutcome(target=target)

    targets = [Target("slow"), Target("fast"), Target("other")]
    outcomes = run_targets(_Worker(), targets, max_concurrency=3)  # type: ignore[arg-type]
    assert [outcome.target.host for outcome in outcomes] == ["slow", "fast", "other"]


def test_run_targets_bounds_concurrency() -> None:
    """No more than ``max_concurrency`` workers run at once."""
    lock = threading.Lock()
    active = 0
    peak = 0

    class _Worker:
        def run(self, target: Target) -> TargetOutcome:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return TargetOutcome(target=target)

    targets = [Target(f"host{index}") for index in range(10)]
    outcomes = run_targets(_Worker(), targets, max_concurrency=3)  # type: ignore[arg-type]
    assert len(outcomes) == 10
    assert peak <= 3


def test_run_targets_converts_unexpected_errors() -> None:
    """A crashing worker yields a failed outcome for that target only."""

    class _Worker:
        def run(self, target: Target) -> TargetOutcome:
            if target.host == "bad":
                raise RuntimeError("kaboom")
            return TargetOutcome(target=target)

    outcomes = run_targets(  # type: ignore[arg-type]
        _Worker(),
        [Target("good"), Target("bad")],
        max_concurrency=1,
    )
    assert outcomes[0].succeeded
    assert not outcomes[1].succeeded
    assert "kaboom" in (outcomes[1].error or "")


def test_run_targets_empty() -> None:
    """No targets means no work."""
    assert run_targets(object(), [], max_concurrency=4) == []  # type: ignore[arg-type]


@pytest.mark.parametrize("max_concurrency", [1, 8])
def test_engine_dedups_duplicate_targets(
    fake_provider_factory,
    now: datetime,
    max_concurrency: int,
) -> None:
    """Duplicate targets produce one report per identity, sorted by server."""
    provider = fake_provider_factory()
    engine = _engine(provider, now=now, max_concurrency=max_concurrency)

    run = engine.run([Target("SQL02"), Target("sql01"), Target("sql02")])

    assert [str(report.identity) for report in run.reports] == ["sql01/DEFAULT", "SQL02/DEFAULT"]
    assert len(provider.connected) == 3
    assert run.tallies["memory"].ok == 2
    assert run.exit_code == 0


def test_engine_records_failures_and_metadata(fake_provider_factory, now: datetime) -> None:
    """Failed targets are listed while other targets still report."""
    provider = fake_provider_factory(unreachable={"down/DEFAULT"})
    engine = _engine(provider, now=now)

    run = engine.run([Target("sql01"), Target("down")], metadata={"source": "test"})

    assert [str(report.identity) for report in run.reports] == ["sql01/DEFAULT"]
    assert [failure.target for failure in run.failures] == ["down"]
    assert run.metadata is not None
    assert run.metadata["target_count"] == 2
    assert run.metadata["failed_targets"] == 1
    assert run.metadata["source"] == "test"
    assert run.metadata["concurrency"] == 4


def test_engine_lists_skipped_instances_of_successful_target(
    fake_provider_factory,
    now: datetime,
) -> None:
    """Skipped instances of a target that still reported are surfaced as failures."""
    provider = fake_provider_factory(unreachable={"sql01/REPORTING"})
    engine = _engine(provider, now=now)

    run = engine.run([Target("sql01", instances=("DEFAULT", "REPORTING"))])

    assert len(run.reports) == 1
    assert [failure.target for failure in run.failures] == ["sql01/REPORTING"]


def test_engine_without_reports_fails(fake_provider_factory, now: datetime) -> None:
    """A run where every target fails exits with the provider code."""
    provider = fake_provider_factory(unreachable={"a/DEFAULT", "b/DEFAULT"})
    run = _engine(provider, now=now).run([Target("a"), Target("b")])

    assert run.reports == ()
    assert run.exit_code == 4
    assert len(run.failures) == 2


def test_engine_tallies_exclude_not_applicable(
    fake_provider_factory,
    snapshot_factory,
    now: datetime,
) -> None:
    """SIMPLE-only instances add to the N/A tally, not OK or REVIEW."""
    simple = snapshot_factory(
        InstanceIdentity("simple"),
        backup_history=(BackupRecord("sales", "SIMPLE", now, None),),
    )
    provider = fake_provider_factory(snapshots={"simple/DEFAULT": simple})
    run = _engine(provider, now=now).run([Target("simple"), Target("sql01")])

    tally = run.tallies["log_backup"]
    assert (tally.ok, tally.review, tally.not_applicable) == (1, 0, 1)
    assert tally.total == 1


def test_engine_uses_fqdn_identities(fake_provider_factory, now: datetime) -> None:
    """With FQDN enabled the identity carries the qualified host name."""
    provider = fake_provider_factory()
    engine = _engine(provider, now=now, resolver=InventoryInstanceResolver(use_fqdn=True))

    run = engine.run([Target("sql01", domain="corp.example")])

    assert run.reports[0].identity.server_name == "sql01.corp.example"
