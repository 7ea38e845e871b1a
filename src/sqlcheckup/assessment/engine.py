"""Collection and evaluation harness for assessment runs."""

from __future__ import annotations

import concurrent.futures
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from ..providers.metrics import InstanceUnreachableError, collect_snapshot
from ..targets import Target, TargetResolutionError
from .models import (
    AssessmentRun,
    InstanceReport,
    RuleDefinition,
    RuleVerdict,
    TargetFailure,
    build_run,
)
from .rules import MAX_DEGREE_OF_PARALLELISM, collect_rules, recommend_maxdop
from .snapshot import InstanceSnapshot

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..providers.instances import InstanceResolver
    from ..providers.metrics import MetricsProvider

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ExecutorOptions:
    """Runtime tunables for collection runs."""

    max_concurrency: int = 8
    query_timeout: float = 600.0

    @classmethod
    def from_config(cls, config: AppConfig) -> ExecutorOptions:
        """Build options from the resolved application config."""
        return cls(
            max_concurrency=config.executor.max_concurrency,
            query_timeout=config.executor.query_timeout,
        )


@dataclass(slots=True, frozen=True)
class TargetOutcome:
    """Terminal state of one target's unit of work."""

    target: Target
    reports: Sequence[InstanceReport] = field(default_factory=tuple)
    error: str | None = None
    skipped: Sequence[TargetFailure] = field(default_factory=tuple)
    duration_ms: int | None = None

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the target produced at least one report."""
        return self.error is None


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _rule_failure(rule: RuleDefinition, exc: Exception) -> RuleVerdict:
    return RuleVerdict.review(f"Rule '{rule.id}' could not be evaluated: {exc!r}")


def evaluate_snapshot(
    snapshot: InstanceSnapshot,
    rules: Sequence[RuleDefinition],
) -> dict[str, RuleVerdict]:
    """Run every rule against *snapshot*, in catalogue order."""
    verdicts: dict[str, RuleVerdict] = {}
    for rule in rules:
        try:
            verdicts[rule.id] = rule.evaluate(snapshot)
        except Exception as exc:
            LOGGER.error("%s: rule %s raised %r", snapshot.identity, rule.id, exc)
            verdicts[rule.id] = _rule_failure(rule, exc)
    return verdicts


def build_instance_report(
    snapshot: InstanceSnapshot,
    rules: Sequence[RuleDefinition],
) -> InstanceReport:
    """Evaluate *snapshot* and attach its descriptive columns."""
    verdicts = evaluate_snapshot(snapshot, rules)
    info = snapshot.server_info
    config = snapshot.config_values or {}
    recommended: int | None = None
    if info is not None:
        recommended = recommend_maxdop(info.cpu_count, info.numa_node_count, info.major_version)
    return InstanceReport(
        identity=snapshot.identity,
        verdicts=verdicts,
        version_label=snapshot.engine_version.label,
        build_number=info.product_version if info else None,
        edition=info.edition if info else None,
        physical_memory_mb=info.physical_memory_mb if info else None,
        cpu_count=info.cpu_count if info else None,
        numa_node_count=info.numa_node_count if info else None,
        max_dop=config.get(MAX_DEGREE_OF_PARALLELISM),
        recommended_max_dop=recommended,
        unavailable_categories=snapshot.unavailable_categories,
    )


class TargetWorker:
    """Drives one target from instance resolution to reports."""

    def __init__(
        self,
        provider: MetricsProvider,
        resolver: InstanceResolver,
        *,
        rules: Sequence[RuleDefinition] | None = None,
        options: ExecutorOptions | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Store collaborators; nothing is contacted until :meth:`run`."""
        self._provider = provider
        self._resolver = resolver
        self._rules = tuple(rules) if rules is not None else tuple(collect_rules())
        self._options = options or ExecutorOptions()
        self._clock = clock

    @property
    def rules(self) -> Sequence[RuleDefinition]:
        """Return the rules applied to every instance."""
        return self._rules

    def run(self, target: Target) -> TargetOutcome:
        """Inspect every instance on *target*, skipping unreachable ones."""
        start = time.perf_counter()
        try:
            identities = self._resolver.resolve(target)
        except TargetResolutionError as exc:
            LOGGER.warning("%s: target could not be resolved: %s", target, exc)
            return TargetOutcome(target=target, error=str(exc), duration_ms=_duration_ms(start))

        reports: list[InstanceReport] = []
        skipped: list[TargetFailure] = []
        for identity in identities:
            try:
                snapshot = collect_snapshot(
                    self._provider,
                    identity,
                    timeout=self._options.query_timeout,
                    clock=self._clock,
                )
            except InstanceUnreachableError as exc:
                LOGGER.warning("%s: instance unreachable, skipping: %s", identity, exc)
                skipped.append(TargetFailure(target=str(identity), reason=str(exc)))
                continue
            reports.append(build_instance_report(snapshot, self._rules))
            LOGGER.info("%s: assessed", identity)

        error: str | None = None
        if not reports:
            reasons = "; ".join(failure.reason for failure in skipped)
            error = f"No reachable instances ({reasons})" if reasons else "No instances resolved"
        return TargetOutcome(
            target=target,
            reports=tuple(reports),
            error=error,
            skipped=tuple(skipped),
            duration_ms=_duration_ms(start),
        )


def _unexpected_failure(target: Target, exc: Exception, duration_ms: int) -> TargetOutcome:
    LOGGER.error("%s: worker raised an unexpected error: %r", target, exc)
    return TargetOutcome(
        target=target,
        error=f"Unexpected error: {exc}",
        duration_ms=duration_ms,
    )


def _run_single_target(worker: TargetWorker, target: Target) -> TargetOutcome:
    start = time.perf_counter()
    try:
        return worker.run(target)
    except Exception as exc:
        return _unexpected_failure(target, exc, _duration_ms(start))


def run_targets(
    worker: TargetWorker,
    targets: Sequence[Target],
    *,
    max_concurrency: int = 8,
) -> list[TargetOutcome]:
    """Run *worker* over every target with bounded concurrency.

    Outcomes are returned in target order regardless of completion order.
    """
    if not targets:
        return []

    max_workers = max(1, min(max_concurrency, len(targets)))
    if max_workers == 1:
        return [_run_single_target(worker, target) for target in targets]

    outcomes: list[TargetOutcome | None] = [None] * len(targets)
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=max_workers,
        thread_name_prefix="sqlcheckup",
    ) as executor:
        future_to_index: dict[concurrent.futures.Future[TargetOutcome], int] = {}
        for index, target in enumerate(targets):
            future = executor.submit(_run_single_target, worker, target)
            future_to_index[future] = index

        for future in concurrent.futures.as_completed(future_to_index):
            index = future_to_index[future]
            outcomes[index] = future.result()

    return [outcome for outcome in outcomes if outcome is not None]


class AssessmentEngine:
    """Coordinator that fans out over targets and aggregates the run."""

    def __init__(
        self,
        provider: MetricsProvider,
        resolver: InstanceResolver,
        *,
        options: ExecutorOptions | None = None,
        rules: Sequence[RuleDefinition] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Build the shared :class:`TargetWorker`."""
        self._options = options or ExecutorOptions()
        self._worker = TargetWorker(
            provider,
            resolver,
            rules=rules,
            options=self._options,
            clock=clock,
        )

    @property
    def options(self) -> ExecutorOptions:
        """Return the execution options associated with this engine."""
        return self._options

    @property
    def rules(self) -> Sequence[RuleDefinition]:
        """Return the rule catalogue in column order."""
        return self._worker.rules

    def run(
        self,
        targets: Sequence[Target],
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> AssessmentRun:
        """Inspect *targets* and build the aggregated run."""
        start = time.perf_counter()
        outcomes = run_targets(
            self._worker,
            targets,
            max_concurrency=self._options.max_concurrency,
        )
        reports: list[InstanceReport] = []
        failures: list[TargetFailure] = []
        for outcome in outcomes:
            reports.extend(outcome.reports)
            if outcome.error is not None:
                failures.append(TargetFailure(target=str(outcome.target), reason=outcome.error))
            elif outcome.skipped:
                failures.extend(outcome.skipped)

        run_metadata: dict[str, object] = {
            "duration_ms": _duration_ms(start),
            "target_count": len(targets),
            "failed_targets": sum(1 for outcome in outcomes if outcome.error is not None),
            "instances_assessed": len(reports),
            "concurrency": self._options.max_concurrency,
        }
        if metadata:
            run_metadata.update(metadata)
        rule_ids = [rule.id for rule in self.rules]
        return build_run(reports, rule_ids, failures=failures, metadata=run_metadata)
