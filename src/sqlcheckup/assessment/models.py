"""Data models and aggregation helpers for assessment runs."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..exit_codes import ExitCode
from .snapshot import InstanceIdentity, InstanceSnapshot

LOGGER = logging.getLogger(__name__)


class RuleStatus(str, Enum):
    """Outcome of a single best-practice rule."""

    OK = "OK"
    REVIEW = "REVIEW"
    NOT_APPLICABLE = "N/A"

    @property
    def is_review(self) -> bool:
        """Return ``True`` when the status needs operator attention."""
        return self is RuleStatus.REVIEW

    @property
    def is_counted(self) -> bool:
        """Return ``True`` when the status contributes to OK/REVIEW tallies."""
        return self is not RuleStatus.NOT_APPLICABLE


@dataclass(slots=True, frozen=True)
class RuleVerdict:
    """Status plus human-readable explanation produced by a rule."""

    status: RuleStatus
    detail: str

    @classmethod
    def ok(cls, detail: str) -> RuleVerdict:
        """Build an OK verdict."""
        return cls(RuleStatus.OK, detail)

    @classmethod
    def review(cls, detail: str) -> RuleVerdict:
        """Build a REVIEW verdict."""
        return cls(RuleStatus.REVIEW, detail)

    @classmethod
    def not_applicable(cls, detail: str) -> RuleVerdict:
        """Build a NOT_APPLICABLE verdict."""
        return cls(RuleStatus.NOT_APPLICABLE, detail)


@dataclass(slots=True, frozen=True)
class RuleDefinition:
    """Metadata + callable for a rule."""

    id: str
    title: str
    evaluate: Callable[[InstanceSnapshot], RuleVerdict]


@dataclass(slots=True, frozen=True)
class InstanceReport:
    """Verdicts and descriptive facts for one inspected instance."""

    identity: InstanceIdentity
    verdicts: Mapping[str, RuleVerdict]
    version_label: str = "Unknown"
    build_number: str | None = None
    edition: str | None = None
    physical_memory_mb: int | None = None
    cpu_count: int | None = None
    numa_node_count: int | None = None
    max_dop: int | None = None
    recommended_max_dop: int | None = None
    unavailable_categories: Sequence[str] = field(default_factory=tuple)

    def status_of(self, rule_id: str) -> RuleStatus | None:
        """Return the status recorded for *rule_id*, if any."""
        verdict = self.verdicts.get(rule_id)
        return verdict.status if verdict is not None else None


@dataclass(slots=True, frozen=True)
class RuleTally:
    """OK/REVIEW counters for one rule across the run."""

    ok: int = 0
    review: int = 0
    not_applicable: int = 0

    @property
    def total(self) -> int:
        """Return the number of counted (OK + REVIEW) verdicts."""
        return self.ok + self.review


@dataclass(slots=True, frozen=True)
class TargetFailure:
    """A target that produced no reports, with the logged reason."""

    target: str
    reason: str


@dataclass(slots=True, frozen=True)
class AssessmentRun:
    """Deduplicated reports plus per-rule tallies for a complete run."""

    reports: Sequence[InstanceReport]
    tallies: Mapping[str, RuleTally]
    failures: Sequence[TargetFailure] = field(default_factory=tuple)
    metadata: Mapping[str, Any] | None = None

    @property
    def exit_code(self) -> int:
        """Return the process exit code; a run without reports fails."""
        if not self.reports:
            return int(ExitCode.PROVIDER)
        return int(ExitCode.OK)

    @property
    def review_count(self) -> int:
        """Return the total number of REVIEW verdicts."""
        return sum(tally.review for tally in self.tallies.values())


def aggregate_reports(
    reports: Iterable[InstanceReport],
    *,
    sort: bool = True,
) -> list[InstanceReport]:
    """Drop duplicate identities, keeping the first report seen.

    With ``sort`` enabled the reports are ordered by (server, instance) first,
    so the kept duplicate does not depend on worker completion order.
    """
    ordered = list(reports)
    if sort:
        ordered.sort(key=lambda report: report.identity.sort_key())
    seen: set[tuple[str, str]] = set()
    unique: list[InstanceReport] = []
    for report in ordered:
        key = report.identity.sort_key()
        if key in seen:
            LOGGER.debug("Discarding duplicate report for %s", report.identity)
            continue
        seen.add(key)
        unique.append(report)
    return unique


def tally_verdicts(
    reports: Iterable[InstanceReport],
    rule_ids: Sequence[str],
) -> dict[str, RuleTally]:
    """Count OK/REVIEW/N/A per rule id, preserving *rule_ids* order."""
    counters: dict[str, dict[RuleStatus, int]] = {
        rule_id: {status: 0 for status in RuleStatus} for rule_id in rule_ids
    }
    for report in reports:
        for rule_id, verdict in report.verdicts.items():
            bucket = counters.setdefault(rule_id, {status: 0 for status in RuleStatus})
            bucket[verdict.status] += 1
    return {
        rule_id: RuleTally(
            ok=bucket[RuleStatus.OK],
            review=bucket[RuleStatus.REVIEW],
            not_applicable=bucket[RuleStatus.NOT_APPLICABLE],
        )
        for rule_id, bucket in counters.items()
    }


def build_run(
    reports: Iterable[InstanceReport],
    rule_ids: Sequence[str],
    *,
    failures: Sequence[TargetFailure] = (),
    metadata: Mapping[str, Any] | None = None,
    sort: bool = True,
) -> AssessmentRun:
    """Create a full :class:`AssessmentRun` from raw worker reports."""
    unique = aggregate_reports(reports, sort=sort)
    tallies = tally_verdicts(unique, rule_ids)
    return AssessmentRun(
        reports=tuple(unique),
        tallies=tallies,
        failures=tuple(failures),
        metadata=metadata,
    )
