"""Best-practice assessment infrastructure."""

from __future__ import annotations

from .engine import (
    AssessmentEngine,
    ExecutorOptions,
    TargetOutcome,
    TargetWorker,
    build_instance_report,
    evaluate_snapshot,
    run_targets,
)
from .models import (
    AssessmentRun,
    InstanceReport,
    RuleDefinition,
    RuleStatus,
    RuleTally,
    RuleVerdict,
    TargetFailure,
    aggregate_reports,
    build_run,
    tally_verdicts,
)
from .rules import collect_rules, recommend_maxdop
from .snapshot import EngineVersion, InstanceIdentity, InstanceSnapshot

__all__ = [
    "AssessmentEngine",
    "AssessmentRun",
    "EngineVersion",
    "ExecutorOptions",
    "InstanceIdentity",
    "InstanceReport",
    "InstanceSnapshot",
    "RuleDefinition",
    "RuleStatus",
    "RuleTally",
    "RuleVerdict",
    "TargetFailure",
    "TargetOutcome",
    "TargetWorker",
    "aggregate_reports",
    "build_instance_report",
    "build_run",
    "collect_rules",
    "evaluate_snapshot",
    "recommend_maxdop",
    "run_targets",
    "tally_verdicts",
]
