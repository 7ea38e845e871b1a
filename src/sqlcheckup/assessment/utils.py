"""Utility helpers for serialising assessment runs."""
from __future__ import annotations

from collections.abc import Mapping, Sequence

from .models import AssessmentRun, InstanceReport, RuleStatus


def _sanitize_payload(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize_payload(item) for item in value]
    return str(value)


def _serialize_instance(report: InstanceReport) -> dict[str, object]:
    payload: dict[str, object] = {
        "server": report.identity.server_name,
        "instance": report.identity.instance_name,
        "version": report.version_label,
        "build": report.build_number,
        "edition": report.edition,
        "memory_mb": report.physical_memory_mb,
        "cpus": report.cpu_count,
        "numa_nodes": report.numa_node_count,
        "max_dop": report.max_dop,
        "recommended_max_dop": report.recommended_max_dop,
        "rules": {
            rule_id: {"status": verdict.status.value, "detail": verdict.detail}
            for rule_id, verdict in report.verdicts.items()
        },
    }
    if report.unavailable_categories:
        payload["unavailable_categories"] = list(report.unavailable_categories)
    return payload


def serialize_run(run: AssessmentRun) -> dict[str, object]:
    """Convert an assessment run into a JSON-serialisable mapping."""
    tallies = {
        rule_id: {
            RuleStatus.OK.value: tally.ok,
            RuleStatus.REVIEW.value: tally.review,
            RuleStatus.NOT_APPLICABLE.value: tally.not_applicable,
        }
        for rule_id, tally in run.tallies.items()
    }
    summary_payload = {
        "instances": len(run.reports),
        "review": run.review_count,
        "failed_targets": len(run.failures),
        "exit_code": run.exit_code,
        "tallies": tallies,
    }
    failures_payload = [
        {"target": failure.target, "reason": failure.reason} for failure in run.failures
    ]
    metadata_payload = _sanitize_payload(run.metadata) if run.metadata else {}
    return {
        "summary": summary_payload,
        "instances": [_serialize_instance(report) for report in run.reports],
        "failures": failures_payload,
        "metadata": metadata_payload,
    }


__all__ = ["serialize_run"]
