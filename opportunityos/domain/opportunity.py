from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any, Dict, Iterable, List, Optional

from opportunityos.domain import lifecycle
from opportunityos.errors import InvalidRecordError


Opportunity = Dict[str, Any]

DATA_SOURCE = "userpilot"

IMMUTABLE_FIELDS = ("id", "kind", "score", "title", "description", "evidence", "created_at")

# Set-once handles: may go from empty to a value, never change afterwards.
SET_ONCE_FIELDS = ("external_ref", "spec_ref")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_opportunity(
    *,
    opportunity_id: str,
    kind: str,
    score: int,
    title: str,
    description: str,
    raw_data: Dict[str, Any],
    metrics: Dict[str, float],
    insights: Iterable[str],
    created_at: Optional[str] = None,
) -> Opportunity:
    created = created_at or utc_now()
    return {
        "id": opportunity_id,
        "kind": kind,
        "status": lifecycle.DETECTED,
        "score": score,
        "title": title,
        "description": description,
        "evidence": {
            "data_source": DATA_SOURCE,
            "raw_data": raw_data,
            "metrics": dict(metrics),
            "insights": [str(item) for item in insights],
        },
        "external_ref": None,
        "spec_ref": None,
        "impact_record": None,
        "created_at": created,
        "updated_at": created,
    }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise InvalidRecordError(message)


def _validate_metric_map(value: Any, name: str) -> None:
    _require(isinstance(value, dict), f"{name} must be an object")
    for key, metric in value.items():
        _require(isinstance(key, str), f"{name} keys must be strings")
        _require(_is_number(metric), f"{name}.{key} must be a number")


def validate_record(record: Any) -> None:
    """Raise InvalidRecordError unless ``record`` satisfies every record invariant."""
    _require(isinstance(record, dict), "record must be an object")

    record_id = record.get("id")
    _require(isinstance(record_id, str) and bool(record_id.strip()), "missing or invalid id")
    _require(record.get("kind") in lifecycle.ALL_KINDS, f"invalid kind {record.get('kind')!r}")

    status = record.get("status")
    _require(status in lifecycle.ALL_STATUSES, f"invalid status {status!r}")

    score = record.get("score")
    _require(isinstance(score, int) and not isinstance(score, bool), "score must be an integer")
    _require(0 <= score <= 100, "score must be between 0 and 100")

    _require(isinstance(record.get("title"), str), "title must be a string")
    _require(isinstance(record.get("description"), str), "description must be a string")

    evidence = record.get("evidence")
    _require(isinstance(evidence, dict), "evidence must be an object")
    _require(isinstance(evidence.get("data_source"), str), "evidence.data_source must be a string")
    _validate_metric_map(evidence.get("metrics"), "evidence.metrics")
    insights = evidence.get("insights")
    _require(
        isinstance(insights, list) and all(isinstance(item, str) for item in insights),
        "evidence.insights must be a list of strings",
    )

    for field_name in ("created_at", "updated_at"):
        value = record.get(field_name)
        _require(isinstance(value, str) and bool(value), f"{field_name} must be a timestamp string")

    external_ref = record.get("external_ref")
    _require(external_ref is None or (isinstance(external_ref, str) and bool(external_ref)), "invalid external_ref")

    spec_ref = record.get("spec_ref")
    _require(spec_ref is None or (isinstance(spec_ref, str) and bool(spec_ref)), "invalid spec_ref")
    if status in lifecycle.SPEC_BEARING_STATUSES:
        _require(spec_ref is not None, f"status {status!r} requires spec_ref")
    else:
        _require(spec_ref is None, f"spec_ref is not allowed in status {status!r}")

    impact = record.get("impact_record")
    if status == lifecycle.SHIPPED:
        _require(isinstance(impact, dict), "shipped opportunities require impact_record")
        _validate_metric_map(impact.get("metrics_before"), "impact_record.metrics_before")
        _validate_metric_map(impact.get("metrics_after"), "impact_record.metrics_after")
        _require(isinstance(impact.get("measured_at"), str), "impact_record.measured_at must be a timestamp string")
    else:
        _require(impact is None, f"impact_record is not allowed in status {status!r}")

    try:
        json.dumps(record, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise InvalidRecordError(f"record is not JSON serializable: {exc}") from exc


def validate_update(previous: Opportunity, merged: Opportunity) -> None:
    validate_record(merged)

    for field_name in IMMUTABLE_FIELDS:
        _require(merged.get(field_name) == previous.get(field_name), f"{field_name} is immutable")

    for field_name in SET_ONCE_FIELDS:
        before = previous.get(field_name)
        if before is not None:
            _require(merged.get(field_name) == before, f"{field_name} cannot be changed once set")

    old_status = previous.get("status")
    new_status = merged.get("status")
    if old_status != new_status:
        _require(
            lifecycle.can_transition(str(old_status), str(new_status)),
            f"status change {old_status} -> {new_status} is not a lifecycle edge",
        )


def summarize(records: List[Opportunity]) -> Dict[str, int]:
    counts = {status: 0 for status in sorted(lifecycle.ALL_STATUSES)}
    for record in records:
        status = str(record.get("status", ""))
        if status in counts:
            counts[status] += 1
    return counts
