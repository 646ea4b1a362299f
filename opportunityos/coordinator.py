from __future__ import annotations

import contextvars
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
import logging
import threading
import uuid
from typing import Any, Dict, List, Optional

from opportunityos.domain import lifecycle
from opportunityos.domain.analytics import DateRange
from opportunityos.domain.opportunity import Opportunity, utc_now
from opportunityos.domain.specs import SpecRequest
from opportunityos.errors import (
    AlreadyExistsError,
    CollaboratorError,
    IllegalTransitionError,
    NotFoundError,
    OpportunityOSError,
)
from opportunityos.logging_config import clear_run_id, opportunity_context, set_run_id
from opportunityos.opportunity_detector import OpportunityDetector
from opportunityos.opportunity_store import OpportunityStore


GENERATE_SPEC = "generate_spec"
SHIP = "ship"

FETCH_WORKERS = 3


@dataclass
class DetectionReport:
    run_id: str
    started_at: str
    finished_at: Optional[str] = None
    candidates: int = 0
    created: List[str] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LifecycleCoordinator:
    """
    Owns every status change of an opportunity.

    Collaborators are duck-typed:
    - ``analytics``: ``fetch_funnels(date_range)``, ``fetch_satisfaction(date_range)``,
      ``fetch_feature_usage(date_range)``
    - ``notifier``: ``post(opportunity) -> ts``, ``update(ts, opportunity)``, ``post_alert(text)``
    - ``spec_generator``: ``generate(SpecRequest) -> SpecResult``,
      ``feedback(opportunity_id, rating, actual_impact)``

    All read-validate-write sequences on one opportunity run under that
    opportunity's lock; detection runs are serialized by a run lock.
    """

    def __init__(
        self,
        store: OpportunityStore,
        detector: OpportunityDetector,
        analytics: Any,
        notifier: Any,
        spec_generator: Any,
        *,
        auto_generate_specs: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.detector = detector
        self.analytics = analytics
        self.notifier = notifier
        self.spec_generator = spec_generator
        self.auto_generate_specs = auto_generate_specs
        self._logger = logger or logging.getLogger("opportunityos.coordinator")
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._run_lock = threading.Lock()

    def _lock_for(self, opportunity_id: str) -> threading.Lock:
        # One lock per stored id. Records are never deleted, so the map is bounded by the store.
        with self._locks_guard:
            return self._locks.setdefault(opportunity_id, threading.Lock())

    def _discard_lock(self, opportunity_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(opportunity_id, None)

    def _require(self, opportunity_id: str) -> Opportunity:
        opportunity = self.store.get(opportunity_id)
        if opportunity is None:
            # Unknown ids (stale or forged clicks) must not grow the lock map.
            self._discard_lock(opportunity_id)
            raise NotFoundError(f"opportunity with id {opportunity_id} not found")
        return opportunity

    def _notify_update(self, opportunity: Opportunity) -> None:
        ts = opportunity.get("external_ref")
        if not ts:
            self._logger.debug("No notification to update", extra={"opportunity_id": opportunity["id"]})
            return
        try:
            self.notifier.update(ts, opportunity)
        except Exception:
            self._logger.exception(
                "Failed to update notification",
                extra={"opportunity_id": opportunity["id"], "status": opportunity["status"]},
            )

    def _alert(self, text: str) -> None:
        try:
            self.notifier.post_alert(text)
        except Exception:
            self._logger.exception("Failed to post alert")

    # Human actions

    def handle_action(self, opportunity_id: str, action: str) -> Opportunity:
        if action not in lifecycle.ACTION_TARGETS:
            raise ValueError(f"unknown action {action!r}")

        with opportunity_context(opportunity_id), self._lock_for(opportunity_id):
            self._logger.info("Handling action", extra={"action": action})
            try:
                opportunity = self._require(opportunity_id)
                if not lifecycle.is_action_allowed(opportunity["status"], action):
                    raise IllegalTransitionError(opportunity_id, opportunity["status"], action)

                updated = self.store.update(opportunity_id, status=lifecycle.ACTION_TARGETS[action])
                self._notify_update(updated)

                if action == lifecycle.PROMOTE and self.auto_generate_specs:
                    return self._generate_spec_locked(updated)
                return updated
            except OpportunityOSError as exc:
                self._logger.warning(
                    "Action failed",
                    extra={"action": action, "error_type": exc.error_type, "error": str(exc)},
                )
                raise

    def generate_spec(self, opportunity_id: str) -> Opportunity:
        with opportunity_context(opportunity_id), self._lock_for(opportunity_id):
            return self._generate_spec_locked(self._require(opportunity_id))

    def _generate_spec_locked(self, opportunity: Opportunity) -> Opportunity:
        opportunity_id = opportunity["id"]
        if opportunity["status"] != lifecycle.PROMOTED:
            raise IllegalTransitionError(opportunity_id, opportunity["status"], GENERATE_SPEC)

        try:
            result = self.spec_generator.generate(SpecRequest.from_opportunity(opportunity))
        except Exception as exc:
            self._logger.exception("Spec generation failed")
            self._revert_to_promoted(opportunity_id)
            self._alert(f"Spec generation failed for '{opportunity['title']}' ({opportunity_id}): {exc}")
            if isinstance(exc, CollaboratorError):
                raise
            raise CollaboratorError("spec_generator", str(exc)) from exc

        updated = self.store.update(opportunity_id, status=lifecycle.SPEC_GENERATED, spec_ref=result.spec_ref)
        self._logger.info("Spec generated", extra={"spec_ref": result.spec_ref, "generated_at": result.generated_at})
        self._notify_update(updated)
        return updated

    def _revert_to_promoted(self, opportunity_id: str) -> None:
        # Same-status write: leaves the record promoted and stamps updated_at.
        try:
            self.store.update(opportunity_id, status=lifecycle.PROMOTED)
        except (OpportunityOSError, OSError):
            self._logger.exception("Failed to re-assert promoted status")

    def mark_shipped(
        self,
        opportunity_id: str,
        metrics_before: Dict[str, float],
        metrics_after: Dict[str, float],
        rating: int = 5,
    ) -> Opportunity:
        if not 1 <= int(rating) <= 5:
            raise ValueError("rating must be between 1 and 5")

        with opportunity_context(opportunity_id), self._lock_for(opportunity_id):
            opportunity = self._require(opportunity_id)
            if opportunity["status"] != lifecycle.SPEC_GENERATED:
                raise IllegalTransitionError(opportunity_id, opportunity["status"], SHIP)

            updated = self.store.update(
                opportunity_id,
                status=lifecycle.SHIPPED,
                impact_record={
                    "metrics_before": dict(metrics_before),
                    "metrics_after": dict(metrics_after),
                    "measured_at": utc_now(),
                },
            )
            self._logger.info("Opportunity shipped")
            self._notify_update(updated)

            if updated.get("spec_ref"):
                try:
                    self.spec_generator.feedback(opportunity_id, int(rating), actual_impact=dict(metrics_after))
                except Exception:
                    self._logger.exception("Failed to send spec feedback")
            return updated

    # Detection

    def run_detection(self, date_range: Optional[DateRange] = None) -> DetectionReport:
        with self._run_lock:
            report = DetectionReport(run_id=uuid.uuid4().hex, started_at=utc_now())
            set_run_id(report.run_id)
            try:
                self._logger.info("Starting opportunity detection")
                funnels, satisfaction, features = self._fetch_all(date_range)

                candidates = self.detector.detect_all(funnels, satisfaction, features)
                report.candidates = len(candidates)
                for candidate in candidates:
                    self._record_candidate(candidate, report)

                report.finished_at = utc_now()
                self._logger.info(
                    "Detection run finished",
                    extra={
                        "candidates": report.candidates,
                        "created": len(report.created),
                        "duplicates": len(report.duplicates),
                        "failures": len(report.failures),
                    },
                )
                return report
            finally:
                clear_run_id()

    def _fetch_all(self, date_range: Optional[DateRange]):
        fetchers = (
            ("funnels", self.analytics.fetch_funnels),
            ("satisfaction", self.analytics.fetch_satisfaction),
            ("feature_usage", self.analytics.fetch_feature_usage),
        )
        with ThreadPoolExecutor(max_workers=FETCH_WORKERS, thread_name_prefix="opportunityos-fetch") as pool:
            futures = [
                (name, pool.submit(contextvars.copy_context().run, fetch, date_range))
                for name, fetch in fetchers
            ]
            results = []
            for name, future in futures:
                try:
                    results.append(future.result())
                except Exception as exc:
                    self._logger.exception("Analytics fetch failed", extra={"dataset": name})
                    self._alert(f"Opportunity detection aborted: fetching {name} failed: {exc}")
                    if isinstance(exc, CollaboratorError):
                        raise
                    raise CollaboratorError("analytics", f"fetching {name} failed: {exc}") from exc
        return tuple(results)

    def _record_candidate(self, candidate: Opportunity, report: DetectionReport) -> None:
        opportunity_id = candidate["id"]
        with opportunity_context(opportunity_id), self._lock_for(opportunity_id):
            try:
                created = self.store.create(candidate)
            except AlreadyExistsError:
                self._logger.info("Skipping already known opportunity")
                report.duplicates.append(opportunity_id)
                return
            except (OpportunityOSError, OSError) as exc:
                self._logger.exception("Failed to store candidate")
                report.failures.append({"opportunity_id": opportunity_id, "stage": "store", "error": str(exc)})
                return
            report.created.append(opportunity_id)

            try:
                ts = self.notifier.post(created)
            except Exception as exc:
                self._logger.exception("Failed to post opportunity")
                report.failures.append({"opportunity_id": opportunity_id, "stage": "notify", "error": str(exc)})
                return

            try:
                self.store.update(opportunity_id, external_ref=ts)
            except (OpportunityOSError, OSError) as exc:
                self._logger.exception("Failed to record notification handle")
                report.failures.append({"opportunity_id": opportunity_id, "stage": "external_ref", "error": str(exc)})

    # Reads

    def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        return self.store.get(opportunity_id)

    def list_opportunities(self, status: Optional[str] = None) -> List[Opportunity]:
        if status is None:
            return self.store.get_all()
        if status not in lifecycle.ALL_STATUSES:
            raise ValueError(f"unknown status {status!r}")
        return self.store.get_by_status(status)
