"""In-process collaborators for running OpportunityOS without credentials.

The fake analytics data is fixed (no randomness) so a demo run always detects
the same opportunities: two funnel drop-offs and two under-used features. The
NPS sample sits below the threshold but scores under the default minimum.
"""

from __future__ import annotations

from datetime import date
import itertools
import logging
import sys
import time
from typing import Any, Callable, Dict, List, Optional, TextIO

from opportunityos.config import SlackSettings
from opportunityos.domain.analytics import (
    DateRange,
    FeatureUsageView,
    FunnelStep,
    FunnelView,
    NPSResponse,
    SatisfactionView,
)
from opportunityos.domain.opportunity import utc_now
from opportunityos.domain.specs import SpecRequest, SpecResult
from opportunityos.integrations.slack_notifier import SlackNotifier
from opportunityos.integrations.userpilot_client import default_date_range

DEMO_SPEC_BASE_URL = "https://demo.kiro.ai/specs"


class DemoAnalytics:
    def __init__(self, logger: Optional[logging.Logger] = None, today_fn: Optional[Callable[[], date]] = None):
        self._logger = logger or logging.getLogger("opportunityos.demo.analytics")
        self._today_fn = today_fn or date.today

    def _range(self, date_range: Optional[DateRange]) -> DateRange:
        return date_range or default_date_range(self._today_fn())

    def fetch_funnels(self, date_range: Optional[DateRange] = None) -> List[FunnelView]:
        window = self._range(date_range)
        self._logger.debug("Generating demo funnel data")
        return [
            FunnelView(
                funnel_id="funnel-1",
                funnel_name="Onboarding Flow",
                steps=[
                    FunnelStep("Sign Up", 2000, 0.15),
                    FunnelStep("Profile Setup", 1700, 0.35),
                    FunnelStep("First Action", 1105, 0.10),
                ],
                date_range=window,
            ),
            FunnelView(
                funnel_id="funnel-2",
                funnel_name="Checkout Flow",
                steps=[
                    FunnelStep("View Cart", 1000, 0.10),
                    FunnelStep("Enter Payment", 900, 0.45),
                    FunnelStep("Confirm Order", 495, 0.05),
                ],
                date_range=window,
            ),
        ]

    def fetch_satisfaction(self, date_range: Optional[DateRange] = None) -> SatisfactionView:
        window = self._range(date_range)
        self._logger.debug("Generating demo NPS data")
        timestamp = f"{window.end}T12:00:00+00:00"
        detractors = [
            NPSResponse(
                user_id=f"user-{index}",
                score=index % 7,
                timestamp=timestamp,
                feedback="The checkout process is too complicated" if index < 5 else None,
            )
            for index in range(90)
        ]
        passives = [NPSResponse(f"user-passive-{index}", 7 + index % 2, timestamp) for index in range(45)]
        promoters = [NPSResponse(f"user-promoter-{index}", 9 + index % 2, timestamp) for index in range(15)]
        return SatisfactionView(
            score=25.0,
            response_count=150,
            date_range=window,
            detractors=detractors,
            passives=passives,
            promoters=promoters,
        )

    def fetch_feature_usage(self, date_range: Optional[DateRange] = None) -> List[FeatureUsageView]:
        window = self._range(date_range)
        self._logger.debug("Generating demo feature usage data")
        return [
            FeatureUsageView("feature-1", "Advanced Analytics Dashboard", 80, 1000, 0.08, window),
            FeatureUsageView("feature-2", "Export to CSV", 150, 1000, 0.15, window),
            FeatureUsageView("feature-3", "Basic Dashboard", 850, 1000, 0.85, window),
        ]


class ConsoleNotifier(SlackNotifier):
    """A SlackNotifier that prints the Web API calls instead of sending them."""

    def __init__(self, stream: Optional[TextIO] = None, logger: Optional[logging.Logger] = None):
        super().__init__(SlackSettings(channel_id="demo"), logger=logger or logging.getLogger("opportunityos.demo.notifier"))
        self._stream = stream or sys.stdout
        self._counter = itertools.count(1)
        self.calls: List[Dict[str, Any]] = []

    def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append({"method": method, **payload})
        ts = payload.get("ts") or f"{int(time.time())}.{next(self._counter):06d}"
        print(f"[slack:{method}] {payload.get('text', '')}", file=self._stream)
        for block in payload.get("blocks") or []:
            text = block.get("text", {}).get("text") if isinstance(block.get("text"), dict) else None
            if text:
                print(f"    {text}", file=self._stream)
        return {"ok": True, "ts": ts}


class DemoSpecGenerator:
    def __init__(self, stream: Optional[TextIO] = None, logger: Optional[logging.Logger] = None):
        self._stream = stream or sys.stdout
        self._logger = logger or logging.getLogger("opportunityos.demo.specs")
        self.generated: Dict[str, str] = {}
        self.feedback_log: List[Dict[str, Any]] = []

    def generate(self, request: SpecRequest) -> SpecResult:
        spec_ref = f"{DEMO_SPEC_BASE_URL}/{request.opportunity_id}"
        self.generated[request.opportunity_id] = spec_ref
        out = self._stream
        print("=" * 80, file=out)
        print(f"SPEC GENERATED: {request.title}", file=out)
        print(f"\n## Problem Statement\n{request.description}", file=out)
        print("\n## Evidence", file=out)
        for insight in request.evidence.get("insights", []):
            print(f"  • {insight}", file=out)
        print("\n## Success Metrics", file=out)
        for key, value in request.evidence.get("metrics", {}).items():
            print(f"  • Improve {key} from {value}", file=out)
        print(f"\nSpec: {spec_ref}", file=out)
        print("=" * 80, file=out)
        self._logger.info("Demo spec generated", extra={"opportunity_id": request.opportunity_id})
        return SpecResult(spec_ref=spec_ref, generated_at=utc_now())

    def get_status(self, opportunity_id: str) -> Dict[str, Any]:
        spec_ref = self.generated.get(opportunity_id)
        return {"status": "completed" if spec_ref else "unknown", "spec_ref": spec_ref, "error": None}

    def feedback(self, opportunity_id: str, rating: int, actual_impact=None, comments=None) -> None:
        self.feedback_log.append({"opportunity_id": opportunity_id, "rating": rating, "actual_impact": actual_impact or {}})
        self._logger.info("Demo feedback recorded", extra={"opportunity_id": opportunity_id, "rating": rating})
