from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
import logging
from typing import List, Optional

from opportunityos.config import DetectionThresholds
from opportunityos.domain import lifecycle
from opportunityos.domain.analytics import FeatureUsageView, FunnelStep, FunnelView, SatisfactionView, view_to_dict
from opportunityos.domain.opportunity import Opportunity, new_opportunity
from opportunityos.fingerprint import fingerprint


def round_score(value: float) -> int:
    """Round half-up; float noise is squashed first so 96.49999999999999 counts as 96.5."""
    normalized = Decimal(str(round(value, 6)))
    return int(normalized.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _clamp(value: float, upper: float) -> float:
    return max(0.0, min(value, upper))


# Payloads without a provider id fall back to names so distinct findings keep distinct ids.
def _funnel_subject(funnel: FunnelView, step: FunnelStep, index: int) -> str:
    if funnel.funnel_id:
        return f"{funnel.funnel_id}:{index}"
    return f"name:{funnel.funnel_name}:{index}:{step.step_name}"


def _feature_subject(feature: FeatureUsageView) -> str:
    return feature.feature_id or f"name:{feature.feature_name}"


class OpportunityDetector:
    """
    Stateless threshold detector over analytics views.

    Every score is a bounded severity term plus a bounded confidence/impact
    term, rounded half-up and filtered against one shared minimum score.
    """

    def __init__(self, thresholds: Optional[DetectionThresholds] = None, logger: Optional[logging.Logger] = None):
        self.thresholds = thresholds or DetectionThresholds()
        self._logger = logger or logging.getLogger("opportunityos.detector")

    def _combine(self, severity: float, impact: float) -> int:
        t = self.thresholds
        return round_score(_clamp(severity, t.severity_cap) + _clamp(impact, t.impact_cap))

    def funnel_score(self, dropoff_rate: float, user_count: int) -> int:
        t = self.thresholds
        severity = dropoff_rate * 100
        impact = user_count / t.funnel_user_scale * t.impact_cap
        return self._combine(severity, impact)

    def satisfaction_score(self, nps_score: float, response_count: int) -> int:
        t = self.thresholds
        severity = (t.nps_threshold - nps_score) * t.nps_severity_multiplier
        impact = response_count / t.nps_response_scale * t.impact_cap
        return self._combine(severity, impact)

    def feature_usage_score(self, usage_rate: float, total_users: int) -> int:
        t = self.thresholds
        severity = (1 - usage_rate) * t.severity_cap
        impact = total_users / t.feature_user_scale * t.impact_cap
        return self._combine(severity, impact)

    def detect_funnel_opportunities(self, funnels: List[FunnelView]) -> List[Opportunity]:
        self._logger.info("Detecting funnel opportunities", extra={"funnel_count": len(funnels)})
        opportunities: List[Opportunity] = []

        for funnel in funnels:
            for index, step in enumerate(funnel.steps):
                if step.dropoff_rate <= self.thresholds.funnel_dropoff_threshold:
                    continue
                score = self.funnel_score(step.dropoff_rate, step.user_count)
                if score >= self.thresholds.min_score:
                    opportunities.append(self._funnel_opportunity(funnel, step, index, score))

        self._logger.info("Detected funnel opportunities", extra={"count": len(opportunities)})
        return opportunities

    def detect_satisfaction_opportunities(self, satisfaction: SatisfactionView) -> List[Opportunity]:
        self._logger.info("Detecting NPS opportunities", extra={"nps_score": satisfaction.score})
        t = self.thresholds
        opportunities: List[Opportunity] = []

        if satisfaction.score < t.nps_threshold and satisfaction.response_count >= t.nps_min_responses:
            score = self.satisfaction_score(satisfaction.score, satisfaction.response_count)
            if score >= t.min_score:
                opportunities.append(self._satisfaction_opportunity(satisfaction, score))

        self._logger.info("Detected NPS opportunities", extra={"count": len(opportunities)})
        return opportunities

    def detect_feature_usage_opportunities(self, features: List[FeatureUsageView]) -> List[Opportunity]:
        self._logger.info("Detecting feature usage opportunities", extra={"feature_count": len(features)})
        t = self.thresholds
        opportunities: List[Opportunity] = []

        for feature in features:
            if feature.usage_rate >= t.feature_usage_threshold or feature.total_users < t.feature_min_users:
                continue
            score = self.feature_usage_score(feature.usage_rate, feature.total_users)
            if score >= t.min_score:
                opportunities.append(self._feature_usage_opportunity(feature, score))

        self._logger.info("Detected feature usage opportunities", extra={"count": len(opportunities)})
        return opportunities

    def detect_all(
        self,
        funnels: List[FunnelView],
        satisfaction: SatisfactionView,
        features: List[FeatureUsageView],
    ) -> List[Opportunity]:
        return [
            *self.detect_funnel_opportunities(funnels),
            *self.detect_satisfaction_opportunities(satisfaction),
            *self.detect_feature_usage_opportunities(features),
        ]

    def _funnel_opportunity(self, funnel: FunnelView, step: FunnelStep, index: int, score: int) -> Opportunity:
        dropoff_percent = f"{step.dropoff_rate * 100:.1f}"
        insights = [
            f"{dropoff_percent}% dropoff at step {index + 1}",
            f"Affecting {step.user_count} users",
        ]
        if step.dropoff_rate > self.thresholds.critical_dropoff_rate:
            insights.append("Critical: Over 50% dropoff rate")

        return new_opportunity(
            opportunity_id=fingerprint(lifecycle.FUNNEL_DROP, _funnel_subject(funnel, step, index), funnel.date_range),
            kind=lifecycle.FUNNEL_DROP,
            score=score,
            title=f"High Dropoff in {funnel.funnel_name} - {step.step_name}",
            description=f'Users are dropping off at "{step.step_name}" with a {dropoff_percent}% dropoff rate.',
            raw_data=view_to_dict(funnel),
            metrics={
                "dropoff_rate": step.dropoff_rate,
                "user_count": step.user_count,
                "step_index": index,
            },
            insights=insights,
        )

    def _satisfaction_opportunity(self, satisfaction: SatisfactionView, score: int) -> Opportunity:
        detractor_count = len(satisfaction.detractors)
        insights = [
            f"NPS score of {satisfaction.score:g} (below {self.thresholds.nps_threshold:g} threshold)",
            f"{detractor_count} detractors out of {satisfaction.response_count} responses",
        ]
        feedback = [item.feedback for item in satisfaction.detractors if item.feedback]
        if feedback:
            insights.append(f'Common feedback: "{feedback[0]}"')

        return new_opportunity(
            opportunity_id=fingerprint(lifecycle.LOW_NPS, "nps", satisfaction.date_range),
            kind=lifecycle.LOW_NPS,
            score=score,
            title=f"Low NPS Score: {satisfaction.score:g}",
            description=f"Product has a low NPS score of {satisfaction.score:g} with {detractor_count} detractors.",
            raw_data=view_to_dict(satisfaction),
            metrics={
                "nps_score": satisfaction.score,
                "detractor_count": detractor_count,
                "response_count": satisfaction.response_count,
            },
            insights=insights,
        )

    def _feature_usage_opportunity(self, feature: FeatureUsageView, score: int) -> Opportunity:
        usage_percent = f"{feature.usage_rate * 100:.1f}"
        insights = [
            f"Only {usage_percent}% usage rate",
            f"{feature.total_users - feature.active_users} users not using this feature",
        ]
        if feature.usage_rate < self.thresholds.critical_usage_rate:
            insights.append("Critical: Less than 10% adoption")

        return new_opportunity(
            opportunity_id=fingerprint(lifecycle.FEATURE_UNDERUSE, _feature_subject(feature), feature.date_range),
            kind=lifecycle.FEATURE_UNDERUSE,
            score=score,
            title=f"Low Adoption of {feature.feature_name}",
            description=f'Feature "{feature.feature_name}" has only {usage_percent}% adoption rate.',
            raw_data=view_to_dict(feature),
            metrics={
                "usage_rate": feature.usage_rate,
                "active_users": feature.active_users,
                "total_users": feature.total_users,
            },
            insights=insights,
        )
