"""Userpilot analytics client.

Raw v1 API payloads are mapped into the internal analytics views by the explicit
``map_*`` functions below. Each internal field lists the payload keys it may be
read from, in order of preference, and the value used when none is present.
"""

from __future__ import annotations

from datetime import date, timedelta
import logging
import math
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from opportunityos.config import UserpilotSettings
from opportunityos.domain.analytics import (
    DateRange,
    FeatureUsageView,
    FunnelStep,
    FunnelView,
    NPSResponse,
    SatisfactionView,
)
from opportunityos.errors import CollaboratorError
from opportunityos.retry import retry


DEFAULT_WINDOW_DAYS = 30

_FUNNEL_ID_KEYS = ("id", "funnel_id")
_FUNNEL_NAME_KEYS = ("name", "funnel_name")
_STEP_NAME_KEYS = ("name", "step_name")
_STEP_USERS_KEYS = ("user_count", "users")
_STEP_DROPOFF_KEYS = ("dropoff_rate", "drop_rate")
_NPS_SCORE_KEYS = ("score", "nps_score")
_NPS_RESPONSES_KEYS = ("response_count", "total_responses")
_RESPONSE_USER_KEYS = ("user_id", "userId")
_FEATURE_ID_KEYS = ("id", "feature_id")
_FEATURE_NAME_KEYS = ("name", "feature_name")
_FEATURE_ACTIVE_KEYS = ("active_users", "users")
_FEATURE_TOTAL_KEYS = ("total_users", "total")


def _pick(data: Dict[str, Any], keys: Sequence[str], default: Any) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def _as_float(value: Any) -> float:
    # json.loads accepts NaN and Infinity; neither is a usable metric.
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def default_date_range(today: Optional[date] = None) -> DateRange:
    """Trailing window ending today, at day granularity so reruns on one day agree."""
    end = today or date.today()
    start = end - timedelta(days=DEFAULT_WINDOW_DAYS)
    return DateRange(start=start.isoformat(), end=end.isoformat())


def map_date_range(data: Dict[str, Any], fallback: DateRange) -> DateRange:
    nested = data.get("date_range") if isinstance(data.get("date_range"), dict) else {}
    start = nested.get("start") or data.get("start_date") or fallback.start
    end = nested.get("end") or data.get("end_date") or fallback.end
    return DateRange(start=str(start), end=str(end))


def map_funnel(data: Dict[str, Any], fallback_range: DateRange) -> FunnelView:
    raw_steps = data.get("steps") if isinstance(data.get("steps"), list) else []
    steps = [
        FunnelStep(
            step_name=str(_pick(step, _STEP_NAME_KEYS, f"Step {index + 1}")),
            user_count=_as_int(_pick(step, _STEP_USERS_KEYS, 0)),
            dropoff_rate=_as_float(_pick(step, _STEP_DROPOFF_KEYS, 0.0)),
        )
        for index, step in enumerate(raw_steps)
        if isinstance(step, dict)
    ]
    return FunnelView(
        funnel_id=str(_pick(data, _FUNNEL_ID_KEYS, "")),
        funnel_name=str(_pick(data, _FUNNEL_NAME_KEYS, "Unnamed funnel")),
        steps=steps,
        date_range=map_date_range(data, fallback_range),
    )


def _map_responses(raw: Any) -> List[NPSResponse]:
    if not isinstance(raw, list):
        return []
    responses = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        feedback = item.get("feedback")
        responses.append(
            NPSResponse(
                user_id=str(_pick(item, _RESPONSE_USER_KEYS, "")),
                score=_as_int(item.get("score")),
                timestamp=str(item.get("timestamp") or ""),
                feedback=str(feedback) if feedback else None,
            )
        )
    return responses


def map_satisfaction(data: Dict[str, Any], fallback_range: DateRange) -> SatisfactionView:
    return SatisfactionView(
        score=_as_float(_pick(data, _NPS_SCORE_KEYS, 0.0)),
        response_count=_as_int(_pick(data, _NPS_RESPONSES_KEYS, 0)),
        date_range=map_date_range(data, fallback_range),
        detractors=_map_responses(data.get("detractors")),
        passives=_map_responses(data.get("passives")),
        promoters=_map_responses(data.get("promoters")),
    )


def map_feature_usage(data: Dict[str, Any], fallback_range: DateRange) -> FeatureUsageView:
    active_users = _as_int(_pick(data, _FEATURE_ACTIVE_KEYS, 0))
    total_users = _as_int(_pick(data, _FEATURE_TOTAL_KEYS, 0))
    return FeatureUsageView(
        feature_id=str(_pick(data, _FEATURE_ID_KEYS, "")),
        feature_name=str(_pick(data, _FEATURE_NAME_KEYS, "Unnamed feature")),
        active_users=active_users,
        total_users=total_users,
        usage_rate=active_users / total_users if total_users > 0 else 0.0,
        date_range=map_date_range(data, fallback_range),
    )


class UserpilotClient:
    """Fetches funnels, NPS and feature usage from the Userpilot REST API."""

    def __init__(
        self,
        settings: UserpilotSettings,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
        today_fn: Optional[Callable[[], date]] = None,
    ):
        self._settings = settings
        self._session = session or requests.Session()
        self._logger = logger or logging.getLogger("opportunityos.userpilot")
        self._today_fn = today_fn or date.today
        self._base_url = settings.base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.api_token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _params(date_range: Optional[DateRange]) -> Dict[str, str]:
        if date_range is None:
            return {}
        return {"start_date": date_range.start, "end_date": date_range.end}

    def _get(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"

        @retry(max_attempts=3, base_delay=1.0, retryable_exceptions=(requests.RequestException, ValueError))
        def _request() -> Any:
            response = self._session.get(
                url,
                headers=self._headers(),
                params=params,
                timeout=self._settings.timeout_seconds,
            )
            response.raise_for_status()
            return response.json()

        try:
            payload = _request()
        except (requests.RequestException, ValueError) as exc:
            raise CollaboratorError("userpilot", f"GET {path} failed: {exc}") from exc

        if not isinstance(payload, dict):
            raise CollaboratorError("userpilot", f"GET {path} returned a non-object payload")
        return payload

    def fetch_funnels(self, date_range: Optional[DateRange] = None) -> List[FunnelView]:
        payload = self._get("/funnels", self._params(date_range))
        fallback = date_range or default_date_range(self._today_fn())
        raw_funnels = payload.get("funnels") if isinstance(payload.get("funnels"), list) else []
        funnels = [map_funnel(item, fallback) for item in raw_funnels if isinstance(item, dict)]
        self._logger.info("Fetched funnels", extra={"count": len(funnels)})
        return funnels

    def fetch_satisfaction(self, date_range: Optional[DateRange] = None) -> SatisfactionView:
        payload = self._get("/nps", self._params(date_range))
        satisfaction = map_satisfaction(payload, date_range or default_date_range(self._today_fn()))
        self._logger.info(
            "Fetched NPS data",
            extra={"nps_score": satisfaction.score, "response_count": satisfaction.response_count},
        )
        return satisfaction

    def fetch_feature_usage(self, date_range: Optional[DateRange] = None) -> List[FeatureUsageView]:
        payload = self._get("/features/usage", self._params(date_range))
        fallback = date_range or default_date_range(self._today_fn())
        raw_features = payload.get("features") if isinstance(payload.get("features"), list) else []
        features = [map_feature_usage(item, fallback) for item in raw_features if isinstance(item, dict)]
        self._logger.info("Fetched feature usage data", extra={"count": len(features)})
        return features
