from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class DateRange:
    start: str
    end: str


@dataclass
class FunnelStep:
    step_name: str
    user_count: int
    dropoff_rate: float


@dataclass
class FunnelView:
    funnel_id: str
    funnel_name: str
    steps: List[FunnelStep]
    date_range: DateRange


@dataclass
class NPSResponse:
    user_id: str
    score: int
    timestamp: str
    feedback: Optional[str] = None


@dataclass
class SatisfactionView:
    score: float
    response_count: int
    date_range: DateRange
    detractors: List[NPSResponse] = field(default_factory=list)
    passives: List[NPSResponse] = field(default_factory=list)
    promoters: List[NPSResponse] = field(default_factory=list)


@dataclass
class FeatureUsageView:
    feature_id: str
    feature_name: str
    active_users: int
    total_users: int
    usage_rate: float
    date_range: DateRange


def view_to_dict(view: Any) -> Dict[str, Any]:
    return asdict(view)
