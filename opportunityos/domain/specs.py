from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from opportunityos.domain.opportunity import Opportunity


@dataclass
class SpecRequest:
    opportunity_id: str
    title: str
    description: str
    evidence: Dict[str, Any]

    @classmethod
    def from_opportunity(cls, opportunity: Opportunity) -> "SpecRequest":
        return cls(
            opportunity_id=opportunity["id"],
            title=opportunity["title"],
            description=opportunity["description"],
            evidence=opportunity["evidence"],
        )


@dataclass
class SpecResult:
    spec_ref: str
    generated_at: str
