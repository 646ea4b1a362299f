"""Opportunity identifiers.

Detected opportunities get a fingerprint derived from what was detected and
the analytics window it was detected in, so re-running detection over the same
snapshot yields the same id and the store rejects it as a duplicate.
"""

from __future__ import annotations

import hashlib

from opportunityos.domain.analytics import DateRange

ID_PREFIX = "opp_"
_DIGEST_LENGTH = 20


def fingerprint(kind: str, subject: str, date_range: DateRange) -> str:
    material = "|".join([kind, subject, date_range.start, date_range.end])
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
    return f"{ID_PREFIX}{digest[:_DIGEST_LENGTH]}"
