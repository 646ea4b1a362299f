"""Kiro spec-generation client."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from opportunityos.config import KiroSettings
from opportunityos.domain.opportunity import utc_now
from opportunityos.domain.specs import SpecRequest, SpecResult
from opportunityos.errors import CollaboratorError
from opportunityos.retry import retry


# Generation is expensive on the Kiro side, so it gets one retry only.
GENERATE_MAX_ATTEMPTS = 2
GENERATE_RETRY_DELAY_SECONDS = 5.0

STATUS_TIMEOUT_SECONDS = 30.0


class KiroAgent:
    def __init__(
        self,
        settings: KiroSettings,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._settings = settings
        self._session = session or requests.Session()
        self._logger = logger or logging.getLogger("opportunityos.kiro")
        self._base_url = settings.base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, body: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        response = self._session.post(f"{self._base_url}{path}", headers=self._headers(), json=body, timeout=timeout)
        response.raise_for_status()
        data = response.json() if response.content else {}
        return data if isinstance(data, dict) else {}

    def generate(self, request: SpecRequest) -> SpecResult:
        self._logger.info(
            "Requesting spec generation",
            extra={"opportunity_id": request.opportunity_id, "title": request.title},
        )
        body = {
            "opportunity_id": request.opportunity_id,
            "title": request.title,
            "description": request.description,
            "evidence": request.evidence,
        }

        @retry(
            max_attempts=GENERATE_MAX_ATTEMPTS,
            base_delay=GENERATE_RETRY_DELAY_SECONDS,
            backoff=1.0,
            retryable_exceptions=(requests.RequestException, ValueError),
        )
        def _generate() -> Dict[str, Any]:
            return self._post("/specs/generate", body, self._settings.timeout_seconds)

        try:
            data = _generate()
        except (requests.RequestException, ValueError) as exc:
            raise CollaboratorError("kiro", f"spec generation failed: {exc}") from exc

        spec_ref = data.get("spec_url")
        if not spec_ref:
            raise CollaboratorError("kiro", "spec generation returned no spec_url")

        result = SpecResult(spec_ref=str(spec_ref), generated_at=str(data.get("generated_at") or utc_now()))
        self._logger.info(
            "Spec generation completed",
            extra={"opportunity_id": request.opportunity_id, "spec_ref": result.spec_ref},
        )
        return result

    def get_status(self, opportunity_id: str) -> Dict[str, Any]:
        self._logger.debug("Checking spec generation status", extra={"opportunity_id": opportunity_id})
        try:
            response = self._session.get(
                f"{self._base_url}/specs/{opportunity_id}/status",
                headers=self._headers(),
                timeout=STATUS_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise CollaboratorError("kiro", f"status lookup failed: {exc}") from exc

        if not isinstance(data, dict):
            data = {}
        return {
            "status": data.get("status", "unknown"),
            "spec_ref": data.get("spec_url"),
            "error": data.get("error"),
        }

    def feedback(
        self,
        opportunity_id: str,
        rating: int,
        actual_impact: Optional[Dict[str, float]] = None,
        comments: Optional[str] = None,
    ) -> None:
        self._logger.info("Providing spec feedback", extra={"opportunity_id": opportunity_id, "rating": rating})
        body: Dict[str, Any] = {"rating": rating, "actual_impact": actual_impact or {}}
        if comments:
            body["comments"] = comments
        try:
            self._post(f"/specs/{opportunity_id}/feedback", body, STATUS_TIMEOUT_SECONDS)
        except (requests.RequestException, ValueError) as exc:
            raise CollaboratorError("kiro", f"feedback failed: {exc}") from exc
        self._logger.info("Feedback submitted", extra={"opportunity_id": opportunity_id})
