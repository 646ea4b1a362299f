from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

import openai
from openai import OpenAI

from opportunityos.config import OpenAISettings
from opportunityos.domain.opportunity import utc_now
from opportunityos.domain.specs import SpecRequest, SpecResult
from opportunityos.errors import CollaboratorError, ConfigurationError
from opportunityos.persistence.json_io import atomic_write_text
from opportunityos.retry import retry


_TEMPORARY_ERRORS = (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)

SYSTEM_PROMPT = (
    "You are a senior product manager. Write a concise implementation spec in "
    "markdown for the product opportunity you are given. Use the sections "
    "Problem, Evidence, Proposed Solution, Success Metrics and Risks. Quote the "
    "metrics you were given; do not invent new numbers."
)


class OpenAISpecWriter:
    """Drafts specs with the OpenAI chat API and keeps them as markdown files under ``<data_dir>/specs``."""

    def __init__(
        self,
        settings: OpenAISettings,
        data_dir: Path,
        openai_client: Any | None = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._settings = settings
        self._specs_dir = Path(data_dir) / "specs"
        self._logger = logger or logging.getLogger("opportunityos.openai")
        if openai_client is not None:
            self._client = openai_client
            return

        api_key = (settings.api_key or "").strip()
        if not api_key:
            raise ConfigurationError("Configuration error: openai.api_key is required")
        self._client = OpenAI(api_key=api_key)

    @property
    def specs_dir(self) -> Path:
        return self._specs_dir

    def spec_path(self, opportunity_id: str) -> Path:
        return self._specs_dir / f"{opportunity_id}.md"

    def _messages(self, request: SpecRequest) -> list[dict]:
        evidence = {
            "metrics": request.evidence.get("metrics", {}),
            "insights": request.evidence.get("insights", []),
            "data_source": request.evidence.get("data_source"),
        }
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Title: {request.title}\n"
                    f"Description: {request.description}\n"
                    f"Evidence: {json.dumps(evidence, ensure_ascii=False)}"
                ),
            },
        ]

    def _draft(self, request: SpecRequest) -> str:
        @retry(max_attempts=2, base_delay=5.0, backoff=1.0, retryable_exceptions=_TEMPORARY_ERRORS)
        def _complete() -> str:
            response = self._client.chat.completions.create(
                model=self._settings.model,
                messages=self._messages(request),
                temperature=0.2,
            )
            return str(getattr(response.choices[0].message, "content", "") or "")

        return _complete()

    def generate(self, request: SpecRequest) -> SpecResult:
        start_time = time.perf_counter()
        try:
            content = self._draft(request)
        except openai.OpenAIError as exc:
            raise CollaboratorError("openai", f"spec drafting failed: {exc}") from exc
        if not content.strip():
            raise CollaboratorError("openai", "spec drafting returned an empty document")

        path = self.spec_path(request.opportunity_id)
        document = f"# {request.title}\n\n{content.strip()}\n"
        try:
            atomic_write_text(path, document)
        except OSError as exc:
            raise CollaboratorError("openai", f"could not write spec file {path}: {exc}") from exc

        result = SpecResult(spec_ref=path.resolve().as_uri(), generated_at=utc_now())
        self._logger.info(
            "Spec drafted",
            extra={
                "opportunity_id": request.opportunity_id,
                "model": self._settings.model,
                "spec_ref": result.spec_ref,
                "duration_ms": int((time.perf_counter() - start_time) * 1000),
            },
        )
        return result

    def get_status(self, opportunity_id: str) -> Dict[str, Any]:
        path = self.spec_path(opportunity_id)
        if path.exists():
            return {"status": "completed", "spec_ref": path.resolve().as_uri(), "error": None}
        return {"status": "unknown", "spec_ref": None, "error": None}

    def feedback(
        self,
        opportunity_id: str,
        rating: int,
        actual_impact: Optional[Dict[str, float]] = None,
        comments: Optional[str] = None,
    ) -> None:
        entry = {
            "opportunity_id": opportunity_id,
            "rating": rating,
            "actual_impact": actual_impact or {},
            "comments": comments,
            "recorded_at": utc_now(),
        }
        try:
            self._specs_dir.mkdir(parents=True, exist_ok=True)
            with (self._specs_dir / "feedback.jsonl").open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as exc:
            raise CollaboratorError("openai", f"could not record feedback: {exc}") from exc
        self._logger.info("Feedback recorded", extra={"opportunity_id": opportunity_id, "rating": rating})
