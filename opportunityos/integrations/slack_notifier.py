"""Slack notifier: posts opportunity cards and routes button clicks back in.

Outbound calls go through the Slack Web API (``chat.postMessage`` and
``chat.update``) with the bot token. Inbound clicks arrive through the
interactions HTTP server, which hands each ``block_actions`` payload to
:meth:`SlackNotifier.handle_interaction`.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Optional

import requests

from opportunityos.config import SlackSettings
from opportunityos.domain import lifecycle
from opportunityos.domain.opportunity import Opportunity
from opportunityos.errors import CollaboratorError


ActionHandler = Callable[[str, str], Any]

ACTION_ID_PATTERN = re.compile(r"^(promote|investigate|dismiss)_(.+)$")

_STATUS_EMOJI = {
    lifecycle.DETECTED: "\U0001F514",
    lifecycle.PROMOTED: "⭐",
    lifecycle.DISMISSED: "❌",
    lifecycle.INVESTIGATING: "\U0001F50D",
    lifecycle.SPEC_GENERATED: "\U0001F4C4",
    lifecycle.SHIPPED: "\U0001F680",
}


def score_indicator(score: int) -> str:
    if score >= 80:
        return "\U0001F7E2"
    if score >= 60:
        return "\U0001F7E1"
    return "\U0001F534"


def _button(label: str, action: str, opportunity_id: str, style: Optional[str] = None) -> Dict[str, Any]:
    button: Dict[str, Any] = {
        "type": "button",
        "text": {"type": "plain_text", "text": label},
        "action_id": f"{action}_{opportunity_id}",
        "value": opportunity_id,
    }
    if style:
        button["style"] = style
    return button


def build_blocks(opportunity: Opportunity) -> List[Dict[str, Any]]:
    """Render an opportunity as Block Kit blocks; buttons only while it awaits triage."""
    status = opportunity["status"]
    emoji = _STATUS_EMOJI.get(status, "•")
    created = str(opportunity.get("created_at") or "")[:10]

    blocks: List[Dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": f"{emoji} {opportunity['title']}"}},
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Type:*\n{opportunity['kind']}"},
                {"type": "mrkdwn", "text": f"*Score:*\n{score_indicator(opportunity['score'])} {opportunity['score']}/100"},
                {"type": "mrkdwn", "text": f"*Status:*\n{status}"},
                {"type": "mrkdwn", "text": f"*Created:*\n{created}"},
            ],
        },
        {"type": "section", "text": {"type": "mrkdwn", "text": f"*Description:*\n{opportunity['description']}"}},
    ]

    insights = opportunity.get("evidence", {}).get("insights") or []
    if insights:
        lines = "\n".join(f"• {item}" for item in insights)
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": f"*Key Insights:*\n{lines}"}})

    if opportunity.get("spec_ref"):
        blocks.append(
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Spec:* <{opportunity['spec_ref']}|View Generated Spec>"}}
        )

    if status == lifecycle.DETECTED:
        opportunity_id = opportunity["id"]
        blocks.append(
            {
                "type": "actions",
                "elements": [
                    _button("✅ Promote", lifecycle.PROMOTE, opportunity_id, "primary"),
                    _button("\U0001F50D Investigate", lifecycle.INVESTIGATE, opportunity_id),
                    _button("❌ Dismiss", lifecycle.DISMISS, opportunity_id, "danger"),
                ],
            }
        )
    return blocks


class SlackNotifier:
    def __init__(
        self,
        settings: SlackSettings,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
        timeout_seconds: float = 10.0,
    ):
        self._settings = settings
        self._session = session or requests.Session()
        self._logger = logger or logging.getLogger("opportunityos.slack")
        self._timeout_seconds = timeout_seconds
        self._action_handler: Optional[ActionHandler] = None

    @property
    def channel_id(self) -> str:
        return self._settings.channel_id

    def on_action(self, handler: ActionHandler) -> None:
        self._action_handler = handler

    def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._settings.api_base_url.rstrip('/')}/{method}"
        try:
            response = self._session.post(
                url,
                headers={
                    "Authorization": f"Bearer {self._settings.bot_token}",
                    "Content-Type": "application/json; charset=utf-8",
                },
                json=payload,
                timeout=self._timeout_seconds,
            )
            data = response.json() if response.content else {}
        except (requests.RequestException, ValueError) as exc:
            raise CollaboratorError("slack", f"{method} request failed: {exc}") from exc

        if not isinstance(data, dict) or not data.get("ok"):
            reason = data.get("error") if isinstance(data, dict) else "invalid_response"
            raise CollaboratorError("slack", f"{method} failed: {reason or 'unknown_error'}")
        return data

    def post(self, opportunity: Opportunity) -> str:
        data = self._call(
            "chat.postMessage",
            {
                "channel": self.channel_id,
                "text": f"New Opportunity: {opportunity['title']}",
                "blocks": build_blocks(opportunity),
            },
        )
        ts = data.get("ts")
        if not ts:
            raise CollaboratorError("slack", "chat.postMessage returned no message timestamp")
        self._logger.info("Posted opportunity to Slack", extra={"opportunity_id": opportunity["id"], "message_ts": ts})
        return str(ts)

    def update(self, ts: str, opportunity: Opportunity) -> None:
        self._call(
            "chat.update",
            {
                "channel": self.channel_id,
                "ts": ts,
                "text": f"Updated Opportunity: {opportunity['title']}",
                "blocks": build_blocks(opportunity),
            },
        )
        self._logger.info("Updated opportunity in Slack", extra={"opportunity_id": opportunity["id"], "message_ts": ts})

    def post_alert(self, text: str) -> None:
        self._call("chat.postMessage", {"channel": self.channel_id, "text": f"⚠️ {text}"})
        self._logger.info("Posted alert to Slack")

    def dispatch_action(self, action_id: str, value: Optional[str] = None, user: Optional[str] = None) -> bool:
        """Route one button click to the registered handler.

        Returns False when the click is not one of ours or nobody is listening.
        Handler exceptions are logged and re-raised.
        """
        match = ACTION_ID_PATTERN.match(str(action_id or ""))
        if match is None:
            self._logger.warning("Ignoring unknown Slack action", extra={"action_id": action_id})
            return False

        action = match.group(1)
        opportunity_id = value or match.group(2)
        if self._action_handler is None:
            self._logger.warning("No action handler registered", extra={"action_id": action_id})
            return False

        self._logger.info(
            "Handling opportunity action",
            extra={"opportunity_id": opportunity_id, "action": action, "user": user},
        )
        try:
            self._action_handler(opportunity_id, action)
        except Exception:
            self._logger.exception(
                "Error handling opportunity action",
                extra={"opportunity_id": opportunity_id, "action": action},
            )
            raise
        return True

    def handle_interaction(self, payload: Dict[str, Any]) -> int:
        """Dispatch every button in a ``block_actions`` payload; returns how many succeeded."""
        if payload.get("type") != "block_actions":
            self._logger.info("Ignoring Slack interaction", extra={"interaction_type": payload.get("type")})
            return 0

        user = payload.get("user") if isinstance(payload.get("user"), dict) else {}
        actions = payload.get("actions") if isinstance(payload.get("actions"), list) else []
        handled = 0
        for action in actions:
            if not isinstance(action, dict):
                continue
            try:
                if self.dispatch_action(str(action.get("action_id") or ""), action.get("value"), user.get("id")):
                    handled += 1
            except Exception:
                # Already logged by dispatch_action; keep going with the remaining buttons.
                continue
        return handled
