import json
import unittest
from datetime import date
from unittest.mock import Mock, patch

import requests

from opportunityos.config import UserpilotSettings
from opportunityos.domain.analytics import DateRange
from opportunityos.errors import CollaboratorError
from opportunityos.integrations.userpilot_client import (
    UserpilotClient,
    default_date_range,
    map_feature_usage,
    map_funnel,
    map_satisfaction,
)
from opportunityos.opportunity_detector import OpportunityDetector


FALLBACK = DateRange(start="2024-01-01", end="2024-01-31")


def _response(payload, status_code=200):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    else:
        response.raise_for_status.return_value = None
    return response


class UserpilotMappingTest(unittest.TestCase):
    def test_default_date_range_is_trailing_thirty_days(self):
        window = default_date_range(date(2024, 3, 31))
        self.assertEqual(window, DateRange(start="2024-03-01", end="2024-03-31"))

    def test_map_funnel_reads_aliases_and_defaults(self):
        funnel = map_funnel(
            {
                "funnel_id": "f-1",
                "name": "Checkout",
                "steps": [
                    {"step_name": "Cart", "users": "1000", "drop_rate": 0.1},
                    {"dropoff_rate": 0.45},
                    "garbage",
                ],
                "date_range": {"start": "2024-02-01", "end": "2024-02-29"},
            },
            FALLBACK,
        )

        self.assertEqual(funnel.funnel_id, "f-1")
        self.assertEqual([step.step_name for step in funnel.steps], ["Cart", "Step 2"])
        self.assertEqual(funnel.steps[0].user_count, 1000)
        self.assertEqual(funnel.steps[1].user_count, 0)
        self.assertEqual(funnel.date_range, DateRange("2024-02-01", "2024-02-29"))

    def test_map_satisfaction_uses_fallback_range(self):
        view = map_satisfaction(
            {
                "nps_score": 22,
                "total_responses": 140,
                "detractors": [{"userId": "u1", "score": 3, "timestamp": "t", "feedback": "slow"}],
            },
            FALLBACK,
        )

        self.assertEqual(view.score, 22.0)
        self.assertEqual(view.response_count, 140)
        self.assertEqual(view.detractors[0].user_id, "u1")
        self.assertEqual(view.detractors[0].feedback, "slow")
        self.assertEqual(view.passives, [])
        self.assertEqual(view.date_range, FALLBACK)

    def test_map_feature_usage_derives_rate(self):
        view = map_feature_usage({"id": "feat", "name": "Export", "active_users": 50, "total_users": 1000}, FALLBACK)
        self.assertAlmostEqual(view.usage_rate, 0.05)

        empty = map_feature_usage({"id": "feat"}, FALLBACK)
        self.assertEqual(empty.usage_rate, 0.0)
        self.assertEqual(empty.feature_name, "Unnamed feature")

    def test_non_finite_numbers_map_to_zero(self):
        payload = json.loads(
            '{"id": "f", "name": "Checkout", "steps": [{"name": "Pay", "user_count": 900, "dropoff_rate": NaN}]}'
        )

        funnel = map_funnel(payload, FALLBACK)
        satisfaction = map_satisfaction({"score": float("inf"), "response_count": float("nan")}, FALLBACK)

        self.assertEqual(funnel.steps[0].dropoff_rate, 0.0)
        self.assertEqual(satisfaction.score, 0.0)
        self.assertEqual(satisfaction.response_count, 0)
        self.assertEqual(OpportunityDetector().detect_funnel_opportunities([funnel]), [])


class UserpilotClientTest(unittest.TestCase):
    def _client(self, session):
        return UserpilotClient(
            UserpilotSettings(api_token="up-token", base_url="https://api.userpilot.test/v1/"),
            session=session,
            today_fn=lambda: date(2024, 1, 31),
        )

    def test_fetch_funnels_sends_bearer_token_and_maps_payload(self):
        session = Mock()
        session.get.return_value = _response({"funnels": [{"id": "f-1", "name": "Onboarding", "steps": []}]})

        funnels = self._client(session).fetch_funnels(FALLBACK)

        self.assertEqual(funnels[0].funnel_name, "Onboarding")
        args, kwargs = session.get.call_args
        self.assertEqual(args[0], "https://api.userpilot.test/v1/funnels")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer up-token")
        self.assertEqual(kwargs["params"], {"start_date": "2024-01-01", "end_date": "2024-01-31"})
        self.assertEqual(kwargs["timeout"], 30.0)

    def test_fetch_without_range_uses_default_window(self):
        session = Mock()
        session.get.return_value = _response({"features": [{"id": "x", "active_users": 1, "total_users": 2}]})

        features = self._client(session).fetch_feature_usage()

        self.assertEqual(features[0].date_range, DateRange("2024-01-01", "2024-01-31"))
        self.assertEqual(session.get.call_args.kwargs["params"], {})

    @patch("opportunityos.retry.time.sleep")
    def test_transient_failure_is_retried(self, sleep_mock):
        session = Mock()
        session.get.side_effect = [requests.ConnectionError("reset"), _response({"score": 10, "response_count": 50})]

        view = self._client(session).fetch_satisfaction(FALLBACK)

        self.assertEqual(view.score, 10.0)
        self.assertEqual(session.get.call_count, 2)
        sleep_mock.assert_called_once_with(1.0)

    @patch("opportunityos.retry.time.sleep")
    def test_persistent_failure_raises_collaborator_error(self, sleep_mock):
        session = Mock()
        session.get.return_value = _response({}, status_code=503)

        with self.assertRaises(CollaboratorError) as ctx:
            self._client(session).fetch_funnels()

        self.assertEqual(ctx.exception.collaborator, "userpilot")
        self.assertEqual(session.get.call_count, 3)
        self.assertEqual(sleep_mock.call_count, 2)

    def test_non_object_payload_raises(self):
        session = Mock()
        session.get.return_value = _response(["not", "an", "object"])

        with self.assertRaises(CollaboratorError):
            self._client(session).fetch_satisfaction()


if __name__ == "__main__":
    unittest.main()
