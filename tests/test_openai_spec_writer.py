import json
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

from opportunityos.config import OpenAISettings
from opportunityos.domain.specs import SpecRequest
from opportunityos.errors import CollaboratorError, ConfigurationError
from opportunityos.integrations.openai_spec_writer import OpenAISpecWriter


class _MockChatCompletions:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        return self._responses.pop(0)


class _MockOpenAIClient:
    def __init__(self, responses):
        self.chat = SimpleNamespace(completions=_MockChatCompletions(responses))


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


REQUEST = SpecRequest(
    opportunity_id="opp_1",
    title="High Dropoff in Checkout Flow - Enter Payment",
    description="Users drop at payment.",
    evidence={"data_source": "userpilot", "raw_data": {"big": "blob"}, "metrics": {"dropoff_rate": 0.45}, "insights": ["45%"]},
)


class OpenAISpecWriterTest(unittest.TestCase):
    def test_generate_writes_markdown_and_returns_file_uri(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            client = _MockOpenAIClient([_completion("## Problem\nPayment step is confusing.")])
            writer = OpenAISpecWriter(OpenAISettings(model="gpt-test"), Path(tmp_dir), openai_client=client)

            result = writer.generate(REQUEST)

            spec_path = Path(tmp_dir) / "specs" / "opp_1.md"
            self.assertTrue(result.spec_ref.startswith("file://"))
            self.assertEqual(result.spec_ref, spec_path.resolve().as_uri())
            self.assertIn("Payment step is confusing.", spec_path.read_text(encoding="utf-8"))
            call = client.chat.completions.calls[0]
            self.assertEqual(call["model"], "gpt-test")
            self.assertNotIn("blob", call["messages"][1]["content"])
            self.assertEqual(writer.get_status("opp_1")["status"], "completed")

    def test_empty_completion_raises(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            writer = OpenAISpecWriter(OpenAISettings(), Path(tmp_dir), openai_client=_MockOpenAIClient([_completion("  ")]))
            with self.assertRaises(CollaboratorError):
                writer.generate(REQUEST)
            self.assertFalse((Path(tmp_dir) / "specs" / "opp_1.md").exists())

    def test_feedback_is_appended_as_json_lines(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            writer = OpenAISpecWriter(OpenAISettings(), Path(tmp_dir), openai_client=_MockOpenAIClient([]))

            writer.feedback("opp_1", 5, actual_impact={"dropoff_rate": 0.2})
            writer.feedback("opp_2", 3)

            lines = (Path(tmp_dir) / "specs" / "feedback.jsonl").read_text(encoding="utf-8").splitlines()
            self.assertEqual([json.loads(line)["opportunity_id"] for line in lines], ["opp_1", "opp_2"])
            self.assertEqual(json.loads(lines[0])["actual_impact"], {"dropoff_rate": 0.2})

    def test_missing_api_key_is_a_configuration_error(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            with self.assertRaises(ConfigurationError):
                OpenAISpecWriter(OpenAISettings(api_key=""), Path(tmp_dir))


if __name__ == "__main__":
    unittest.main()
