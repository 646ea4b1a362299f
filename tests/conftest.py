import pytest


# Credentials and overrides from the developer's shell must not leak into tests.
_ISOLATED_ENV = (
    "OPPORTUNITYOS_CONFIG",
    "OPPORTUNITYOS_DEMO",
    "OPPORTUNITYOS_DATA_STORE_PATH",
    "OPPORTUNITYOS_SPEC_BACKEND",
    "OPPORTUNITYOS_AUTO_GENERATE_SPECS",
    "OPPORTUNITYOS_MIN_SCORE",
    "OPPORTUNITYOS_LOG_LEVEL",
    "USERPILOT_API_TOKEN",
    "SLACK_BOT_TOKEN",
    "SLACK_SIGNING_SECRET",
    "SLACK_CHANNEL_ID",
    "KIRO_API_KEY",
    "OPENAI_API_KEY",
)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    for name in _ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OPPORTUNITYOS_CONFIG", str(tmp_path / "opportunityos.config.json"))
