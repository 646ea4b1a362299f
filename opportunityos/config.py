from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from opportunityos.errors import ConfigurationError


CONFIG_FILE_NAME = "opportunityos.config.json"

DEFAULT_USERPILOT_BASE_URL = "https://api.userpilot.io/v1"
DEFAULT_KIRO_BASE_URL = "https://api.kiro.ai/v1"
DEFAULT_DATA_STORE_PATH = "./data/opportunities.json"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


@dataclass
class UserpilotSettings:
    api_token: str = ""
    base_url: str = DEFAULT_USERPILOT_BASE_URL
    timeout_seconds: float = 30.0


@dataclass
class SlackSettings:
    bot_token: str = ""
    signing_secret: str = ""
    channel_id: str = ""
    api_base_url: str = "https://slack.com/api"


@dataclass
class KiroSettings:
    api_key: str = ""
    base_url: str = DEFAULT_KIRO_BASE_URL
    timeout_seconds: float = 120.0


@dataclass
class OpenAISettings:
    api_key: str = ""
    model: str = DEFAULT_OPENAI_MODEL


@dataclass
class ScheduleSettings:
    # weekday None means every day.
    weekday: Optional[str] = "monday"
    hour: int = 9
    timezone: str = "UTC"


@dataclass
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 3000


@dataclass
class DetectionThresholds:
    min_score: int = 60
    severity_cap: float = 70.0
    impact_cap: float = 30.0
    funnel_dropoff_threshold: float = 0.30
    funnel_user_scale: float = 1000.0
    nps_threshold: float = 30.0
    nps_min_responses: int = 20
    nps_severity_multiplier: float = 2.0
    nps_response_scale: float = 100.0
    feature_usage_threshold: float = 0.20
    feature_min_users: int = 100
    feature_user_scale: float = 1000.0
    critical_dropoff_rate: float = 0.50
    critical_usage_rate: float = 0.10


@dataclass
class Settings:
    userpilot: UserpilotSettings = field(default_factory=UserpilotSettings)
    slack: SlackSettings = field(default_factory=SlackSettings)
    kiro: KiroSettings = field(default_factory=KiroSettings)
    openai: OpenAISettings = field(default_factory=OpenAISettings)
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    detection: DetectionThresholds = field(default_factory=DetectionThresholds)
    data_store_path: str = DEFAULT_DATA_STORE_PATH
    log_level: str = "INFO"
    auto_generate_specs: bool = False
    spec_backend: str = "kiro"
    demo: bool = False

    @property
    def data_dir(self) -> Path:
        return Path(self.data_store_path).parent

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> "Settings":
        if self.spec_backend not in {"kiro", "openai"}:
            raise ConfigurationError(f"Configuration error: spec_backend must be 'kiro' or 'openai', got {self.spec_backend!r}")
        if self.schedule.weekday is not None and self.schedule.weekday.lower() not in _WEEKDAYS:
            raise ConfigurationError(f"Configuration error: schedule.weekday {self.schedule.weekday!r} is not a weekday")
        if not 0 <= int(self.schedule.hour) <= 23:
            raise ConfigurationError("Configuration error: schedule.hour must be between 0 and 23")
        if not 0 <= int(self.detection.min_score) <= 100:
            raise ConfigurationError("Configuration error: detection.min_score must be between 0 and 100")

        if self.demo:
            return self

        required = [
            ("userpilot.api_token", self.userpilot.api_token),
            ("slack.bot_token", self.slack.bot_token),
            ("slack.signing_secret", self.slack.signing_secret),
            ("slack.channel_id", self.slack.channel_id),
        ]
        if self.spec_backend == "kiro":
            required.append(("kiro.api_key", self.kiro.api_key))
        else:
            required.append(("openai.api_key", self.openai.api_key))

        for key, value in required:
            if not str(value or "").strip():
                raise ConfigurationError(f"Configuration error: {key} is required")
        return self


def weekday_index(name: Optional[str]) -> Optional[int]:
    if name is None:
        return None
    return _WEEKDAYS.index(name.lower())


def get_config_path() -> Path:
    return Path(os.getenv("OPPORTUNITYOS_CONFIG", "") or Path.cwd() / CONFIG_FILE_NAME)


def _section(cls, raw: Any):
    if not isinstance(raw, dict):
        return cls()
    known = {item.name for item in fields(cls)}
    return cls(**{key: value for key, value in raw.items() if key in known})


def settings_from_dict(raw: Dict[str, Any]) -> Settings:
    settings = Settings(
        userpilot=_section(UserpilotSettings, raw.get("userpilot")),
        slack=_section(SlackSettings, raw.get("slack")),
        kiro=_section(KiroSettings, raw.get("kiro")),
        openai=_section(OpenAISettings, raw.get("openai")),
        schedule=_section(ScheduleSettings, raw.get("schedule")),
        server=_section(ServerSettings, raw.get("server")),
        detection=_section(DetectionThresholds, raw.get("detection")),
    )
    for key in ("data_store_path", "log_level", "spec_backend"):
        if raw.get(key):
            setattr(settings, key, str(raw[key]))
    for key in ("auto_generate_specs", "demo"):
        if key in raw:
            setattr(settings, key, bool(raw[key]))
    return settings


def _env_flag(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip().lower() in _TRUE_VALUES


def apply_env_overrides(settings: Settings) -> Settings:
    string_overrides = [
        ("USERPILOT_API_TOKEN", settings.userpilot, "api_token"),
        ("USERPILOT_BASE_URL", settings.userpilot, "base_url"),
        ("SLACK_BOT_TOKEN", settings.slack, "bot_token"),
        ("SLACK_SIGNING_SECRET", settings.slack, "signing_secret"),
        ("SLACK_CHANNEL_ID", settings.slack, "channel_id"),
        ("KIRO_API_KEY", settings.kiro, "api_key"),
        ("KIRO_BASE_URL", settings.kiro, "base_url"),
        ("OPENAI_API_KEY", settings.openai, "api_key"),
        ("OPENAI_MODEL", settings.openai, "model"),
        ("OPPORTUNITYOS_DATA_STORE_PATH", settings, "data_store_path"),
        ("OPPORTUNITYOS_LOG_LEVEL", settings, "log_level"),
        ("OPPORTUNITYOS_SPEC_BACKEND", settings, "spec_backend"),
        ("OPPORTUNITYOS_TIMEZONE", settings.schedule, "timezone"),
        ("OPPORTUNITYOS_HOST", settings.server, "host"),
    ]
    for env_name, target, attribute in string_overrides:
        value = os.getenv(env_name)
        if value is not None and value.strip():
            setattr(target, attribute, value.strip())

    if os.getenv("OPPORTUNITYOS_PORT", "").strip():
        settings.server.port = int(os.environ["OPPORTUNITYOS_PORT"])
    if os.getenv("OPPORTUNITYOS_MIN_SCORE", "").strip():
        settings.detection.min_score = int(os.environ["OPPORTUNITYOS_MIN_SCORE"])

    auto_generate = _env_flag("OPPORTUNITYOS_AUTO_GENERATE_SPECS")
    if auto_generate is not None:
        settings.auto_generate_specs = auto_generate
    demo = _env_flag("OPPORTUNITYOS_DEMO")
    if demo is not None:
        settings.demo = demo
    return settings


def config_exists(path: Optional[Path] = None) -> bool:
    return (path or get_config_path()).exists()


def load_settings(path: Optional[Path] = None, *, demo: Optional[bool] = None, validate: bool = True) -> Settings:
    config_path = path or get_config_path()
    raw: Dict[str, Any] = {}
    if config_path.exists():
        try:
            loaded = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Failed to load config {config_path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Failed to load config {config_path}: expected a JSON object")
        raw = loaded

    settings = apply_env_overrides(settings_from_dict(raw))
    if demo is not None:
        settings.demo = demo
    return settings.validate() if validate else settings


def save_config(settings: Settings, path: Optional[Path] = None) -> Path:
    config_path = path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(settings.to_dict(), indent=2), encoding="utf-8")
    return config_path


def default_config(demo: bool = False) -> Settings:
    if demo:
        return Settings(data_store_path="./demo-data/opportunities.json", demo=True)
    return Settings()


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return "not set"
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"


def describe_settings(settings: Settings) -> Dict[str, Any]:
    described = settings.to_dict()
    described["userpilot"]["api_token"] = mask_secret(settings.userpilot.api_token)
    described["slack"]["bot_token"] = mask_secret(settings.slack.bot_token)
    described["slack"]["signing_secret"] = mask_secret(settings.slack.signing_secret)
    described["kiro"]["api_key"] = mask_secret(settings.kiro.api_key)
    described["openai"]["api_key"] = mask_secret(settings.openai.api_key)
    return described
