# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Hosting platform REST API (channel send, inbox check, entitlement check)
    host_api_base_url: str | None = None  # e.g. "https://autochat.example.com"
    host_api_token: str | None = None     # Bearer token of the active session
    host_api_timeout_seconds: float = 15.0
    # Platform -> path segment of the send endpoint: POST /api/<segment>/send
    channel_send_paths: dict[str, str] = {
        "instagram": "instagram",
        "whatsapp": "whatsapp",
        "facebook": "messenger",
    }

    # Poller
    poll_interval_seconds: float = 5.0
    polling_enabled_on_startup: bool = False

    # Flow execution
    message_settle_ms: int = 600      # pause after each sent message (ordering courtesy)
    default_delay_ms: int = 1000
    max_node_visits_per_run: int = 200  # guards looping flow graphs

    # AI text generation
    ai_provider: Literal["none", "openai", "gemini"] = "none"
    ai_api_key: str | None = None
    ai_model: str | None = None  # provider default when unset
    ai_timeout_seconds: int = 20
    ai_max_reply_chars: int = 300

    # Flow storage
    flows_file: str | None = None  # JSON array of flows exported from the builder
    seed_demo_flow: bool = True

    # HTTP host
    allowed_origins: list[str] = ["*"]
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def host_api_enabled(self) -> bool:
        return bool(self.host_api_base_url)

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []
        if self.host_api_base_url and not self.host_api_token:
            missing.append("host_api_token")
        if self.ai_provider != "none" and not self.ai_api_key:
            missing.append("ai_api_key")
        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.host_api_enabled:
        warnings.append(
            "host_api_base_url is not set: outbound sends, inbox polling and "
            "entitlement checks are disabled (simulator-only mode)."
        )

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.ai_provider != "none" and not s.ai_api_key:
        warnings.append(f"ai_provider={s.ai_provider} but ai_api_key is missing (AI nodes will send the fallback reply).")

    if s.poll_interval_seconds < 1:
        warnings.append(f"poll_interval_seconds={s.poll_interval_seconds} is very aggressive for channel APIs.")

    if s.is_production and s.seed_demo_flow and not s.flows_file:
        warnings.append("prod: no flows_file configured, only the demo flow will be loaded.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
