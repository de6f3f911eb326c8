from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .live.matching import DEFAULT_PASS_LIMIT, DEFAULT_POLICY, SELECTION_POLICIES


class Settings(BaseSettings):
    """Global configuration for the Sightline signaling backend."""

    invite_timeout_seconds: float = 30.0
    no_volunteer_retry_seconds: float = 5.0
    decline_grace_seconds: float = 1.0
    pass_limit: int = DEFAULT_PASS_LIMIT
    selection_policy: str = DEFAULT_POLICY
    # 0 disables the responder-side auto-decline.
    ring_timeout_seconds: float = 45.0
    attention_interval_seconds: float = 0.8
    media_timeout_seconds: float = 30.0

    model_config = SettingsConfigDict(env_prefix="SIGHTLINE_", extra="ignore")

    @field_validator("selection_policy")
    @classmethod
    def validate_selection_policy(cls, value: str) -> str:
        if value not in SELECTION_POLICIES:
            raise ValueError(
                f"Unknown selection policy {value!r}; expected one of {sorted(SELECTION_POLICIES)}"
            )
        return value

    @field_validator("pass_limit")
    @classmethod
    def validate_pass_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("pass_limit must be at least 1")
        return value

    @field_validator(
        "invite_timeout_seconds",
        "no_volunteer_retry_seconds",
        "attention_interval_seconds",
        "media_timeout_seconds",
    )
    @classmethod
    def validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Timeouts and intervals must be positive")
        return value

    @field_validator("decline_grace_seconds", "ring_timeout_seconds")
    @classmethod
    def validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("Delays cannot be negative")
        return value


settings = Settings()  # type: ignore[call-arg]
