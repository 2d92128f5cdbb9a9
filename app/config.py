"""
Centralised configuration loaded from environment / .env file.
Uses pydantic-settings for validation and type coercion.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Twilio ──────────────────────────────────────────────────
    twilio_account_sid: str = Field(default="", description="Twilio Account SID")
    twilio_auth_token: str = Field(default="", description="Twilio Auth Token")
    twilio_phone_number: str = Field(default="", description="Twilio caller ID (E.164)")
    twilio_base_url: str = Field(default="https://api.twilio.com")
    twilio_status_callback_url: str = Field(
        default="",
        description="Public URL of /webhook/twilio/status (blank = no callbacks)",
    )

    # ── Calling ─────────────────────────────────────────────────
    telephony_backend: str = Field(default="twilio", pattern="^(twilio|simulated)$")
    staff_phone_number: str = Field(default="", description="Number Twilio rings first")
    recording_enabled: bool = Field(default=False)
    tick_interval_seconds: float = Field(default=1.0, gt=0)

    # Simulated bridge (demo mode only)
    sim_connect_delay_seconds: float = Field(default=2.0, ge=0)
    sim_busy_rate: float = Field(default=0.1, ge=0, le=1)
    sim_no_answer_rate: float = Field(default=0.1, ge=0, le=1)
    sim_drop_rate: float = Field(default=0.05, ge=0, le=1)
    sim_max_call_seconds: int = Field(default=120, ge=1)

    # ── Phone numbers ───────────────────────────────────────────
    default_region: str = Field(default="US", min_length=2, max_length=2)

    # ── Auth ────────────────────────────────────────────────────
    jwt_secret: str = Field(default="change_me")
    session_expire_hours: int = Field(default=12, ge=1)
    admin_password_hash: str = Field(default="", description="bcrypt hash")
    staff_password_hash: str = Field(default="", description="bcrypt hash")
    secure_cookies: bool = Field(default=True)

    # ── Paths ───────────────────────────────────────────────────
    database_path: Path = Field(default=Path("data/caller.db"))
    recordings_dir: Path = Field(default=Path("data/recordings"))
    log_dir: Path = Field(default=Path("data/logs"))

    # ── Server ──────────────────────────────────────────────────
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    def ensure_dirs(self) -> None:
        """Create required directories if they don't exist."""
        for d in [
            self.recordings_dir,
            self.log_dir,
            self.database_path.parent,
        ]:
            d.mkdir(parents=True, exist_ok=True)

    def calling_issues(self, staff_phone_number: str | None = None) -> list[str]:
        """
        List what is missing for the calling feature to work.

        An empty list means calls may be placed. ``staff_phone_number``
        overrides the environment value (it is a stored preference).
        """
        issues: list[str] = []
        staff = self.staff_phone_number if staff_phone_number is None else staff_phone_number
        if self.telephony_backend == "twilio":
            if not self.twilio_account_sid or not self.twilio_auth_token:
                issues.append("TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN not set")
            if not self.twilio_phone_number:
                issues.append("TWILIO_PHONE_NUMBER not set")
        if not staff:
            issues.append("staff phone number not configured")
        return issues


@lru_cache
def get_settings() -> Settings:
    """Factory – cached at module level after first call."""
    return Settings()  # type: ignore[call-arg]
