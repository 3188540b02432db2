"""Process configuration loaded from TREASURY_* environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .settings import MAX_SETTING_CENTS, PolicySettings
from .types import BackendName


class TreasuryConfig(BaseSettings):
    """Configuration built once at startup and passed to every component."""

    model_config = SettingsConfigDict(
        env_prefix="TREASURY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # State
    state_dir: Path = Field(
        default=Path.home() / ".treasuryagent",
        description="Directory holding the ledger, settings, audit trail and outbox",
    )
    ledger_path: Path | None = None
    settings_path: Path | None = None
    audit_log_path: Path | None = None
    outbox_dir: Path | None = None

    # Execution
    execution_backend: BackendName = Field(
        default=BackendName.VULTISIG, description="conway (direct API) or vultisig (outbox)"
    )
    conway_api_url: str = Field(default="https://api.conway.tech")
    conway_api_key: SecretStr | None = None
    conway_timeout_seconds: float = Field(default=20.0, gt=0)
    vault_policy_profile: str = "secure"
    known_balance_cents: int | None = Field(
        default=None,
        ge=0,
        description="Treasury balance used by the reserve rule when the backend cannot report one",
    )

    # Signer / worker
    signer_command: str = Field(default="", description="Command run as `<command> <envelope>`")
    signer_timeout_seconds: float = Field(default=120.0, ge=1)
    worker_actor: str = "vultisig-worker"
    worker_auto_approve: bool = True
    worker_dry_run: bool = True

    # Alerts
    alerts_enabled: bool = False
    telegram_bot_token: SecretStr | None = None
    telegram_chat_id: str | None = None
    telegram_api_url: str = "https://api.telegram.org"
    explorer_tx_url_template: str | None = Field(
        default=None, description="Transaction link template containing {tx}"
    )
    chain: str = "base"

    log_level: str = "INFO"

    # Policy defaults, used until a settings file has been written
    require_allowlist: bool = True
    allowlist: str = Field(default="", description="Comma or whitespace separated addresses")
    min_reserve_cents: int = Field(default=500, ge=0, le=MAX_SETTING_CENTS)
    auto_approve_max_cents: int = Field(default=100, ge=0, le=MAX_SETTING_CENTS)
    hard_per_transfer_cents: int = Field(default=5_000, ge=1, le=MAX_SETTING_CENTS)
    hard_daily_limit_cents: int = Field(default=10_000, ge=1, le=MAX_SETTING_CENTS)
    auto_execute_approved: bool = False

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @field_validator("state_dir")
    @classmethod
    def _expand_state_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @model_validator(mode="after")
    def _derive_paths(self) -> "TreasuryConfig":
        if self.ledger_path is None:
            self.ledger_path = self.state_dir / "ledger.sqlite3"
        if self.settings_path is None:
            self.settings_path = self.state_dir / "settings.json"
        if self.audit_log_path is None:
            self.audit_log_path = self.state_dir / "settings-audit.jsonl"
        if self.outbox_dir is None:
            self.outbox_dir = self.state_dir / "outbox"
        return self

    def default_policy(self) -> PolicySettings:
        return PolicySettings(
            require_allowlist=self.require_allowlist,
            allowlist=self.allowlist,
            min_reserve_cents=self.min_reserve_cents,
            auto_approve_max_cents=self.auto_approve_max_cents,
            hard_per_transfer_cents=self.hard_per_transfer_cents,
            hard_daily_limit_cents=self.hard_daily_limit_cents,
            auto_execute_approved=self.auto_execute_approved,
        )

    @property
    def telegram_configured(self) -> bool:
        return (
            self.alerts_enabled
            and self.telegram_bot_token is not None
            and bool(self.telegram_chat_id)
        )


def load_config(**overrides: Any) -> TreasuryConfig:
    """Build the configuration; keyword overrides win over the environment."""
    return TreasuryConfig(**overrides)
