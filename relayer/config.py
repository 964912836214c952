import os
import re
from functools import lru_cache
from pathlib import Path
from typing import FrozenSet, List

from pydantic import Field, PositiveFloat, PositiveInt, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

TESTING = os.getenv("TESTING") == "1"

DEFAULT_ABI_PATH = Path(__file__).resolve().parent / "abi" / "raffle_platform.json"

_PRIVATE_KEY_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def _split_csv(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = "development"
    host: str = "0.0.0.0"
    port: int = 3002
    log_level: str = "INFO"

    redis_url: str = "redis://localhost:6379/0"
    queue_prefix: str = "relayer"

    # Chain
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: PositiveInt = 31337
    contract_address: str
    admin_private_key: SecretStr
    contract_abi_path: Path = Field(default=DEFAULT_ABI_PATH)
    token_decimals: int = Field(default=18, ge=0, le=36)

    # Access control
    relayer_api_key: SecretStr
    allowed_ips: str = ""
    admin_ips: str = ""
    rate_limit_per_minute: PositiveInt = 10
    sensitive_rate_limit_window_seconds: PositiveInt = 300

    # Queues
    job_timeout_seconds: PositiveFloat = 60
    lock_duration_seconds: PositiveFloat = 30
    stalled_interval_seconds: PositiveFloat = 5
    main_max_stalled_count: int = Field(default=3, ge=0)
    retry_max_stalled_count: int = Field(default=2, ge=0)
    main_keep_completed: PositiveInt = 100
    retry_keep_completed: PositiveInt = 100
    retry_keep_failed: PositiveInt = 500
    retry_attempts: PositiveInt = 3
    retry_backoff_seconds: PositiveFloat = 5

    # Executor
    confirmation_timeout_seconds: PositiveFloat = 50
    gas_margin_percent: int = Field(default=20, ge=0, le=500)
    skip_confirmation_types: str = ""

    # Worker
    worker_poll_seconds: PositiveFloat = 0.5
    run_worker_in_process: bool = True

    @field_validator("admin_private_key")
    @classmethod
    def check_private_key(cls, value: SecretStr) -> SecretStr:
        if not _PRIVATE_KEY_RE.match(value.get_secret_value().strip()):
            raise ValueError("ADMIN_PRIVATE_KEY must be 0x followed by 64 hex characters")
        return SecretStr(value.get_secret_value().strip())

    @field_validator("contract_address")
    @classmethod
    def check_contract_address(cls, value: str) -> str:
        value = value.strip()
        if not _ADDRESS_RE.match(value):
            raise ValueError("CONTRACT_ADDRESS must be 0x followed by 40 hex characters")
        return value

    @field_validator("redis_url")
    @classmethod
    def check_redis_url(cls, value: str) -> str:
        if not value.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return value

    @field_validator("relayer_api_key")
    @classmethod
    def check_api_key(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("RELAYER_API_KEY must not be empty")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def allowed_ip_list(self) -> List[str]:
        return _split_csv(self.allowed_ips)

    @property
    def admin_ip_list(self) -> List[str]:
        return _split_csv(self.admin_ips)

    @property
    def skip_confirmation(self) -> FrozenSet[str]:
        return frozenset(_split_csv(self.skip_confirmation_types))

    def redacted(self) -> dict:
        """Loggable view of the configuration, secrets masked."""
        return {
            "environment": self.environment,
            "host": self.host,
            "port": self.port,
            "redis_url": self.redis_url,
            "rpc_url": self.rpc_url[:30] + "..." if len(self.rpc_url) > 30 else self.rpc_url,
            "chain_id": self.chain_id,
            "contract_address": self.contract_address,
            "allowed_ips": self.allowed_ip_list or "disabled (allow all)",
            "rate_limit_per_minute": self.rate_limit_per_minute,
            "log_level": self.log_level,
            "admin_private_key": "***REDACTED***",
            "relayer_api_key": "***REDACTED***",
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
