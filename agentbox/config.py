"""Settings loader for the AgentBox backend."""
from __future__ import annotations

import re
from decimal import Decimal
from typing import Annotated, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_list(value):
    if value is None:
        return []
    if isinstance(value, str):
        parts = re.split(r"[\s,]+", value.strip())
        return [part for part in parts if part]
    return value


class AgentboxSettings(BaseSettings):
    database_url: str = Field(default="sqlite:///./agentbox.db", alias="DATABASE_URL")

    api_base_url: str = Field(default="http://localhost:8080", alias="API_BASE_URL")
    api_host: str = Field(default="0.0.0.0", alias="AGENTBOX_API_HOST")
    api_port: int = Field(default=8080, alias="AGENTBOX_API_PORT")
    api_root_path: str = Field(default="", alias="AGENTBOX_API_ROOT_PATH")
    log_level: str = Field(default="INFO", alias="AGENTBOX_LOG_LEVEL")

    operator_token: Optional[str] = Field(default=None, alias="OPERATOR_TOKEN")
    jwt_secret: Optional[str] = Field(default=None, alias="JWT_SECRET")
    treasury_address: Optional[str] = Field(default=None, alias="TREASURY_ADDRESS")
    encryption_key: Optional[str] = Field(default=None, alias="ENCRYPTION_KEY")

    hetzner_api_token: Optional[str] = Field(default=None, alias="HETZNER_API_TOKEN")
    hetzner_snapshot_id: Optional[str] = Field(default=None, alias="HETZNER_SNAPSHOT_ID")
    hetzner_locations: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["nbg1", "fsn1"], alias="HETZNER_LOCATIONS")
    hetzner_server_type: str = Field(default="cx33", alias="HETZNER_SERVER_TYPE")
    hetzner_ssh_key_ids: Annotated[List[int], NoDecode] = Field(default_factory=list, alias="HETZNER_SSH_KEY_IDS")

    cf_api_token: Optional[str] = Field(default=None, alias="CF_API_TOKEN")
    cf_zone_id: Optional[str] = Field(default=None, alias="CF_ZONE_ID")
    instance_base_domain: str = Field(default="agentbox.fyi", alias="INSTANCE_BASE_DOMAIN")

    eth_rpc_url: str = Field(default="http://localhost:8545", alias="ETH_RPC_URL")
    chain_id: int = Field(default=8453, alias="ETH_CHAIN_ID")
    custodial_private_key: Optional[str] = Field(default=None, alias="CUSTODIAL_PRIVATE_KEY")
    identity_contract_address: Optional[str] = Field(default=None, alias="IDENTITY_CONTRACT_ADDRESS")
    stable_token_address: Optional[str] = Field(default=None, alias="STABLE_TOKEN_ADDRESS")
    vm_funding_native_eth: Decimal = Field(default=Decimal("0.0005"), alias="VM_FUNDING_NATIVE_ETH")
    vm_funding_stable_units: int = Field(default=1_000_000, alias="VM_FUNDING_STABLE_UNITS")
    identity_metadata_upload_url: Optional[str] = Field(default=None, alias="IDENTITY_METADATA_UPLOAD_URL")
    chain_dry_run: bool = Field(default=False, alias="CHAIN_DRY_RUN")

    ssh_private_key: Optional[str] = Field(default=None, alias="SSH_PRIVATE_KEY")
    ssh_config_timeout_seconds: float = Field(default=30.0, alias="SSH_CONFIG_TIMEOUT_SECONDS")
    ssh_transfer_timeout_seconds: float = Field(default=120.0, alias="SSH_TRANSFER_TIMEOUT_SECONDS")

    telegram_api_base: str = Field(default="https://api.telegram.org", alias="TELEGRAM_API_BASE")

    reaper_interval_seconds: int = Field(default=3600, alias="REAPER_INTERVAL_SECONDS")
    mint_worker_poll_seconds: float = Field(default=5.0, alias="MINT_WORKER_POLL_SECONDS")

    instance_ttl_days: int = Field(default=7, alias="INSTANCE_TTL_DAYS")
    instance_max_lifetime_days: int = Field(default=90, alias="INSTANCE_MAX_LIFETIME_DAYS")
    instance_extend_days: int = Field(default=7, alias="INSTANCE_EXTEND_DAYS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("hetzner_locations", "hetzner_ssh_key_ids", mode="before")
    @classmethod
    def parse_lists(cls, value):  # type: ignore[override]
        return _split_list(value)

    @field_validator("treasury_address")
    @classmethod
    def normalize_treasury(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        candidate = value.strip()
        if not candidate.startswith("0x") or len(candidate) != 42:
            raise ValueError("TREASURY_ADDRESS must be a 42-character hex string")
        return candidate.lower()

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        candidate = value.strip()
        if len(candidate) != 64 or not all(ch in "0123456789abcdefABCDEF" for ch in candidate):
            raise ValueError("ENCRYPTION_KEY must be 64 hex characters (32 bytes)")
        return candidate

    @field_validator("vm_funding_native_eth", mode="before")
    @classmethod
    def coerce_decimal(cls, value):  # type: ignore[override]
        if isinstance(value, Decimal):
            return value
        try:
            return Decimal(str(value))
        except Exception as exc:
            raise ValueError(f"Invalid decimal value: {value}") from exc

    @field_validator(
        "api_port",
        "reaper_interval_seconds",
        "instance_ttl_days",
        "instance_max_lifetime_days",
        "instance_extend_days",
    )
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator(
        "mint_worker_poll_seconds",
        "ssh_config_timeout_seconds",
        "ssh_transfer_timeout_seconds",
    )
    @classmethod
    def validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @model_validator(mode="after")
    def validate_lifetime(self) -> "AgentboxSettings":
        if self.instance_ttl_days > self.instance_max_lifetime_days:
            raise ValueError("INSTANCE_TTL_DAYS cannot exceed INSTANCE_MAX_LIFETIME_DAYS")
        if not self.hetzner_locations:
            raise ValueError("HETZNER_LOCATIONS must name at least one location")
        return self

