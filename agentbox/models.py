"""Relational schema: instances, the append-only event log, and the mint outbox."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

STATUS_PROVISIONING = "provisioning"
STATUS_MINTING = "minting"
STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"
STATUS_ERROR = "error"
STATUS_DELETING = "deleting"
STATUS_DELETED = "deleted"

INSTANCE_STATUSES = (
    STATUS_PROVISIONING,
    STATUS_MINTING,
    STATUS_RUNNING,
    STATUS_STOPPED,
    STATUS_ERROR,
    STATUS_DELETING,
    STATUS_DELETED,
)

# Ordered; the VM reports these while booting.
PROVISIONING_STEPS = (
    "vm_created",
    "configuring",
    "wallet_created",
    "openclaw_ready",
    "services_starting",
)

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_FAILED = "failed"

JOB_KIND_MINT = "mint"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Instance(Base):
    __tablename__ = "instances"

    # Assigned by the VM provider.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(63), nullable=False)
    owner_wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_PROVISIONING)
    provisioning_step: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, default=PROVISIONING_STEPS[0])
    ip: Mapped[str] = mapped_column(String(64), nullable=False)
    gateway_token: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    terminal_token: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    callback_token: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    vm_wallet: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    nft_mint: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    # Comma-separated assets already sent to vm_wallet.
    funded_assets: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    telegram_bot_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    telegram_bot_username: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    root_password: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    snapshot_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("instances_owner_wallet_idx", "owner_wallet"),
        Index("instances_nft_mint_idx", "nft_mint"),
        Index("instances_expires_at_idx", "expires_at"),
    )


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_type: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    metadata_: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("events_timestamp_idx", "timestamp"),
        Index("events_event_type_idx", "event_type"),
        Index("events_entity_idx", "entity_type", "entity_id"),
    )


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, default=JOB_KIND_MINT)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JOB_PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (Index("jobs_status_idx", "status"),)
