"""Append-only audit log of lifecycle events."""
from __future__ import annotations

import logging
from concurrent.futures import Executor
from typing import Any, Dict, List, Literal, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from .models import Event, isoformat

logger = logging.getLogger(__name__)


class _Meta(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class _Empty(_Meta):
    pass


class CreatedMeta(_Meta):
    name: str
    owner_wallet: str
    ip: str
    location: Optional[str] = None
    expires_at: str


class CreateFailedMeta(_Meta):
    error: str
    name: Optional[str] = None


class StepReportedMeta(_Meta):
    step: str


class CallbackReceivedMeta(_Meta):
    vm_wallet: str
    gateway_token: str

    @field_validator("gateway_token")
    @classmethod
    def redact(cls, value: str) -> str:
        if len(value) <= 4:
            return "***"
        return "***" + value[-4:]


class FundedMeta(_Meta):
    asset: Literal["native", "stable"]
    amount: str
    tx_hash: Optional[str] = None


class FundingFailedMeta(_Meta):
    asset: Literal["native", "stable"]
    error: str


class MintedMeta(_Meta):
    mint: str
    owner_wallet: str
    uri: Optional[str] = None


class MintFailedMeta(_Meta):
    error: str


class NftTransferFailedMeta(_Meta):
    mint: str
    error: str


class NftTransferredMeta(_Meta):
    mint: str
    owner_wallet: str
    tx_hash: Optional[str] = None


class RenamedMeta(_Meta):
    new_name: str


class AgentUpdatedMeta(_Meta):
    name: Optional[str] = None
    description: Optional[str] = None


class ExtendedMeta(_Meta):
    new_expires_at: str


class ClaimedMeta(_Meta):
    previous_owner: str


class RecoveredMeta(_Meta):
    mint: str
    previous_owner: Optional[str] = None


class TelegramConfiguredMeta(_Meta):
    bot_username: Optional[str] = None


class WithdrawalMeta(_Meta):
    to: str
    amount: str


class SyncRequestedMeta(_Meta):
    claimed: int
    recovered: int


EVENT_SCHEMAS: Dict[str, Type[_Meta]] = {
    "instance.created": CreatedMeta,
    "instance.create_failed": CreateFailedMeta,
    "instance.step_reported": StepReportedMeta,
    "instance.callback_received": CallbackReceivedMeta,
    "instance.funded": FundedMeta,
    "instance.funding_failed": FundingFailedMeta,
    "instance.minted": MintedMeta,
    "instance.mint_failed": MintFailedMeta,
    "instance.nft_transfer_failed": NftTransferFailedMeta,
    "instance.nft_transferred": NftTransferredMeta,
    "instance.running": _Empty,
    "instance.renamed": RenamedMeta,
    "instance.agent_updated": AgentUpdatedMeta,
    "instance.deletion_started": _Empty,
    "instance.deleted": _Empty,
    "instance.mint_retried": _Empty,
    "instance.restarted": _Empty,
    "instance.extended": ExtendedMeta,
    "instance.expired": _Empty,
    "instance.claimed": ClaimedMeta,
    "instance.recovered": RecoveredMeta,
    "instance.telegram_configured": TelegramConfiguredMeta,
    "instance.withdrawal": WithdrawalMeta,
    "auth.signed_in": _Empty,
    "sync.requested": SyncRequestedMeta,
}


class EventRecorder:
    """Validates and stores events.

    Recording never raises: a metadata schema violation or a database error is
    logged and the event dropped. When an executor is supplied the insert runs
    there instead of on the caller's thread.
    """

    def __init__(self, session_factory: sessionmaker, executor: Optional[Executor] = None) -> None:
        self._session_factory = session_factory
        self._executor = executor

    def record(
        self,
        event_type: str,
        *,
        actor_type: str,
        actor_id: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[Any] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        schema = EVENT_SCHEMAS.get(event_type)
        if schema is None:
            logger.warning("Dropping event with unknown type %s", event_type)
            return
        try:
            payload = schema.model_validate(dict(metadata or {})).model_dump(by_alias=True, exclude_none=True)
        except ValidationError as exc:
            logger.warning("Dropping event %s with invalid metadata: %s", event_type, exc)
            return

        row = Event(
            event_type=event_type,
            actor_type=actor_type,
            actor_id=str(actor_id),
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            metadata_=payload,
        )
        if self._executor is not None:
            self._executor.submit(self._insert, row)
        else:
            self._insert(row)

    def record_instance(
        self,
        event_type: str,
        instance_id: Any,
        *,
        actor_type: str = "system",
        actor_id: str = "agentbox",
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.record(
            event_type,
            actor_type=actor_type,
            actor_id=actor_id,
            entity_type="instance",
            entity_id=instance_id,
            metadata=metadata,
        )

    def _insert(self, row: Event) -> None:
        try:
            with self._session_factory.begin() as session:
                session.add(row)
        except Exception as exc:
            logger.warning("Failed to record event %s: %s", row.event_type, exc)

    def list_for_entity(self, entity_type: str, entity_id: Any, limit: int = 100) -> List[Dict[str, Any]]:
        stmt = (
            select(Event)
            .where(Event.entity_type == entity_type, Event.entity_id == str(entity_id))
            .order_by(Event.id.desc())
            .limit(limit)
        )
        with self._session_factory() as session:
            rows = list(session.execute(stmt).scalars())
        return [
            {
                "id": row.id,
                "timestamp": isoformat(row.timestamp),
                "eventType": row.event_type,
                "actorType": row.actor_type,
                "actorId": row.actor_id,
                "metadata": row.metadata_ or {},
            }
            for row in rows
        ]


__all__ = ["EVENT_SCHEMAS", "EventRecorder"]
