"""Bring stored ownership in line with on-chain identity tokens."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .chain import ChainError
from .events import EventRecorder
from .identity import IdentityRegistry, extract_server_id
from .instances import AgentboxError, InstanceStore

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    claimed: int = 0
    recovered: int = 0


class ReconciliationService:
    """On-chain ownership is authoritative; the instances table is a cache of it.

    Tokens already linked to an instance transfer that instance to the wallet
    holding them ("claim"). Unknown tokens are matched back to their instance
    through the server id embedded in the descriptor ("recovery").
    """

    def __init__(self, store: InstanceStore, events: EventRecorder, identity: Optional[IdentityRegistry]) -> None:
        self.store = store
        self.events = events
        self.identity = identity

    def sync(self, wallet: str) -> SyncResult:
        if self.identity is None:
            raise AgentboxError("Identity registry is not configured", status_code=503, code="chain_unconfigured")
        try:
            owned = self.identity.owned_tokens_of(wallet)
        except ChainError as exc:
            logger.error("Token enumeration for %s failed: %s", wallet, exc)
            raise AgentboxError("Could not read identity tokens from chain", status_code=502, code="chain_failed") from exc

        result = SyncResult()
        known = {row.nft_mint: row for row in self.store.find_by_nft_mints(owned)}

        for mint, row in known.items():
            if row.owner_wallet == wallet:
                continue
            if not self.store.update_fields(row.id, owner_wallet=wallet):
                continue
            result.claimed += 1
            logger.info("Instance %s claimed by %s (was %s)", row.id, wallet, row.owner_wallet)
            self.events.record_instance(
                "instance.claimed",
                row.id,
                actor_type="wallet",
                actor_id=wallet,
                metadata={"previous_owner": row.owner_wallet},
            )

        for mint in owned:
            if mint in known:
                continue
            if self._recover(wallet, mint):
                result.recovered += 1

        return result

    def _recover(self, wallet: str, mint: str) -> bool:
        try:
            descriptor = self.identity.load_identity(mint)
        except ChainError as exc:
            logger.warning("Skipping token %s: descriptor unavailable (%s)", mint, exc)
            return False
        server_id = extract_server_id(descriptor)
        if server_id is None:
            logger.warning("Skipping token %s: no server id marker", mint)
            return False
        row = self.store.get(server_id)
        if row is None:
            logger.warning("Skipping token %s: instance %s not found", mint, server_id)
            return False
        if row.nft_mint == mint and row.owner_wallet == wallet:
            return False
        if not self.store.update_fields(row.id, nft_mint=mint, owner_wallet=wallet):
            return False
        logger.info("Recovered instance %s from token %s for %s", row.id, mint, wallet)
        self.events.record_instance(
            "instance.recovered",
            row.id,
            actor_type="wallet",
            actor_id=wallet,
            metadata={"mint": mint, "previous_owner": row.owner_wallet},
        )
        return True


__all__ = ["ReconciliationService", "SyncResult"]
