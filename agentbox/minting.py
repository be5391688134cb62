"""VM funding and identity minting, driven by the durable mint job outbox."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from .auth import OPERATOR_OWNER, Identity
from .chain import ChainClient, ChainError
from .events import EventRecorder
from .identity import IdentityRegistry, build_descriptor
from .instances import AgentboxError, InstanceStore, parse_funded_assets
from .models import STATUS_DELETED, STATUS_DELETING, STATUS_MINTING, STATUS_RUNNING, Instance

logger = logging.getLogger(__name__)


class MintAndFinalize:
    """Funds the VM wallet, mints its identity token and moves the instance to running.

    Every step is best effort. Failures are logged and recorded as events, and
    the instance always leaves ``minting``; a missing token can be minted later
    through the retry endpoint.
    """

    def __init__(
        self,
        settings: Any,
        store: InstanceStore,
        events: EventRecorder,
        chain: Optional[ChainClient] = None,
        identity: Optional[IdentityRegistry] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.events = events
        self.chain = chain
        self.identity = identity

    def finalize(self, instance_id: int) -> None:
        row = self.store.get(instance_id, include_deleted=True)
        if row is None or row.status != STATUS_MINTING:
            # Requeued jobs can arrive after the instance already left minting.
            logger.info(
                "Skipping finalize for instance %s (status %s)", instance_id, row.status if row else "missing"
            )
            return
        if not row.vm_wallet:
            logger.warning("Instance %s has no VM wallet; skipping funding and minting", instance_id)
            self.mark_running(instance_id)
            return

        self._fund(row)
        if row.nft_mint:
            logger.info("Instance %s already holds identity %s; not minting again", instance_id, row.nft_mint)
        else:
            self._mint(row)
        self.mark_running(instance_id)

    def mark_running(self, instance_id: int) -> bool:
        if not self.store.transition(instance_id, (STATUS_MINTING,), STATUS_RUNNING):
            logger.info("Instance %s left minting before finalize completed", instance_id)
            return False
        self.events.record_instance("instance.running", instance_id)
        return True

    # -- funding ---------------------------------------------------------

    def _fund(self, row: Instance) -> None:
        if self.chain is None:
            for asset in ("native", "stable"):
                self._funding_failed(row.id, asset, "chain client not configured")
            return

        native_amount = Decimal(str(self.settings.vm_funding_native_eth))
        stable_units = int(self.settings.vm_funding_stable_units)
        stable_token = getattr(self.settings, "stable_token_address", None)

        funded = parse_funded_assets(row.funded_assets)
        jobs: Dict[str, Callable[[], Optional[str]]] = {}
        if "native" not in funded:
            jobs["native"] = lambda: self.chain.transfer_native(row.vm_wallet, native_amount)
        if "stable" not in funded:
            if stable_token:
                jobs["stable"] = lambda: self.chain.transfer_token(stable_token, row.vm_wallet, stable_units)
            else:
                self._funding_failed(row.id, "stable", "stable token not configured")
        if not jobs:
            logger.info("Instance %s is already funded", row.id)
            return

        amounts = {"native": str(native_amount), "stable": str(stable_units)}
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="agentbox-fund") as pool:
            futures = {asset: pool.submit(job) for asset, job in jobs.items()}
            for asset, future in futures.items():
                try:
                    tx_hash = future.result()
                except Exception as exc:
                    self._funding_failed(row.id, asset, str(exc))
                    continue
                self.store.mark_funded(row.id, asset)
                logger.info("Funded %s for instance %s (%s, tx=%s)", asset, row.id, amounts[asset], tx_hash)
                self.events.record_instance(
                    "instance.funded",
                    row.id,
                    metadata={"asset": asset, "amount": amounts[asset], "tx_hash": tx_hash},
                )

    def _funding_failed(self, instance_id: int, asset: str, error: str) -> None:
        logger.warning("Funding %s for instance %s failed: %s", asset, instance_id, error)
        self.events.record_instance(
            "instance.funding_failed",
            instance_id,
            metadata={"asset": asset, "error": error},
        )

    # -- identity --------------------------------------------------------

    def _descriptor(self, row: Instance, name: Optional[str] = None, description: Optional[str] = None) -> Dict[str, Any]:
        return build_descriptor(
            name=name or row.name,
            hostname=f"{row.name}.{self.settings.instance_base_domain}",
            vm_wallet=row.vm_wallet or "",
            server_id=row.id,
            chain_id=int(self.settings.chain_id),
            description=description,
        )

    def _mint(self, row: Instance) -> None:
        if self.identity is None:
            logger.warning("Identity registry not configured; instance %s stays unminted", row.id)
            self.events.record_instance(
                "instance.mint_failed", row.id, metadata={"error": "identity registry not configured"}
            )
            return
        try:
            uri = self.identity.upload_descriptor(self._descriptor(row))
            token_id = self.identity.mint_identity(uri)
        except Exception as exc:
            logger.error("Minting identity for instance %s failed: %s", row.id, exc)
            self.events.record_instance("instance.mint_failed", row.id, metadata={"error": str(exc)})
            return

        self.store.update_fields(row.id, nft_mint=token_id)
        logger.info("Minted identity %s for instance %s", token_id, row.id)
        self.events.record_instance(
            "instance.minted",
            row.id,
            metadata={"mint": token_id, "owner_wallet": row.owner_wallet, "uri": uri if len(uri) < 512 else None},
        )

        custodian = (self.identity.custodian or "").lower()
        if row.owner_wallet in (custodian, OPERATOR_OWNER):
            # Operator-owned identities stay in the custodial wallet.
            return
        try:
            tx_hash = self.identity.transfer_identity(token_id, row.owner_wallet)
        except Exception as exc:
            logger.error(
                "Transfer of identity %s to %s failed; token remains in the custodial wallet. "
                "POST /instances/%s/mint/transfer re-attempts the transfer: %s",
                token_id,
                row.owner_wallet,
                row.id,
                exc,
            )
            self.events.record_instance(
                "instance.nft_transfer_failed", row.id, metadata={"mint": token_id, "error": str(exc)}
            )
            return
        self.events.record_instance(
            "instance.nft_transferred",
            row.id,
            metadata={"mint": token_id, "owner_wallet": row.owner_wallet, "tx_hash": tx_hash},
        )

    # -- operator/user entry points --------------------------------------

    def retry(self, row: Instance, actor: Identity) -> None:
        """Queue another mint attempt; the conditional update is the only gate."""
        if row.nft_mint:
            raise AgentboxError("Instance already has an identity token", code="already_minted")
        if not row.vm_wallet:
            raise AgentboxError("Instance has no VM wallet yet", code="missing_vm_wallet")
        if row.status == STATUS_MINTING:
            raise AgentboxError("Minting is already in progress", status_code=409, code="mint_in_progress")
        if row.status in (STATUS_DELETING, STATUS_DELETED):
            raise AgentboxError("Instance is being deleted", status_code=409, code="invalid_state")
        if not self.store.begin_mint_retry(row.id):
            raise AgentboxError("Minting is already in progress", status_code=409, code="mint_in_progress")
        logger.info("Mint retry queued for instance %s by %s", row.id, actor.actor_id)
        self.events.record_instance(
            "instance.mint_retried", row.id, actor_type=actor.actor_type, actor_id=actor.actor_id
        )

    def retry_transfer(self, row: Instance, actor: Identity) -> Optional[str]:
        if not row.nft_mint:
            raise AgentboxError("Instance has no identity token", code="not_minted")
        if row.owner_wallet == OPERATOR_OWNER:
            raise AgentboxError("Operator-owned identities stay in the custodial wallet", status_code=409, code="not_transferable")
        identity = self._require_identity()
        try:
            current_owner = identity.owner_of(row.nft_mint)
            if current_owner == row.owner_wallet:
                raise AgentboxError("Identity token already belongs to the owner", status_code=409, code="already_transferred")
            if current_owner != identity.custodian.lower():
                raise AgentboxError("Identity token is not held by the custodial wallet", status_code=409, code="not_custodial")
            tx_hash = identity.transfer_identity(row.nft_mint, row.owner_wallet)
        except ChainError as exc:
            logger.error("Identity transfer retry for instance %s failed: %s", row.id, exc)
            raise AgentboxError(f"Identity transfer failed: {exc}", status_code=502, code="chain_failed") from exc
        self.events.record_instance(
            "instance.nft_transferred",
            row.id,
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            metadata={"mint": row.nft_mint, "owner_wallet": row.owner_wallet, "tx_hash": tx_hash},
        )
        return tx_hash

    def update_agent(
        self,
        row: Instance,
        actor: Identity,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        if name is None and description is None:
            raise AgentboxError("Provide name or description", code="invalid_input")
        if not row.nft_mint:
            raise AgentboxError("Instance has no identity token", code="not_minted")
        identity = self._require_identity()
        try:
            uri = identity.upload_descriptor(self._descriptor(row, name=name, description=description))
            identity.set_token_uri(row.nft_mint, uri)
        except ChainError as exc:
            logger.error("Identity metadata update for instance %s failed: %s", row.id, exc)
            raise AgentboxError(f"Identity update failed: {exc}", status_code=502, code="chain_failed") from exc
        self.events.record_instance(
            "instance.agent_updated",
            row.id,
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            metadata={"name": name, "description": description},
        )

    def _require_identity(self) -> IdentityRegistry:
        if self.identity is None:
            raise AgentboxError("Identity registry is not configured", status_code=503, code="chain_unconfigured")
        return self.identity


class MintWorker:
    """Drains pending mint jobs; woken by callbacks and retries, otherwise polls."""

    def __init__(self, store: InstanceStore, finalizer: MintAndFinalize, poll_seconds: float = 5.0) -> None:
        self.store = store
        self.finalizer = finalizer
        self.poll_seconds = poll_seconds
        self._wakeup = threading.Event()
        self._stopped = threading.Event()

    def wake(self, *_: Any) -> None:
        self._wakeup.set()

    def stop(self) -> None:
        self._stopped.set()
        self._wakeup.set()

    def requeue_stale(self) -> int:
        count = self.store.requeue_running_jobs()
        if count:
            logger.warning("Requeued %s mint jobs left running by a previous process", count)
        return count

    def run_once(self) -> int:
        processed = 0
        while not self._stopped.is_set():
            job = self.store.claim_next_job()
            if job is None:
                break
            processed += 1
            try:
                self.finalizer.finalize(job.instance_id)
            except Exception as exc:
                logger.exception("Mint job %s for instance %s failed: %s", job.id, job.instance_id, exc)
                self.store.finish_job(job.id, error=str(exc) or exc.__class__.__name__)
                self.finalizer.mark_running(job.instance_id)
                continue
            self.store.finish_job(job.id)
        return processed

    def run_forever(self) -> None:
        logger.info("Starting mint worker with poll interval %s seconds", self.poll_seconds)
        self.requeue_stale()
        while not self._stopped.is_set():
            try:
                self.run_once()
            except Exception as exc:
                logger.exception("Unexpected error in mint worker: %s", exc)
            self._wakeup.wait(self.poll_seconds)
            self._wakeup.clear()


__all__ = ["MintAndFinalize", "MintWorker"]
