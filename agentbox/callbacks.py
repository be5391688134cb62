"""Callbacks from booting VMs, authenticated only by the per-instance callback token."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from .crypto import CredentialCrypto, CryptoError
from .events import EventRecorder
from .instances import AgentboxError, InstanceStore
from .models import PROVISIONING_STEPS

logger = logging.getLogger(__name__)


def _not_found() -> AgentboxError:
    return AgentboxError("Instance not found", status_code=404, code="not_found")


class CallbackHandler:
    def __init__(
        self,
        settings: Any,
        store: InstanceStore,
        events: EventRecorder,
        crypto: Optional[CredentialCrypto] = None,
        on_finalized: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.events = events
        self.crypto = crypto
        self.on_finalized = on_finalized

    def report_step(self, instance_id: int, token: str, step: str) -> None:
        if step not in PROVISIONING_STEPS:
            raise AgentboxError(f"Unknown provisioning step {step}", code="invalid_step")
        if not token or not self.store.report_step(instance_id, token, step):
            raise _not_found()
        logger.info("Instance %s reported step %s", instance_id, step)
        self.events.record_instance(
            "instance.step_reported",
            instance_id,
            actor_type="vm",
            actor_id=str(instance_id),
            metadata={"step": step},
        )

    def finalize(self, instance_id: int, token: str, vm_wallet: str, gateway_token: str) -> None:
        """Consume the callback token and hand the instance to the mint worker."""
        if not token or not self.store.complete_callback(instance_id, token, vm_wallet.lower(), gateway_token):
            raise _not_found()
        logger.info("Instance %s finished provisioning (vm wallet %s)", instance_id, vm_wallet)
        self.events.record_instance(
            "instance.callback_received",
            instance_id,
            actor_type="vm",
            actor_id=str(instance_id),
            metadata={"vm_wallet": vm_wallet.lower(), "gateway_token": gateway_token},
        )
        if self.on_finalized is not None:
            self.on_finalized(instance_id)

    def boot_config(self, instance_id: int, token: str) -> Dict[str, Any]:
        row = self.store.find_for_callback(instance_id, token) if token else None
        if row is None:
            raise _not_found()
        config: Dict[str, Any] = {
            "serverId": row.id,
            "hostname": f"{row.name}.{self.settings.instance_base_domain}",
            "terminalToken": row.terminal_token,
        }
        if row.telegram_bot_token:
            if self.crypto is None:
                raise AgentboxError("Credential encryption is not configured", status_code=503, code="crypto_unconfigured")
            try:
                config["telegramBotToken"] = self.crypto.decrypt(row.telegram_bot_token)
            except CryptoError as exc:
                logger.error("Stored bot token for instance %s is unreadable: %s", instance_id, exc)
                raise AgentboxError("Stored credentials are unreadable", status_code=500, code="internal_error") from exc
        return config


__all__ = ["CallbackHandler"]
