"""Instance creation: name allocation, VM boot payload, DNS and the initial row."""
from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Any, Callable, Optional

from .auth import OPERATOR_OWNER
from .crypto import CredentialCrypto
from .events import EventRecorder
from .hetzner import HetznerClient, HetznerError
from .instances import AgentboxError, InstanceStore, validate_name
from .models import PROVISIONING_STEPS, STATUS_PROVISIONING, Instance, isoformat, utcnow
from .telegram import InvalidBotTokenError, TelegramClient, TelegramError, looks_like_bot_token

logger = logging.getLogger(__name__)

NAME_ATTEMPTS = 5

ADJECTIVES = (
    "amber", "brisk", "calm", "clever", "cosmic", "crisp", "daring", "eager",
    "fabled", "gentle", "golden", "hidden", "jolly", "keen", "lucid", "mellow",
    "nimble", "noble", "quiet", "rapid", "silver", "steady", "swift", "vivid",
)


def generate_name() -> str:
    return f"agent-{secrets.choice(ADJECTIVES)}-{secrets.token_hex(2)}"


def build_user_data(
    *,
    callback_url: str,
    callback_token: str,
    terminal_token: str,
    hostname: str,
) -> str:
    """Cloud-init script handing the VM what it needs to call back in."""
    return "\n".join(
        [
            "#!/bin/bash",
            "set -euo pipefail",
            "",
            "mkdir -p /etc/agentbox",
            "SERVER_ID=$(curl -s http://169.254.169.254/hetzner/v1/metadata/instance-id)",
            "",
            "cat > /etc/agentbox/callback.env << 'ENVEOF'",
            f'CALLBACK_URL="{callback_url}"',
            f'CALLBACK_SECRET="{callback_token}"',
            f'TERMINAL_TOKEN="{terminal_token}"',
            f'INSTANCE_HOSTNAME="{hostname}"',
            "ENVEOF",
            "",
            # Numeric, so appended outside the quoted heredoc.
            'echo "SERVER_ID=$SERVER_ID" >> /etc/agentbox/callback.env',
            "chmod 600 /etc/agentbox/callback.env",
            "",
            "/usr/local/bin/agentbox-init.sh",
        ]
    )


class ProvisioningOrchestrator:
    def __init__(
        self,
        settings: Any,
        store: InstanceStore,
        events: EventRecorder,
        crypto: Optional[CredentialCrypto],
        vm: Optional[HetznerClient],
        dns: Optional[Any] = None,
        telegram: Optional[TelegramClient] = None,
        name_generator: Callable[[], str] = generate_name,
    ) -> None:
        self.settings = settings
        self.store = store
        self.events = events
        self.crypto = crypto
        self.vm = vm
        self.dns = dns
        self.telegram = telegram
        self.name_generator = name_generator

    def hostname_for(self, name: str) -> str:
        return f"{name}.{self.settings.instance_base_domain}"

    def _allocate_name(self, requested: Optional[str]) -> str:
        if requested:
            name = validate_name(requested)
            if self.store.name_taken(name):
                raise AgentboxError(f"Name {name} is already in use", status_code=409, code="name_taken")
            return name
        for _ in range(NAME_ATTEMPTS):
            candidate = self.name_generator()
            if not self.store.name_taken(candidate):
                return candidate
            logger.debug("Generated name %s collides with an active instance", candidate)
        raise AgentboxError(
            f"Could not allocate a unique name after {NAME_ATTEMPTS} attempts",
            status_code=409,
            code="name_allocation_failed",
        )

    def validate_bot_token(self, bot_token: str) -> str:
        """Check the token with Telegram and clear any stale webhook; returns the bot username."""
        if not looks_like_bot_token(bot_token):
            raise AgentboxError("Telegram bot token is malformed", code="invalid_bot_token")
        if self.telegram is None:
            raise AgentboxError("Telegram integration is not configured", status_code=503, code="telegram_unconfigured")
        try:
            me = self.telegram.get_me(bot_token)
        except InvalidBotTokenError as exc:
            raise AgentboxError("Telegram rejected the bot token", code="invalid_bot_token") from exc
        except TelegramError as exc:
            raise AgentboxError(str(exc), status_code=502, code="telegram_failed") from exc
        try:
            self.telegram.delete_webhook(bot_token)
        except TelegramError as exc:
            logger.warning("Failed to clear webhook for bot %s: %s", me.get("username"), exc)
        return str(me.get("username") or "")

    def create(
        self,
        owner_wallet: str,
        name: Optional[str] = None,
        telegram_bot_token: Optional[str] = None,
    ) -> Instance:
        if self.vm is None or not getattr(self.settings, "hetzner_snapshot_id", None):
            raise AgentboxError("VM provider is not configured", status_code=503, code="provider_unconfigured")
        if telegram_bot_token and self.crypto is None:
            raise AgentboxError("Credential encryption is not configured", status_code=503, code="crypto_unconfigured")

        actor = {
            "actor_type": "operator" if owner_wallet == OPERATOR_OWNER else "wallet",
            "actor_id": owner_wallet,
        }
        try:
            instance_name = self._allocate_name(name)
        except AgentboxError as exc:
            if exc.code == "name_allocation_failed":
                self.events.record("instance.create_failed", metadata={"error": str(exc)}, **actor)
            raise

        bot_username: Optional[str] = None
        if telegram_bot_token:
            bot_username = self.validate_bot_token(telegram_bot_token)

        callback_token = secrets.token_hex(32)
        terminal_token = secrets.token_hex(32)
        hostname = self.hostname_for(instance_name)
        user_data = build_user_data(
            callback_url=f"{self.settings.api_base_url.rstrip('/')}/instances/callback",
            callback_token=callback_token,
            terminal_token=terminal_token,
            hostname=hostname,
        )

        try:
            server = self.vm.create_server_with_fallback(instance_name, user_data)
        except HetznerError as exc:
            logger.error("VM creation for %s failed: %s", instance_name, exc)
            self.events.record(
                "instance.create_failed",
                metadata={"error": str(exc), "name": instance_name},
                **actor,
            )
            raise AgentboxError("Failed to provision server", status_code=502, code="vm_create_failed") from exc

        if self.dns is not None:
            try:
                self.dns.create_record(hostname, server.ip)
            except Exception as exc:
                logger.warning("DNS record for %s not created: %s", hostname, exc)

        now = utcnow()
        root_password = None
        if server.root_password and self.crypto is not None:
            root_password = self.crypto.encrypt(server.root_password)
        row = self.store.insert(
            id=server.id,
            name=instance_name,
            owner_wallet=owner_wallet,
            status=STATUS_PROVISIONING,
            provisioning_step=PROVISIONING_STEPS[0],
            ip=server.ip,
            callback_token=callback_token,
            terminal_token=terminal_token,
            telegram_bot_token=self.crypto.encrypt(telegram_bot_token) if telegram_bot_token else None,
            telegram_bot_username=bot_username,
            root_password=root_password,
            snapshot_id=str(self.settings.hetzner_snapshot_id),
            created_at=now,
            expires_at=now + timedelta(days=int(self.settings.instance_ttl_days)),
        )
        logger.info("Created instance %s (%s) at %s for %s", row.id, row.name, row.ip, owner_wallet)
        self.events.record(
            "instance.created",
            entity_type="instance",
            entity_id=row.id,
            metadata={
                "name": row.name,
                "owner_wallet": owner_wallet,
                "ip": row.ip,
                "location": server.location,
                "expires_at": isoformat(row.expires_at),
            },
            **actor,
        )
        return row


__all__ = ["ProvisioningOrchestrator", "build_user_data", "generate_name"]
