"""SSH sessions into running instances for config pushes and wallet withdrawals."""
from __future__ import annotations

import base64
import io
import json
import logging
import shlex
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

import paramiko
from pydantic import BaseModel, ConfigDict, Field

from .crypto import CredentialCrypto

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPENCLAW_CONFIG_PATH = "/home/openclaw/.openclaw/openclaw.json"
OPENCLAW_USER = "openclaw"
GATEWAY_SERVICE = "openclaw-gateway"
CONNECT_TIMEOUT_SECONDS = 10.0


class SessionBridgeError(RuntimeError):
    pass


class TelegramChannelConfig(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    enabled: bool = True
    bot_token: Optional[str] = Field(default=None, alias="botToken")


class ChannelsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    telegram: Optional[TelegramChannelConfig] = None


class OpenclawConfig(BaseModel):
    """The part of openclaw.json this service owns; every other key round-trips untouched."""

    model_config = ConfigDict(extra="allow")

    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def merge_telegram_config(document: Dict[str, Any], bot_token: str) -> Dict[str, Any]:
    config = OpenclawConfig.model_validate(document)
    telegram = config.channels.telegram or TelegramChannelConfig()
    telegram.enabled = True
    telegram.bot_token = bot_token
    config.channels.telegram = telegram
    return config.dump()


def _load_private_key(encoded: str) -> paramiko.PKey:
    pem = base64.b64decode(encoded).decode("utf-8")
    errors = []
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key(io.StringIO(pem))
        except (paramiko.SSHException, ValueError) as exc:
            errors.append(f"{key_class.__name__}: {exc}")
    raise SessionBridgeError("SSH_PRIVATE_KEY is not a supported private key (" + "; ".join(errors) + ")")


class RemoteSession:
    def __init__(self, client: paramiko.SSHClient, command_timeout: Optional[float] = None) -> None:
        self.client = client
        self.command_timeout = command_timeout

    def exec(self, command: str, stdin_data: Optional[str] = None) -> Tuple[str, str, int]:
        stdin, stdout, stderr = self.client.exec_command(command, timeout=self.command_timeout)
        if stdin_data is not None:
            stdin.write(stdin_data)
            stdin.channel.shutdown_write()
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        code = stdout.channel.recv_exit_status()
        return out, err, code

    def read_json(self, path: str) -> Dict[str, Any]:
        out, err, code = self.exec(f"cat {shlex.quote(path)}")
        if code != 0:
            raise SessionBridgeError(f"Failed to read {path}: {err.strip()}")
        try:
            return json.loads(out)
        except json.JSONDecodeError as exc:
            raise SessionBridgeError(f"{path} is not valid JSON") from exc

    def write_json(self, path: str, data: Any, owner: Optional[str] = None) -> None:
        tmp = f"/tmp/agentbox-cfg-{uuid.uuid4().hex}.json"
        _, err, code = self.exec(f"cat > {tmp}", stdin_data=json.dumps(data, indent=2))
        if code != 0:
            raise SessionBridgeError(f"Failed to stage {path}: {err.strip()}")
        _, err, code = self.exec(f"mv {tmp} {shlex.quote(path)}")
        if code != 0:
            raise SessionBridgeError(f"Failed to write {path}: {err.strip()}")
        if owner:
            _, err, code = self.exec(f"chown {shlex.quote(owner)}:{shlex.quote(owner)} {shlex.quote(path)}")
            if code != 0:
                raise SessionBridgeError(f"Failed to chown {path}: {err.strip()}")

    def restart_service(self, name: str) -> None:
        if name == GATEWAY_SERVICE:
            # The gateway runs as a user-level unit of the openclaw account.
            rtdir = f"/run/user/$(id -u {OPENCLAW_USER})"
            command = (
                f"sudo -u {OPENCLAW_USER} XDG_RUNTIME_DIR={rtdir} "
                f"DBUS_SESSION_BUS_ADDRESS=unix:path={rtdir}/bus systemctl --user restart {name}"
            )
        else:
            command = f"systemctl restart {shlex.quote(name)}"
        _, err, code = self.exec(command)
        if code != 0:
            raise SessionBridgeError(f"Failed to restart {name}: {err.strip()}")


class SessionBridge:
    def __init__(
        self,
        settings: Any,
        crypto: Optional[CredentialCrypto] = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self.settings = settings
        self.crypto = crypto
        self.client_factory = client_factory
        encoded = getattr(settings, "ssh_private_key", None)
        self._pkey = _load_private_key(encoded) if encoded else None

    def _credentials(self, instance: Any) -> Dict[str, Any]:
        if self._pkey is not None:
            return {"pkey": self._pkey, "look_for_keys": False, "allow_agent": False}
        if instance.root_password and self.crypto is not None:
            return {
                "password": self.crypto.decrypt(instance.root_password),
                "look_for_keys": False,
                "allow_agent": False,
            }
        raise SessionBridgeError("No SSH credentials available for this instance")

    def run(self, instance: Any, fn: Callable[[RemoteSession], T], timeout: float) -> T:
        """Run fn against the instance, failing hard once timeout elapses.

        Closing the client on the way out also aborts a still-running fn. A
        connect that completes after the deadline is closed by the worker
        itself and fn never runs.
        """
        client = self.client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="agentbox-ssh")
        cancelled = threading.Event()
        connect_timeout = min(CONNECT_TIMEOUT_SECONDS, timeout)

        def task() -> T:
            try:
                client.connect(
                    instance.ip,
                    username="root",
                    timeout=connect_timeout,
                    banner_timeout=connect_timeout,
                    auth_timeout=connect_timeout,
                    **self._credentials(instance),
                )
                if cancelled.is_set():
                    raise SessionBridgeError("SSH operation cancelled after timeout")
                return fn(RemoteSession(client, command_timeout=timeout))
            finally:
                if cancelled.is_set():
                    client.close()

        future = executor.submit(task)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as exc:
            cancelled.set()
            logger.error("SSH session to instance %s timed out after %ss", instance.id, timeout)
            raise SessionBridgeError(f"SSH operation timed out ({timeout}s)") from exc
        except SessionBridgeError:
            raise
        except Exception as exc:
            logger.error("SSH session to instance %s failed: %s", instance.id, exc)
            raise SessionBridgeError(f"SSH operation failed: {exc}") from exc
        finally:
            client.close()
            executor.shutdown(wait=False)

    def push_telegram_config(self, instance: Any, bot_token: str) -> None:
        def apply(session: RemoteSession) -> None:
            document = session.read_json(OPENCLAW_CONFIG_PATH)
            session.write_json(OPENCLAW_CONFIG_PATH, merge_telegram_config(document, bot_token), owner=OPENCLAW_USER)
            session.restart_service(GATEWAY_SERVICE)

        self.run(instance, apply, float(self.settings.ssh_config_timeout_seconds))
        logger.info("Pushed telegram config to instance %s", instance.id)

    def withdraw(self, instance: Any, to: str, amount: Decimal) -> Dict[str, Any]:
        command = (
            f"agentbox-wallet transfer --to {shlex.quote(to)} --amount {shlex.quote(str(amount))} --json"
        )

        def transfer(session: RemoteSession) -> Dict[str, Any]:
            out, err, code = session.exec(command)
            if code != 0:
                raise SessionBridgeError(f"Wallet transfer failed: {err.strip() or out.strip()}")
            try:
                result = json.loads(out)
            except json.JSONDecodeError:
                return {"output": out.strip()}
            return result if isinstance(result, dict) else {"output": result}

        result = self.run(instance, transfer, float(self.settings.ssh_transfer_timeout_seconds))
        logger.info("Withdrew %s from instance %s to %s", amount, instance.id, to)
        return result


__all__ = [
    "OpenclawConfig",
    "RemoteSession",
    "SessionBridge",
    "SessionBridgeError",
    "merge_telegram_config",
]
