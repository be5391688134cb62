"""HTTP API for instance lifecycle, VM callbacks and wallet sign-in."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import AuthGate, Identity, normalize_wallet
from .callbacks import CallbackHandler
from .crypto import CredentialCrypto, CryptoError
from .events import EventRecorder
from .hetzner import HetznerError
from .instances import AgentboxError, InstanceStore, validate_name
from .minting import MintAndFinalize, MintWorker
from .models import STATUS_RUNNING, STATUS_STOPPED, Instance, isoformat, utcnow
from .provisioning import ProvisioningOrchestrator
from .reaper import ExpiryReaper
from .reconciliation import ReconciliationService
from .session_bridge import SessionBridge, SessionBridgeError

logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    400: "invalid_input",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AuthPayload(_CamelModel):
    wallet_address: str
    signature: str
    timestamp: int


class AuthResponse(_CamelModel):
    token: str
    is_admin: bool


class CreateInstancePayload(_CamelModel):
    name: Optional[str] = None
    telegram_bot_token: Optional[str] = None


class RenamePayload(_CamelModel):
    name: str


class AgentUpdatePayload(_CamelModel):
    name: Optional[str] = Field(default=None, max_length=64)
    description: Optional[str] = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def ensure_field(self):  # type: ignore[override]
        if self.name is None and self.description is None:
            raise ValueError("Provide name or description")
        return self


class StepPayload(_CamelModel):
    server_id: int
    secret: str
    step: str


class CallbackPayload(_CamelModel):
    server_id: int
    secret: str
    wallet_address: str
    gateway_token: str = Field(min_length=1)

    @field_validator("wallet_address")
    @classmethod
    def validate_wallet(cls, value: str) -> str:
        candidate = value.strip()
        if len(candidate) != 42 or not candidate.startswith("0x"):
            raise ValueError("walletAddress must be a 0x-prefixed 20-byte hex address")
        return candidate.lower()


class TelegramPayload(_CamelModel):
    bot_token: str


class WithdrawPayload(_CamelModel):
    to: str
    amount: Decimal

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("amount must be positive")
        return value


class InstanceRecord(_CamelModel):
    id: int
    name: str
    hostname: str
    owner_wallet: str
    status: str
    provisioning_step: Optional[str] = None
    ip: str
    vm_wallet: Optional[str] = None
    nft_mint: Optional[str] = None
    telegram_bot_username: Optional[str] = None
    created_at: Optional[str] = None
    expires_at: Optional[str] = None


class InstanceListResponse(_CamelModel):
    instances: List[InstanceRecord]


class SyncResponse(_CamelModel):
    claimed: int
    recovered: int
    instances: List[InstanceRecord]


class AccessResponse(_CamelModel):
    ssh: str
    chat_url: Optional[str] = None
    terminal_url: Optional[str] = None
    root_password: Optional[str] = None


class HealthResponse(_CamelModel):
    healthy: bool
    hetzner_status: str
    instance_status: str
    callback_received: bool


@dataclass
class Services:
    """Everything the HTTP layer and background loops share, constructed once."""

    settings: Any
    store: InstanceStore
    events: EventRecorder
    auth: AuthGate
    provisioning: ProvisioningOrchestrator
    callbacks: CallbackHandler
    minting: MintAndFinalize
    mint_worker: MintWorker
    reconciliation: ReconciliationService
    reaper: ExpiryReaper
    crypto: Optional[CredentialCrypto] = None
    vm: Any = None
    dns: Any = None
    session_bridge: Optional[SessionBridge] = None

    @classmethod
    def build(
        cls,
        settings: Any,
        session_factory: sessionmaker,
        *,
        crypto: Optional[CredentialCrypto] = None,
        vm: Any = None,
        dns: Any = None,
        chain: Any = None,
        identity: Any = None,
        telegram: Any = None,
        session_bridge: Optional[SessionBridge] = None,
        events: Optional[EventRecorder] = None,
        name_generator: Any = None,
    ) -> "Services":
        store = InstanceStore(session_factory)
        events = events or EventRecorder(session_factory)
        minting = MintAndFinalize(settings, store, events, chain=chain, identity=identity)
        mint_worker = MintWorker(store, minting, poll_seconds=float(getattr(settings, "mint_worker_poll_seconds", 5.0)))
        provisioning_kwargs: Dict[str, Any] = {}
        if name_generator is not None:
            provisioning_kwargs["name_generator"] = name_generator
        return cls(
            settings=settings,
            store=store,
            events=events,
            auth=AuthGate(settings),
            provisioning=ProvisioningOrchestrator(
                settings, store, events, crypto, vm, dns=dns, telegram=telegram, **provisioning_kwargs
            ),
            callbacks=CallbackHandler(settings, store, events, crypto=crypto, on_finalized=mint_worker.wake),
            minting=minting,
            mint_worker=mint_worker,
            reconciliation=ReconciliationService(store, events, identity),
            reaper=ExpiryReaper(settings, store, events, vm=vm, dns=dns),
            crypto=crypto,
            vm=vm,
            dns=dns,
            session_bridge=session_bridge,
        )


def create_app(services: Services) -> FastAPI:
    settings = services.settings
    store = services.store
    events = services.events
    auth = services.auth

    app = FastAPI(title="AgentBox", version="1.0.0")

    def hostname(row: Instance) -> str:
        return f"{row.name}.{settings.instance_base_domain}"

    def to_record(row: Instance) -> InstanceRecord:
        return InstanceRecord(
            id=row.id,
            name=row.name,
            hostname=hostname(row),
            owner_wallet=row.owner_wallet,
            status=row.status,
            provisioning_step=row.provisioning_step,
            ip=row.ip,
            vm_wallet=row.vm_wallet,
            nft_mint=row.nft_mint,
            telegram_bot_username=row.telegram_bot_username,
            created_at=isoformat(row.created_at),
            expires_at=isoformat(row.expires_at),
        )

    def reload(instance_id: int) -> InstanceRecord:
        row = store.get(instance_id, include_deleted=True)
        if row is None:
            raise AgentboxError("Instance not found", status_code=404, code="not_found")
        return to_record(row)

    def require_identity(request: Request) -> Identity:
        header = request.headers.get("Authorization") or ""
        token = None
        if header.lower().startswith("bearer "):
            token = header.split(" ", 1)[1].strip() or None
        return auth.resolve(token)

    def load_owned(instance_id: int, identity: Identity) -> Instance:
        row = store.get(instance_id)
        if row is None:
            raise AgentboxError("Instance not found", status_code=404, code="not_found")
        if not auth.is_owner(row, identity):
            raise AgentboxError("Not the owner of this instance", status_code=403, code="forbidden")
        return row

    def require_vm() -> Any:
        if services.vm is None:
            raise AgentboxError("VM provider is not configured", status_code=503, code="provider_unconfigured")
        return services.vm

    def require_bridge() -> SessionBridge:
        if services.session_bridge is None:
            raise AgentboxError("SSH access is not configured", status_code=503, code="ssh_unconfigured")
        return services.session_bridge

    def require_running(row: Instance) -> None:
        if row.status != STATUS_RUNNING:
            raise AgentboxError(f"Instance is {row.status}, not running", status_code=409, code="invalid_state")

    @app.exception_handler(AgentboxError)
    async def agentbox_error_handler(_: Request, exc: AgentboxError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body')}: {error.get('msg')}"
            for error in exc.errors()
        )
        return JSONResponse(status_code=400, content={"error": "invalid_input", "detail": problems})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = HTTP_ERROR_CODES.get(exc.status_code, "error")
        return JSONResponse(status_code=exc.status_code, content={"error": code, "detail": exc.detail})

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "time": isoformat(utcnow())}

    # -- sign-in ---------------------------------------------------------

    @app.post("/instances/auth", response_model=AuthResponse)
    def sign_in(payload: AuthPayload) -> AuthResponse:
        token, is_admin = auth.sign_in(payload.wallet_address, payload.signature, payload.timestamp)
        wallet = payload.wallet_address.lower()
        events.record("auth.signed_in", actor_type="wallet", actor_id=wallet)
        return AuthResponse(token=token, is_admin=is_admin)

    # -- collection ------------------------------------------------------

    @app.post("/instances", response_model=InstanceRecord, status_code=status.HTTP_201_CREATED)
    def create_instance(
        payload: Optional[CreateInstancePayload] = None,
        identity: Identity = Depends(require_identity),
    ) -> InstanceRecord:
        payload = payload or CreateInstancePayload()
        row = services.provisioning.create(
            identity.actor_id,
            name=payload.name,
            telegram_bot_token=payload.telegram_bot_token,
        )
        return to_record(row)

    @app.get("/instances", response_model=InstanceListResponse)
    def list_instances(
        show_all: bool = Query(default=False, alias="all"),
        identity: Identity = Depends(require_identity),
    ) -> InstanceListResponse:
        if show_all and auth.is_admin(identity):
            rows = store.list_instances()
        else:
            rows = store.list_instances(identity.actor_id)
        return InstanceListResponse(instances=[to_record(row) for row in rows])

    @app.get("/instances/expiring", response_model=InstanceListResponse)
    def list_expiring(
        days: int = Query(default=3, ge=0, le=365),
        show_all: bool = Query(default=False, alias="all"),
        identity: Identity = Depends(require_identity),
    ) -> InstanceListResponse:
        cutoff = utcnow() + timedelta(days=days)
        if show_all and auth.is_admin(identity):
            rows = store.list_expiring(cutoff)
        else:
            rows = store.list_expiring(cutoff, identity.actor_id)
        return InstanceListResponse(instances=[to_record(row) for row in rows])

    @app.post("/instances/sync", response_model=SyncResponse)
    def sync_instances(identity: Identity = Depends(require_identity)) -> SyncResponse:
        if identity.wallet is None:
            raise AgentboxError("Sync requires a wallet identity", code="wallet_required")
        result = services.reconciliation.sync(identity.wallet)
        events.record(
            "sync.requested",
            actor_type=identity.actor_type,
            actor_id=identity.actor_id,
            metadata={"claimed": result.claimed, "recovered": result.recovered},
        )
        rows = store.list_instances(identity.wallet)
        return SyncResponse(
            claimed=result.claimed,
            recovered=result.recovered,
            instances=[to_record(row) for row in rows],
        )

    # -- VM callbacks ----------------------------------------------------

    @app.post("/instances/callback/step")
    def callback_step(payload: StepPayload) -> Dict[str, Any]:
        services.callbacks.report_step(payload.server_id, payload.secret, payload.step)
        return {"ok": True}

    @app.post("/instances/callback")
    def callback_final(payload: CallbackPayload) -> Dict[str, Any]:
        services.callbacks.finalize(payload.server_id, payload.secret, payload.wallet_address, payload.gateway_token)
        return {"ok": True}

    @app.get("/instances/config")
    def boot_config(
        server_id: int = Query(alias="serverId"),
        secret: str = Query(),
    ) -> Dict[str, Any]:
        return services.callbacks.boot_config(server_id, secret)

    # -- single instance -------------------------------------------------

    @app.get("/instances/{instance_id}", response_model=InstanceRecord)
    def get_instance(instance_id: int, identity: Identity = Depends(require_identity)) -> InstanceRecord:
        return to_record(load_owned(instance_id, identity))

    @app.patch("/instances/{instance_id}", response_model=InstanceRecord)
    def rename_instance(
        instance_id: int,
        payload: RenamePayload,
        identity: Identity = Depends(require_identity),
    ) -> InstanceRecord:
        row = load_owned(instance_id, identity)
        new_name = validate_name(payload.name)
        if new_name == row.name:
            return to_record(row)
        if not store.rename(row.id, new_name):
            raise AgentboxError("Instance not found", status_code=404, code="not_found")
        if services.dns is not None:
            old_host = hostname(row)
            new_host = f"{new_name}.{settings.instance_base_domain}"
            try:
                services.dns.create_record(new_host, row.ip)
                services.dns.delete_record(old_host)
            except Exception as exc:
                logger.warning("DNS update for rename %s -> %s failed: %s", old_host, new_host, exc)
        events.record_instance(
            "instance.renamed",
            row.id,
            actor_type=identity.actor_type,
            actor_id=identity.actor_id,
            metadata={"new_name": new_name},
        )
        return reload(row.id)

    @app.patch("/instances/{instance_id}/agent", response_model=InstanceRecord)
    def update_agent(
        instance_id: int,
        payload: AgentUpdatePayload,
        identity: Identity = Depends(require_identity),
    ) -> InstanceRecord:
        row = load_owned(instance_id, identity)
        services.minting.update_agent(row, identity, name=payload.name, description=payload.description)
        return to_record(row)

    @app.delete("/instances/{instance_id}")
    def delete_instance(instance_id: int, identity: Identity = Depends(require_identity)) -> Dict[str, Any]:
        row = load_owned(instance_id, identity)
        services.reaper.delete(row, identity)
        return {"ok": True}

    @app.post("/instances/{instance_id}/mint", response_model=InstanceRecord, status_code=status.HTTP_202_ACCEPTED)
    def retry_mint(instance_id: int, identity: Identity = Depends(require_identity)) -> InstanceRecord:
        row = load_owned(instance_id, identity)
        services.minting.retry(row, identity)
        services.mint_worker.wake()
        return reload(row.id)

    @app.post("/instances/{instance_id}/mint/transfer")
    def retry_mint_transfer(instance_id: int, identity: Identity = Depends(require_identity)) -> Dict[str, Any]:
        row = load_owned(instance_id, identity)
        tx_hash = services.minting.retry_transfer(row, identity)
        return {"ok": True, "nftMint": row.nft_mint, "txHash": tx_hash}

    @app.post("/instances/{instance_id}/restart")
    def restart_instance(instance_id: int, identity: Identity = Depends(require_identity)) -> Dict[str, Any]:
        row = load_owned(instance_id, identity)
        if row.status not in (STATUS_RUNNING, STATUS_STOPPED):
            raise AgentboxError(f"Instance is {row.status}; only running instances restart", status_code=409, code="invalid_state")
        vm = require_vm()
        try:
            vm.reboot_server(row.id)
        except HetznerError as exc:
            raise AgentboxError("Failed to restart server", status_code=502, code="vm_restart_failed") from exc
        events.record_instance("instance.restarted", row.id, actor_type=identity.actor_type, actor_id=identity.actor_id)
        return {"ok": True}

    @app.post("/instances/{instance_id}/extend", response_model=InstanceRecord)
    def extend_instance(instance_id: int, identity: Identity = Depends(require_identity)) -> InstanceRecord:
        row = load_owned(instance_id, identity)
        max_expiry: datetime = row.created_at + timedelta(days=int(settings.instance_max_lifetime_days))
        new_expiry: datetime = row.expires_at + timedelta(days=int(settings.instance_extend_days))
        if new_expiry > max_expiry:
            raise AgentboxError(
                f"Extension would exceed the {settings.instance_max_lifetime_days}-day maximum lifetime",
                code="max_lifetime_exceeded",
            )
        if not store.extend(row.id, row.expires_at, new_expiry):
            raise AgentboxError(
                "Instance is being deleted or was extended concurrently", status_code=409, code="invalid_state"
            )
        events.record_instance(
            "instance.extended",
            row.id,
            actor_type=identity.actor_type,
            actor_id=identity.actor_id,
            metadata={"new_expires_at": isoformat(new_expiry)},
        )
        return reload(row.id)

    @app.get("/instances/{instance_id}/access", response_model=AccessResponse)
    def instance_access(instance_id: int, identity: Identity = Depends(require_identity)) -> AccessResponse:
        row = load_owned(instance_id, identity)
        host = hostname(row)
        root_password = None
        if row.root_password and services.crypto is not None:
            try:
                root_password = services.crypto.decrypt(row.root_password)
            except CryptoError as exc:
                logger.error("Stored root password for instance %s is unreadable: %s", row.id, exc)
        return AccessResponse(
            ssh=f"root@{row.ip}",
            chat_url=f"https://{host}/chat#token={row.gateway_token}" if row.gateway_token else None,
            terminal_url=f"https://{host}/terminal/{row.terminal_token}/" if row.terminal_token else None,
            root_password=root_password,
        )

    @app.get("/instances/{instance_id}/health", response_model=HealthResponse)
    def instance_health(instance_id: int, identity: Identity = Depends(require_identity)) -> HealthResponse:
        row = load_owned(instance_id, identity)
        vm_status = "unknown"
        if services.vm is not None:
            try:
                vm_status = services.vm.get_server(row.id).status
            except HetznerError as exc:
                logger.warning("Health probe for instance %s failed: %s", row.id, exc)
        return HealthResponse(
            healthy=vm_status == "running" and row.status == STATUS_RUNNING,
            hetzner_status=vm_status,
            instance_status=row.status,
            callback_received=row.callback_token is None,
        )

    @app.get("/instances/{instance_id}/events")
    def instance_events(
        instance_id: int,
        limit: int = Query(default=100, ge=1, le=500),
        identity: Identity = Depends(require_identity),
    ) -> Dict[str, Any]:
        row = load_owned(instance_id, identity)
        return {"events": events.list_for_entity("instance", row.id, limit=limit)}

    @app.post("/instances/{instance_id}/telegram", response_model=InstanceRecord)
    def configure_telegram(
        instance_id: int,
        payload: TelegramPayload,
        identity: Identity = Depends(require_identity),
    ) -> InstanceRecord:
        row = load_owned(instance_id, identity)
        require_running(row)
        if services.crypto is None:
            raise AgentboxError("Credential encryption is not configured", status_code=503, code="crypto_unconfigured")
        bridge = require_bridge()
        username = services.provisioning.validate_bot_token(payload.bot_token)
        try:
            bridge.push_telegram_config(row, payload.bot_token)
        except SessionBridgeError as exc:
            raise AgentboxError(str(exc), status_code=502, code="session_failed") from exc
        store.update_fields(
            row.id,
            telegram_bot_token=services.crypto.encrypt(payload.bot_token),
            telegram_bot_username=username,
        )
        events.record_instance(
            "instance.telegram_configured",
            row.id,
            actor_type=identity.actor_type,
            actor_id=identity.actor_id,
            metadata={"bot_username": username},
        )
        return reload(row.id)

    @app.post("/instances/{instance_id}/withdraw")
    def withdraw(
        instance_id: int,
        payload: WithdrawPayload,
        identity: Identity = Depends(require_identity),
    ) -> Dict[str, Any]:
        row = load_owned(instance_id, identity)
        require_running(row)
        destination = normalize_wallet(payload.to)
        bridge = require_bridge()
        try:
            result = bridge.withdraw(row, destination, payload.amount)
        except SessionBridgeError as exc:
            raise AgentboxError(str(exc), status_code=502, code="session_failed") from exc
        events.record_instance(
            "instance.withdrawal",
            row.id,
            actor_type=identity.actor_type,
            actor_id=identity.actor_id,
            metadata={"to": destination, "amount": str(payload.amount)},
        )
        return {"ok": True, "result": result}

    return app


def run_api(app: FastAPI, settings: Any) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=str(getattr(settings, "log_level", "info")).lower(),
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.install_signal_handlers = False
    server.run()


__all__ = ["Services", "create_app", "run_api"]
