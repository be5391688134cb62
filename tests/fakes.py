"""Fakes for the external collaborators plus small helpers shared by the tests."""
import json
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy import select

from agentbox.chain import ChainError
from agentbox.hetzner import HetznerError, ServerInfo
from agentbox.identity import DATA_URI_PREFIX
from agentbox.models import Event
from agentbox.telegram import InvalidBotTokenError

ENCRYPTION_KEY = "11" * 32
OWNER = "0x" + "a1" * 20
OTHER = "0x" + "b2" * 20
ADMIN = "0x" + "c3" * 20
CUSTODIAN = "0x" + "d4" * 20
VM_WALLET = "0x" + "e5" * 20
BOT_TOKEN = "123456:" + "A" * 35


def build_settings(**overrides):
    defaults = dict(
        api_base_url="https://api.agentbox.test",
        instance_base_domain="agentbox.test",
        hetzner_snapshot_id="361236634",
        instance_ttl_days=7,
        instance_max_lifetime_days=90,
        instance_extend_days=7,
        vm_funding_native_eth=Decimal("0.0005"),
        vm_funding_stable_units=1_000_000,
        stable_token_address="0x" + "5a" * 20,
        chain_id=8453,
        jwt_secret="test-jwt-secret",
        operator_token="operator-secret",
        treasury_address=ADMIN,
        mint_worker_poll_seconds=0.01,
        reaper_interval_seconds=3600,
        ssh_private_key=None,
        ssh_config_timeout_seconds=0.5,
        ssh_transfer_timeout_seconds=0.5,
        log_level="INFO",
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


class FakeVM:
    def __init__(self, *, next_id=42, create_error=None):
        self.next_id = next_id
        self.create_error = create_error
        self.delete_error = None
        self.created = []
        self.deleted = []
        self.rebooted = []
        self.statuses = {}

    def create_server_with_fallback(self, name, user_data):
        self.created.append((name, user_data))
        if self.create_error is not None:
            raise self.create_error
        server_id = self.next_id
        self.next_id += 1
        self.statuses[server_id] = "running"
        return ServerInfo(
            id=server_id,
            ip=f"10.0.0.{server_id % 250}",
            status="initializing",
            root_password="root-pw",
            location="nbg1",
        )

    def get_server(self, server_id):
        if server_id not in self.statuses:
            raise HetznerError("not found", status_code=404)
        return ServerInfo(id=server_id, ip="10.0.0.1", status=self.statuses[server_id])

    def delete_server(self, server_id):
        self.deleted.append(server_id)
        if self.delete_error is not None:
            raise self.delete_error
        return self.statuses.pop(server_id, None) is not None

    def reboot_server(self, server_id):
        self.rebooted.append(server_id)


class FakeDNS:
    def __init__(self, *, error=None):
        self.error = error
        self.created = []
        self.deleted = []

    def create_record(self, hostname, ip):
        if self.error is not None:
            raise self.error
        self.created.append((hostname, ip))
        return {"id": hostname}

    def delete_record(self, hostname):
        if self.error is not None:
            raise self.error
        self.deleted.append(hostname)
        return 1


class FakeChain:
    def __init__(self, *, native_error=None, token_error=None):
        self.native_error = native_error
        self.token_error = token_error
        self.native = []
        self.tokens = []
        self.sender = CUSTODIAN

    def transfer_native(self, to, amount_eth):
        if self.native_error is not None:
            raise self.native_error
        self.native.append((to, amount_eth))
        return "0xnative"

    def transfer_token(self, token, to, units):
        if self.token_error is not None:
            raise self.token_error
        self.tokens.append((token, to, units))
        return "0xtoken"


class FakeIdentity:
    def __init__(self):
        self.custodian = CUSTODIAN
        self.tokens = {}
        self.next_token = 1
        self.mint_error = None
        self.transfer_error = None
        self.unloadable = set()
        self.uris = []

    def upload_descriptor(self, descriptor):
        return DATA_URI_PREFIX + json.dumps(descriptor)

    def mint_identity(self, descriptor_uri):
        if self.mint_error is not None:
            raise self.mint_error
        token_id = str(self.next_token)
        self.next_token += 1
        self.tokens[token_id] = {
            "owner": self.custodian,
            "descriptor": json.loads(descriptor_uri[len(DATA_URI_PREFIX):]),
        }
        return token_id

    def add_token(self, token_id, owner, descriptor):
        self.tokens[token_id] = {"owner": owner, "descriptor": descriptor}

    def transfer_identity(self, token_id, to):
        if self.transfer_error is not None:
            raise self.transfer_error
        self.tokens[token_id]["owner"] = to
        return "0xtransfer"

    def set_token_uri(self, token_id, uri):
        self.uris.append((token_id, uri))
        self.tokens[token_id]["descriptor"] = json.loads(uri[len(DATA_URI_PREFIX):])
        return "0xuri"

    def owner_of(self, token_id):
        if token_id not in self.tokens:
            raise ChainError("nonexistent token")
        return self.tokens[token_id]["owner"]

    def owned_tokens_of(self, wallet):
        return [token_id for token_id, token in self.tokens.items() if token["owner"] == wallet]

    def load_identity(self, token_id):
        if token_id in self.unloadable:
            raise ChainError("descriptor unavailable")
        return self.tokens[token_id]["descriptor"]


class FakeTelegram:
    def __init__(self, *, valid=True):
        self.valid = valid
        self.webhooks_cleared = []

    def get_me(self, token):
        if not self.valid:
            raise InvalidBotTokenError("Telegram rejected the bot token")
        return {"id": 123456, "is_bot": True, "username": "agent_test_bot"}

    def delete_webhook(self, token):
        self.webhooks_cleared.append(token)


def event_types(services, instance_id=None):
    stmt = select(Event).order_by(Event.id.asc())
    if instance_id is not None:
        stmt = stmt.where(Event.entity_id == str(instance_id))
    with services.store._session_factory() as session:
        return [row.event_type for row in session.execute(stmt).scalars()]
