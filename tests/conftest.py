import os
import sys
from pathlib import Path

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ETH_RPC_URL", "http://localhost:8545")
os.environ.setdefault("CHAIN_DRY_RUN", "true")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


from agentbox.api import Services  # noqa: E402
from agentbox.crypto import CredentialCrypto  # noqa: E402
from agentbox.db import build_engine, build_session_factory, init_db  # noqa: E402
from fakes import (  # noqa: E402
    ENCRYPTION_KEY,
    FakeChain,
    FakeDNS,
    FakeIdentity,
    FakeTelegram,
    FakeVM,
    build_settings,
)


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def settings():
    return build_settings()


@pytest.fixture()
def session_factory():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def crypto():
    return CredentialCrypto(ENCRYPTION_KEY)


@pytest.fixture()
def fake_vm():
    return FakeVM()


@pytest.fixture()
def fake_dns():
    return FakeDNS()


@pytest.fixture()
def fake_chain():
    return FakeChain()


@pytest.fixture()
def fake_identity():
    return FakeIdentity()


@pytest.fixture()
def fake_telegram():
    return FakeTelegram()


@pytest.fixture()
def services(settings, session_factory, crypto, fake_vm, fake_dns, fake_chain, fake_identity, fake_telegram):
    return Services.build(
        settings,
        session_factory,
        crypto=crypto,
        vm=fake_vm,
        dns=fake_dns,
        chain=fake_chain,
        identity=fake_identity,
        telegram=fake_telegram,
    )

