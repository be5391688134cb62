import pytest

from agentbox.api import Services
from agentbox.identity import build_descriptor, extract_server_id
from agentbox.instances import AgentboxError

from fakes import OTHER, OWNER, VM_WALLET, FakeVM, event_types


def descriptor_for(server_id):
    return build_descriptor(
        name="agent",
        hostname="agent.agentbox.test",
        vm_wallet=VM_WALLET,
        server_id=server_id,
        chain_id=8453,
    )


def minted_instance(services):
    row = services.provisioning.create(OWNER, name="my-agent")
    services.callbacks.finalize(row.id, row.callback_token, VM_WALLET, "gw")
    services.mint_worker.run_once()
    return services.store.get(row.id)


def test_sync_claims_transferred_token(services, fake_identity):
    row = minted_instance(services)
    fake_identity.tokens[row.nft_mint]["owner"] = OTHER

    result = services.reconciliation.sync(OTHER)

    assert (result.claimed, result.recovered) == (1, 0)
    assert services.store.get(row.id).owner_wallet == OTHER
    assert "instance.claimed" in event_types(services, row.id)


def test_sync_is_idempotent(services):
    minted_instance(services)
    result = services.reconciliation.sync(OWNER)
    assert (result.claimed, result.recovered) == (0, 0)


def test_sync_recovers_unlinked_token_by_server_id(services, fake_identity):
    row = services.provisioning.create(OWNER, name="my-agent")
    fake_identity.add_token("77", OTHER, descriptor_for(row.id))

    result = services.reconciliation.sync(OTHER)

    assert result.recovered == 1
    stored = services.store.get(row.id)
    assert stored.nft_mint == "77"
    assert stored.owner_wallet == OTHER
    assert "instance.recovered" in event_types(services, row.id)


def test_sync_skips_unusable_tokens(services, fake_identity):
    fake_identity.add_token("10", OTHER, {"name": "no marker"})
    fake_identity.add_token("11", OTHER, descriptor_for(999))
    fake_identity.add_token("12", OTHER, descriptor_for(42))
    fake_identity.unloadable.add("12")

    result = services.reconciliation.sync(OTHER)

    assert (result.claimed, result.recovered) == (0, 0)


def test_sync_without_registry_is_unavailable(settings, session_factory, crypto):
    services = Services.build(settings, session_factory, crypto=crypto, vm=FakeVM())
    with pytest.raises(AgentboxError) as excinfo:
        services.reconciliation.sync(OWNER)
    assert excinfo.value.status_code == 503


@pytest.mark.parametrize(
    "descriptor, expected",
    [
        ({"attributes": [{"trait_type": "agentbox:serverId", "value": "42"}]}, 42),
        ({"attributes": [{"trait_type": "agentbox:serverId", "value": "4x2"}]}, None),
        ({"attributes": [{"trait_type": "other", "value": "42"}]}, None),
        ({}, None),
        ("not a dict", None),
    ],
)
def test_extract_server_id(descriptor, expected):
    assert extract_server_id(descriptor) == expected
