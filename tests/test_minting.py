import pytest
from sqlalchemy import update

from agentbox.api import Services
from agentbox.auth import Identity
from agentbox.chain import ChainError
from agentbox.instances import AgentboxError, parse_funded_assets
from agentbox.models import (
    JOB_DONE,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    STATUS_DELETING,
    STATUS_MINTING,
    STATUS_RUNNING,
    Job,
)

from fakes import CUSTODIAN, OWNER, VM_WALLET, FakeChain, FakeIdentity, FakeVM, event_types

ACTOR = Identity(wallet=OWNER)


def provision_and_callback(services, name="my-agent"):
    row = services.provisioning.create(OWNER, name=name)
    services.callbacks.finalize(row.id, row.callback_token, VM_WALLET, "gw-token")
    return row


def test_worker_funds_mints_and_transfers(services, fake_chain, fake_identity):
    row = provision_and_callback(services)

    assert services.mint_worker.run_once() == 1

    stored = services.store.get(row.id)
    assert stored.status == STATUS_RUNNING
    assert stored.nft_mint == "1"
    assert fake_chain.native == [(VM_WALLET, services.settings.vm_funding_native_eth)]
    assert fake_chain.tokens == [(services.settings.stable_token_address, VM_WALLET, 1_000_000)]
    assert fake_identity.tokens["1"]["owner"] == OWNER
    descriptor = fake_identity.tokens["1"]["descriptor"]
    assert descriptor["attributes"] == [{"trait_type": "agentbox:serverId", "value": str(row.id)}]
    assert {"name": "agentWallet", "endpoint": f"eip155:8453:{VM_WALLET}"} in descriptor["services"]
    assert [job.status for job in services.store.jobs_for(row.id)] == [JOB_DONE]
    types = event_types(services, row.id)
    assert types.count("instance.funded") == 2
    assert types[-3:] == ["instance.minted", "instance.nft_transferred", "instance.running"]


def test_failed_funding_still_mints_and_runs(settings, session_factory, crypto):
    chain = FakeChain(native_error=ChainError("insufficient funds"), token_error=ChainError("reverted"))
    identity = FakeIdentity()
    services = Services.build(settings, session_factory, crypto=crypto, vm=FakeVM(), chain=chain, identity=identity)
    row = provision_and_callback(services)

    services.mint_worker.run_once()

    stored = services.store.get(row.id)
    assert stored.status == STATUS_RUNNING
    assert stored.nft_mint == "1"
    assert event_types(services, row.id).count("instance.funding_failed") == 2


def test_failed_mint_leaves_instance_running_without_token(services, fake_identity):
    fake_identity.mint_error = ChainError("execution reverted")
    row = provision_and_callback(services)

    services.mint_worker.run_once()

    stored = services.store.get(row.id)
    assert stored.status == STATUS_RUNNING
    assert stored.nft_mint is None
    assert "instance.mint_failed" in event_types(services, row.id)


def test_failed_transfer_keeps_token_custodial(services, fake_identity):
    fake_identity.transfer_error = ChainError("gas too low")
    row = provision_and_callback(services)

    services.mint_worker.run_once()

    stored = services.store.get(row.id)
    assert stored.status == STATUS_RUNNING
    assert stored.nft_mint == "1"
    assert fake_identity.tokens["1"]["owner"] == CUSTODIAN
    assert "instance.nft_transfer_failed" in event_types(services, row.id)


def test_missing_identity_registry_still_reaches_running(settings, session_factory, crypto):
    services = Services.build(settings, session_factory, crypto=crypto, vm=FakeVM(), chain=FakeChain())
    row = provision_and_callback(services)

    services.mint_worker.run_once()

    assert services.store.get(row.id).status == STATUS_RUNNING
    assert "instance.mint_failed" in event_types(services, row.id)


def test_finalize_skips_instance_being_deleted(services, fake_chain):
    row = provision_and_callback(services)
    services.store.transition(row.id, (STATUS_MINTING,), STATUS_DELETING)

    services.mint_worker.run_once()

    assert services.store.get(row.id).status == STATUS_DELETING
    assert fake_chain.native == []


def test_worker_marks_job_failed_on_unexpected_error(services, monkeypatch):
    row = provision_and_callback(services)

    def explode(instance_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(services.minting, "finalize", explode)
    services.mint_worker.run_once()

    jobs = services.store.jobs_for(row.id)
    assert jobs[0].status == JOB_FAILED
    assert jobs[0].last_error == "boom"
    assert services.store.get(row.id).status == STATUS_RUNNING


def test_requeue_stale_running_jobs(services):
    row = provision_and_callback(services)
    claimed = services.store.claim_next_job()
    assert claimed.instance_id == row.id
    assert services.store.claim_next_job() is None

    assert services.mint_worker.requeue_stale() == 1
    job = services.store.jobs_for(row.id)[0]
    assert job.status == JOB_PENDING
    assert job.attempts == 1


def test_requeued_job_after_running_does_not_fund_again(services, session_factory, fake_chain, fake_identity):
    row = provision_and_callback(services)
    services.mint_worker.run_once()
    # The process died after the instance went running but before the job was closed.
    with session_factory.begin() as session:
        session.execute(update(Job).where(Job.instance_id == row.id).values(status=JOB_RUNNING))

    assert services.mint_worker.requeue_stale() == 1
    assert services.mint_worker.run_once() == 1

    assert len(fake_chain.native) == 1
    assert len(fake_chain.tokens) == 1
    assert fake_identity.next_token == 2
    assert services.store.get(row.id).status == STATUS_RUNNING
    assert event_types(services, row.id).count("instance.funded") == 2


def test_finalize_only_sends_assets_not_yet_funded(services, fake_chain):
    row = provision_and_callback(services)
    services.store.mark_funded(row.id, "native")

    services.mint_worker.run_once()

    stored = services.store.get(row.id)
    assert fake_chain.native == []
    assert len(fake_chain.tokens) == 1
    assert parse_funded_assets(stored.funded_assets) == {"native", "stable"}


def test_retry_requires_missing_token(services):
    row = provision_and_callback(services)
    services.mint_worker.run_once()
    with pytest.raises(AgentboxError) as excinfo:
        services.minting.retry(services.store.get(row.id), ACTOR)
    assert excinfo.value.status_code == 400
    assert excinfo.value.code == "already_minted"


def test_retry_requires_vm_wallet(services):
    row = services.provisioning.create(OWNER)
    with pytest.raises(AgentboxError) as excinfo:
        services.minting.retry(row, ACTOR)
    assert excinfo.value.status_code == 400
    assert excinfo.value.code == "missing_vm_wallet"


def test_retry_conflicts_while_minting(services):
    row = provision_and_callback(services)
    with pytest.raises(AgentboxError) as excinfo:
        services.minting.retry(services.store.get(row.id), ACTOR)
    assert excinfo.value.status_code == 409
    assert excinfo.value.code == "mint_in_progress"


def test_retry_conflicts_when_deleting(services):
    row = provision_and_callback(services)
    services.store.transition(row.id, (STATUS_MINTING,), STATUS_DELETING)
    with pytest.raises(AgentboxError) as excinfo:
        services.minting.retry(services.store.get(row.id), ACTOR)
    assert excinfo.value.status_code == 409
    assert excinfo.value.code == "invalid_state"


def test_retry_mints_on_next_run_without_funding_again(services, fake_chain, fake_identity):
    fake_identity.mint_error = ChainError("reverted")
    row = provision_and_callback(services)
    services.mint_worker.run_once()

    fake_identity.mint_error = None
    services.minting.retry(services.store.get(row.id), ACTOR)
    assert services.store.get(row.id).status == STATUS_MINTING

    services.mint_worker.run_once()
    stored = services.store.get(row.id)
    assert stored.status == STATUS_RUNNING
    assert stored.nft_mint == "1"
    assert "instance.mint_retried" in event_types(services, row.id)
    assert len(fake_chain.native) == 1
    assert len(fake_chain.tokens) == 1


def test_concurrent_retry_only_one_wins(services, fake_identity):
    fake_identity.mint_error = ChainError("reverted")
    row = provision_and_callback(services)
    services.mint_worker.run_once()
    stale = services.store.get(row.id)

    services.minting.retry(stale, ACTOR)
    with pytest.raises(AgentboxError) as excinfo:
        services.minting.retry(stale, ACTOR)
    assert excinfo.value.status_code == 409
    assert len(services.store.jobs_for(row.id)) == 2


def test_retry_transfer_moves_custodial_token(services, fake_identity):
    fake_identity.transfer_error = ChainError("gas too low")
    row = provision_and_callback(services)
    services.mint_worker.run_once()

    fake_identity.transfer_error = None
    tx_hash = services.minting.retry_transfer(services.store.get(row.id), ACTOR)
    assert tx_hash == "0xtransfer"
    assert fake_identity.tokens["1"]["owner"] == OWNER

    with pytest.raises(AgentboxError) as excinfo:
        services.minting.retry_transfer(services.store.get(row.id), ACTOR)
    assert excinfo.value.code == "already_transferred"


def test_retry_transfer_refuses_foreign_token(services, fake_identity):
    row = provision_and_callback(services)
    services.mint_worker.run_once()
    fake_identity.tokens["1"]["owner"] = "0x" + "99" * 20
    with pytest.raises(AgentboxError) as excinfo:
        services.minting.retry_transfer(services.store.get(row.id), ACTOR)
    assert excinfo.value.status_code == 409
    assert excinfo.value.code == "not_custodial"


def test_retry_transfer_requires_token(services):
    row = services.provisioning.create(OWNER)
    with pytest.raises(AgentboxError) as excinfo:
        services.minting.retry_transfer(row, ACTOR)
    assert excinfo.value.code == "not_minted"


def test_update_agent_rewrites_descriptor(services, fake_identity):
    row = provision_and_callback(services)
    services.mint_worker.run_once()

    services.minting.update_agent(services.store.get(row.id), ACTOR, name="Research Bot", description="Finds papers")

    descriptor = fake_identity.tokens["1"]["descriptor"]
    assert descriptor["name"] == "Research Bot"
    assert descriptor["description"] == "Finds papers"
    assert descriptor["external_url"] == "https://my-agent.agentbox.test"
    assert "instance.agent_updated" in event_types(services, row.id)


def test_operator_owned_identity_stays_custodial(services, fake_identity):
    row = services.provisioning.create("operator", name="ops-agent")
    services.callbacks.finalize(row.id, row.callback_token, VM_WALLET, "gw")
    services.mint_worker.run_once()

    stored = services.store.get(row.id)
    assert stored.nft_mint == "1"
    assert fake_identity.tokens["1"]["owner"] == CUSTODIAN
    with pytest.raises(AgentboxError) as excinfo:
        services.minting.retry_transfer(stored, Identity(wallet=None, is_operator=True))
    assert excinfo.value.code == "not_transferable"
