import pytest
from sqlalchemy import select

from agentbox.api import Services
from agentbox.hetzner import HetznerClient, HetznerError, LocationUnavailableError, ServerInfo
from agentbox.instances import AgentboxError
from agentbox.models import STATUS_PROVISIONING, Job
from agentbox.provisioning import build_user_data, generate_name

from fakes import BOT_TOKEN, OTHER, OWNER, FakeTelegram, FakeVM, event_types


def test_generate_name_shape():
    name = generate_name()
    prefix, adjective, suffix = name.split("-")
    assert prefix == "agent"
    assert adjective.isalpha()
    assert len(suffix) == 4
    int(suffix, 16)


def test_create_inserts_provisioning_row(services, fake_vm, fake_dns, crypto):
    row = services.provisioning.create(OWNER, name="my-agent")

    assert row.id == 42
    assert row.status == STATUS_PROVISIONING
    assert row.provisioning_step == "vm_created"
    assert row.owner_wallet == OWNER
    assert len(row.callback_token) == 64
    assert len(row.terminal_token) == 64
    assert (row.expires_at - row.created_at).days == 7
    assert crypto.decrypt(row.root_password) == "root-pw"
    assert fake_dns.created == [("my-agent.agentbox.test", row.ip)]

    name, user_data = fake_vm.created[0]
    assert name == "my-agent"
    assert 'CALLBACK_URL="https://api.agentbox.test/instances/callback"' in user_data
    assert f'CALLBACK_SECRET="{row.callback_token}"' in user_data
    assert 'INSTANCE_HOSTNAME="my-agent.agentbox.test"' in user_data
    assert event_types(services, row.id) == ["instance.created"]
    assert services.store.jobs_for(row.id) == []


def test_user_data_never_carries_bot_token(services, fake_vm, crypto):
    row = services.provisioning.create(OWNER, telegram_bot_token=BOT_TOKEN)

    _, user_data = fake_vm.created[0]
    assert BOT_TOKEN not in user_data
    assert crypto.decrypt(row.telegram_bot_token) == BOT_TOKEN
    assert row.telegram_bot_username == "agent_test_bot"


def test_build_user_data_quotes_values():
    script = build_user_data(
        callback_url="https://api/instances/callback",
        callback_token="cb",
        terminal_token="term",
        hostname="x.agentbox.test",
    )
    assert script.startswith("#!/bin/bash")
    assert "cat > /etc/agentbox/callback.env << 'ENVEOF'" in script
    assert 'TERMINAL_TOKEN="term"' in script
    assert "chmod 600 /etc/agentbox/callback.env" in script


def test_requested_name_must_be_valid(services, fake_vm):
    with pytest.raises(AgentboxError) as excinfo:
        services.provisioning.create(OWNER, name="Bad_Name!")
    assert excinfo.value.code == "invalid_name"
    assert fake_vm.created == []


def test_requested_name_in_use_conflicts(services, fake_vm):
    services.provisioning.create(OWNER, name="my-agent")
    with pytest.raises(AgentboxError) as excinfo:
        services.provisioning.create(OTHER, name="my-agent")
    assert excinfo.value.status_code == 409
    assert excinfo.value.code == "name_taken"
    assert len(fake_vm.created) == 1


def test_soft_deleted_row_frees_its_name(services):
    row = services.provisioning.create(OWNER, name="my-agent")
    services.store.soft_delete(row.id)
    again = services.provisioning.create(OWNER, name="my-agent")
    assert again.id != row.id


def test_generated_name_collisions_give_up_before_vm_call(settings, session_factory, crypto):
    vm = FakeVM()
    services = Services.build(settings, session_factory, crypto=crypto, vm=vm, name_generator=lambda: "agent-calm-0000")
    services.provisioning.create(OWNER)

    with pytest.raises(AgentboxError) as excinfo:
        services.provisioning.create(OWNER)
    assert excinfo.value.status_code == 409
    assert excinfo.value.code == "name_allocation_failed"
    assert len(vm.created) == 1
    assert "instance.create_failed" in event_types(services)


def test_missing_provider_is_unavailable(settings, session_factory, crypto):
    services = Services.build(settings, session_factory, crypto=crypto, vm=None)
    with pytest.raises(AgentboxError) as excinfo:
        services.provisioning.create(OWNER)
    assert excinfo.value.status_code == 503


def test_vm_failure_leaves_no_row(settings, session_factory, crypto):
    vm = FakeVM(create_error=HetznerError("quota exceeded", status_code=403))
    services = Services.build(settings, session_factory, crypto=crypto, vm=vm)

    with pytest.raises(AgentboxError) as excinfo:
        services.provisioning.create(OWNER, name="my-agent")
    assert excinfo.value.status_code == 502
    assert excinfo.value.code == "vm_create_failed"
    assert services.store.list_instances() == []
    assert event_types(services) == ["instance.create_failed"]


def test_dns_failure_is_not_fatal(services, fake_dns):
    fake_dns.error = RuntimeError("cloudflare down")
    row = services.provisioning.create(OWNER, name="my-agent")
    assert services.store.get(row.id) is not None


def test_rejected_bot_token_stops_before_vm(settings, session_factory, crypto):
    vm = FakeVM()
    services = Services.build(settings, session_factory, crypto=crypto, vm=vm, telegram=FakeTelegram(valid=False))

    with pytest.raises(AgentboxError) as excinfo:
        services.provisioning.create(OWNER, telegram_bot_token=BOT_TOKEN)
    assert excinfo.value.code == "invalid_bot_token"
    assert vm.created == []


def test_malformed_bot_token_rejected(services, fake_vm):
    with pytest.raises(AgentboxError) as excinfo:
        services.provisioning.create(OWNER, telegram_bot_token="not-a-token")
    assert excinfo.value.code == "invalid_bot_token"
    assert fake_vm.created == []


def test_create_enqueues_no_job(services, session_factory):
    services.provisioning.create(OWNER)
    with session_factory() as session:
        assert session.execute(select(Job)).scalars().all() == []


class ScriptedHetzner(HetznerClient):
    def __init__(self, unavailable):
        super().__init__("token", snapshot_id="1", locations=["nbg1", "fsn1", "hel1"])
        self.unavailable = set(unavailable)
        self.attempts = []

    def create_server(self, name, user_data, location):
        self.attempts.append(location)
        if location in self.unavailable:
            raise LocationUnavailableError(f"Location {location} unavailable", status_code=412)
        return ServerInfo(id=7, ip="10.0.0.7", status="initializing", location=location)


def test_location_fallback_skips_unavailable():
    client = ScriptedHetzner(unavailable={"nbg1"})
    info = client.create_server_with_fallback("agent", "#!/bin/bash")
    assert client.attempts == ["nbg1", "fsn1"]
    assert info.location == "fsn1"


def test_location_fallback_exhausted():
    client = ScriptedHetzner(unavailable={"nbg1", "fsn1", "hel1"})
    with pytest.raises(HetznerError) as excinfo:
        client.create_server_with_fallback("agent", "#!/bin/bash")
    assert excinfo.value.status_code == 412
    assert client.attempts == ["nbg1", "fsn1", "hel1"]
