"""End-to-end tests for DongleClient against the scripted dongle."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import pytest
from blukey_link import client as client_module
from blukey_link.client import ClientConfig, DongleClient
from blukey_link.errors import (
    AuthenticationError,
    LinkTimeoutError,
    ProvisioningCancelled,
    ProvisioningError,
    SessionError,
    TransportError,
)
from blukey_link.protocol import AppOpcode
from blukey_link.storage import IniKeyStore, MemoryKeyStore

from .fakes import DEVICE_ID, PASSWORD, FakeDongle, FakeTransport

APP_KEY = bytes(range(100, 132))


@pytest.fixture(autouse=True)
def no_reconnect_delay(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(client_module, "RECONNECT_DELAY", 0.0)


class Prompt:
    """Password prompt collaborator that records its calls."""

    def __init__(self, answer: Optional[str] = PASSWORD):
        self.answer = answer
        self.reasons: list[str] = []

    async def __call__(self, reason: str) -> Optional[str]:
        self.reasons.append(reason)
        return self.answer


def make_client(
    dongle: FakeDongle,
    key: Optional[bytes] = APP_KEY,
    prompt: Optional[Prompt] = None,
    store=None,
    **config,
) -> DongleClient:
    if store is None:
        store = MemoryKeyStore()
    if key is not None:
        store.put(DEVICE_ID, key)
    return DongleClient(
        ClientConfig(device_id=DEVICE_ID, **config),
        transport=FakeTransport(dongle),
        key_store=store,
        password_prompt=prompt,
    )


class TestConnect:
    """Test connect and the provisioning paths it can take."""

    def test_provisioned(self) -> None:
        dongle = FakeDongle(app_key=APP_KEY)
        client = make_client(dongle)

        result = asyncio.run(client.connect())

        assert result.success, result.message
        assert client.is_secure
        assert client.layout == "US_WINLIN"
        assert client.link.transport.written_ops() == [0xB1, 0xB3]
        writes = client.link.transport.writes
        assert writes[0][1] is True   # B1 is a control write
        assert writes[1][1] is False  # B3 uses the app write type

    def test_unprovisioned_with_prompt(self) -> None:
        dongle = FakeDongle()
        prompt = Prompt()
        client = make_client(dongle, key=None, prompt=prompt)

        result = asyncio.run(client.connect(allow_provisioning=True))

        assert result.success, result.message
        assert client.key_store.get(DEVICE_ID) == dongle.app_key
        assert client.link.transport.connect_count == 2
        assert len(prompt.reasons) == 1
        assert "not provisioned" in prompt.reasons[0]

    def test_unprovisioned_without_permission(self) -> None:
        client = make_client(FakeDongle(), key=None, prompt=Prompt())

        result = asyncio.run(client.connect())

        assert not result.success
        assert result.message == "unprovisioned"
        assert isinstance(result.error, ProvisioningError)

    def test_prompt_cancelled(self) -> None:
        client = make_client(FakeDongle(), key=None, prompt=Prompt(answer=None))

        result = asyncio.run(client.connect(allow_provisioning=True))

        assert not result.success
        assert result.message == "Provision cancelled"
        assert isinstance(result.error, ProvisioningCancelled)

    def test_stale_key_reprovisions(self) -> None:
        dongle = FakeDongle(app_key=APP_KEY)
        prompt = Prompt()
        client = make_client(dongle, key=bytes(32), prompt=prompt)

        result = asyncio.run(client.connect(allow_provisioning=True))

        assert result.success, result.message
        assert client.key_store.get(DEVICE_ID) == APP_KEY
        assert "Key mismatch" in prompt.reasons[0]

    def test_stale_key_kept_without_permission(self) -> None:
        client = make_client(FakeDongle(app_key=APP_KEY), key=bytes(32), prompt=Prompt())

        result = asyncio.run(client.connect())

        assert not result.success
        assert isinstance(result.error, AuthenticationError)
        assert result.error.requires_reprovision
        assert client.key_store.get(DEVICE_ID) == bytes(32)

    def test_transport_failure(self) -> None:
        client = make_client(FakeDongle(app_key=APP_KEY))
        client.link.transport.fail_connect = True

        result = asyncio.run(client.connect())

        assert not result.success
        assert isinstance(result.error, TransportError)

    def test_no_server_hello(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(client_module, "SERVER_HELLO_TIMEOUT", 0.05)
        dongle = FakeDongle(app_key=APP_KEY)
        dongle.send_hello = False
        client = make_client(dongle)

        result = asyncio.run(client.connect())

        assert not result.success
        assert result.message == "No B0"
        assert isinstance(result.error, LinkTimeoutError)

    def test_layout_failure_does_not_fail_connect(self) -> None:
        dongle = FakeDongle(app_key=APP_KEY)
        dongle.layout_banner = b"PROTO=1.2"
        client = make_client(dongle)

        result = asyncio.run(client.connect())

        assert result.success
        assert client.layout is None

    def test_layout_remembered_in_memory_store(self) -> None:
        client = make_client(FakeDongle(app_key=APP_KEY))

        assert asyncio.run(client.connect()).success
        assert client.key_store.get_layout(DEVICE_ID) == "US_WINLIN"

    def test_layout_cached_in_ini_store(self, tmp_path: Path) -> None:
        path = tmp_path / "blukeyborg.data"
        client = make_client(FakeDongle(app_key=APP_KEY), store=IniKeyStore(path))

        assert asyncio.run(client.connect()).success
        assert IniKeyStore(path).get_layout(DEVICE_ID) == "US_WINLIN"


class TestProvision:
    """Test the explicit provision operation."""

    def test_fresh_dongle(self) -> None:
        dongle = FakeDongle(wrap_app_key=True)
        client = make_client(dongle, key=None)

        result = asyncio.run(client.provision(PASSWORD))

        assert result.success, result.message
        assert client.key_store.get(DEVICE_ID) == dongle.app_key
        assert client.is_secure

    def test_wrong_password(self) -> None:
        client = make_client(FakeDongle(), key=None)

        result = asyncio.run(client.provision("wrong"))

        assert not result.success
        assert result.message == "Bad password / proof."
        assert client.key_store.get(DEVICE_ID) is None


class TestSecureOperations:
    """Test the operations that run over B3."""

    def test_send_text(self) -> None:
        dongle = FakeDongle(app_key=APP_KEY)
        client = make_client(dongle)

        result = asyncio.run(client.send_text("Hello ü"))

        assert result.success, result.message
        assert dongle.texts == ["Hello ü".encode("utf-8")]

    def test_send_text_newline(self) -> None:
        dongle = FakeDongle(app_key=APP_KEY)
        client = make_client(dongle, send_newline=True)

        assert asyncio.run(client.send_text("ls")).success
        assert dongle.texts == [b"ls\n"]

    def test_send_text_status_prefixed_ack(self) -> None:
        dongle = FakeDongle(app_key=APP_KEY)
        dongle.d1_with_status = 0
        client = make_client(dongle)

        assert asyncio.run(client.send_text("x")).success

    def test_send_text_device_status(self) -> None:
        dongle = FakeDongle(app_key=APP_KEY)
        dongle.d1_with_status = 3
        client = make_client(dongle)

        result = asyncio.run(client.send_text("x"))

        assert not result.success
        assert result.message == "Device status 0x03"

    def test_send_text_hash_mismatch(self) -> None:
        dongle = FakeDongle(app_key=APP_KEY)
        dongle.wrong_d1_digest = True
        client = make_client(dongle)

        result = asyncio.run(client.send_text("x"))

        assert not result.success
        assert result.message == "Hash mismatch"

    def test_send_text_unverified(self) -> None:
        dongle = FakeDongle(app_key=APP_KEY)
        dongle.muted_ops.add(AppOpcode.SEND_TEXT)
        client = make_client(dongle)

        assert asyncio.run(client.send_text("x", verify=False)).success
        assert dongle.texts == []

    def test_reply_timeout(self) -> None:
        async def scenario(client: DongleClient, dongle: FakeDongle):
            await client.connect()
            dongle.muted_ops.add(AppOpcode.GET_LAYOUT)
            return await client.get_layout(timeout=0.05)

        dongle = FakeDongle(app_key=APP_KEY)
        client = make_client(dongle)
        result = asyncio.run(scenario(client, dongle))

        assert not result.success
        assert isinstance(result.error, LinkTimeoutError)

    def test_layouts(self) -> None:
        async def scenario(client: DongleClient):
            set_result = await client.set_layout("DE_WINLIN")
            get_result = await client.get_layout()
            return set_result, get_result

        dongle = FakeDongle(app_key=APP_KEY)
        client = make_client(dongle)
        set_result, get_result = asyncio.run(scenario(client))

        assert set_result.success
        assert dongle.layouts == ["DE_WINLIN"]
        assert get_result.success
        assert get_result.value == "US_WINLIN"

    def test_commands_are_serialized(self) -> None:
        async def scenario(client: DongleClient):
            return await asyncio.gather(
                client.send_text("one"),
                client.send_text("two"),
                client.get_layout(),
            )

        dongle = FakeDongle(app_key=APP_KEY)
        client = make_client(dongle)
        results = asyncio.run(scenario(client))

        assert all(r.success for r in results)
        assert dongle.texts == [b"one", b"two"]
        assert dongle.inbound_seqs == [0, 1, 2, 3]
        assert client.link.transport.connect_count == 1


class TestFastKeys:
    """Test fast key enablement and raw taps."""

    def test_tap_requires_fast_keys(self) -> None:
        client = make_client(FakeDongle(app_key=APP_KEY))

        result = asyncio.run(client.raw_key_tap(0x28))

        assert not result.success
        assert isinstance(result.error, SessionError)

    def test_enable_then_tap(self) -> None:
        async def scenario(client: DongleClient):
            assert (await client.enable_fast_keys()).success
            assert (await client.enable_fast_keys()).success
            return await client.raw_key_tap(0x04, mods=0x02, repeat=3)

        dongle = FakeDongle(app_key=APP_KEY)
        client = make_client(dongle)
        result = asyncio.run(scenario(client))

        assert result.success
        assert dongle.fast_keys
        assert dongle.raw_taps == [b"\x02\x04\x03"]
        # C1 at connect, one C8; the second enable is a no-op
        assert dongle.inbound_seqs == [0, 1]
        assert client.link.transport.written_ops()[-1] == 0xE0


class TestDisconnect:
    """Test preemptive disconnect."""

    def test_cancels_running_command(self) -> None:
        async def scenario(client: DongleClient, dongle: FakeDongle):
            assert (await client.connect()).success
            dongle.muted_ops.add(AppOpcode.GET_LAYOUT)

            pending = asyncio.ensure_future(client.get_layout(timeout=5.0))
            queued = asyncio.ensure_future(client.send_text("never"))
            await asyncio.sleep(0.05)
            client.disconnect()
            results = await asyncio.gather(pending, queued)
            await asyncio.sleep(0.01)
            return results

        dongle = FakeDongle(app_key=APP_KEY)
        client = make_client(dongle)
        results = asyncio.run(scenario(client, dongle))

        assert [r.message for r in results] == ["Cancelled", "Cancelled"]
        assert dongle.texts == []
        assert not client.link.transport.is_connected
        assert not client.is_secure
        assert not client.link.demux.waiting
        assert client.sequencer.pending == 0

    def test_reconnect_after_disconnect(self) -> None:
        async def scenario(client: DongleClient):
            assert (await client.connect()).success
            client.disconnect()
            await asyncio.sleep(0.01)
            return await client.send_text("again")

        dongle = FakeDongle(app_key=APP_KEY)
        client = make_client(dongle)
        result = asyncio.run(scenario(client))

        assert result.success, result.message
        assert dongle.texts == [b"again"]
        assert client.link.transport.connect_count == 2

    def test_teardown_failure_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        class BrokenTeardown(FakeTransport):
            async def disconnect(self) -> None:
                await super().disconnect()
                raise RuntimeError("adapter gone")

        async def scenario(client: DongleClient):
            assert (await client.connect()).success
            client.disconnect()
            await asyncio.sleep(0.01)

        client = DongleClient(
            ClientConfig(device_id=DEVICE_ID),
            transport=BrokenTeardown(FakeDongle(app_key=APP_KEY)),
            key_store=MemoryKeyStore(),
        )
        client.key_store.put(DEVICE_ID, APP_KEY)
        with caplog.at_level(logging.ERROR, logger="blukey_link.client"):
            asyncio.run(scenario(client))

        assert client._teardown.done()
        assert "Transport teardown failed" in caplog.text
        assert "adapter gone" in caplog.text
