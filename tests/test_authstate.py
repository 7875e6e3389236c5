import os

import pytest
import xeddsa

os.environ["ENV"] = "test"

from canopy import authstate, cryptography
from canopy.authstate import KeySyncError, SessionAuthState, SnapshotAuthState
from canopy.datastore import CREDS_KEY, CredentialStore, RowSerializer, SnapshotStore, StorageError
from tests.mockbot import FakeAuthTable, FakeSnapshotTable


@pytest.fixture()
def table() -> FakeAuthTable:
    return FakeAuthTable()


@pytest.fixture()
def store(table: FakeAuthTable) -> CredentialStore:
    return CredentialStore(table, RowSerializer(encrypt=False))


def test_fresh_credentials() -> None:
    creds = authstate.init_auth_creds()
    assert len(creds["noiseKey"]["public"]) == 32
    assert len(creds["noiseKey"]["private"]) == 32
    assert creds["signedPreKey"]["keyId"] == 1
    assert len(creds["signedPreKey"]["signature"]) == 64
    assert 0 <= creds["registrationId"] <= 16383
    assert creds["registered"] is False
    assert creds["noiseKey"] != creds["signedIdentityKey"]
    assert authstate.init_auth_creds()["advSecretKey"] != creds["advSecretKey"]


def test_signed_pre_key_verifies_against_the_identity() -> None:
    creds = authstate.init_auth_creds()
    identity, pre_key = creds["signedIdentityKey"], creds["signedPreKey"]
    message = cryptography.KEY_BUNDLE_TYPE + pre_key["keyPair"]["public"]
    assert xeddsa.xeddsa_verify(identity["public"], message, pre_key["signature"])
    assert not xeddsa.xeddsa_verify(identity["public"], message + b"x", pre_key["signature"])


def test_private_keys_are_clamped() -> None:
    private = cryptography.generate_key_pair()["private"]
    assert private[0] & 7 == 0
    assert private[31] & 0xC0 == 0x40


def test_key_pairs_are_distinct() -> None:
    first, second = cryptography.generate_key_pair(), cryptography.generate_key_pair()
    assert first["private"] != second["private"]
    assert first["public"] != second["public"]


@pytest.mark.asyncio
async def test_load_generates_creds_only_when_absent(
    store: CredentialStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(authstate, "init_auth_creds", lambda: {"fresh": True})
    auth = await SessionAuthState(store, "main").load()
    assert auth.creds == {"fresh": True}
    await store.write("other", CREDS_KEY, {"stored": b"\x01"})
    auth = await SessionAuthState(store, "other").load()
    assert auth.creds == {"stored": b"\x01"}


@pytest.mark.asyncio
async def test_load_never_replaces_creds_during_an_outage(
    store: CredentialStore, table: FakeAuthTable, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(authstate, "init_auth_creds", pytest.fail)
    table.down = True
    with pytest.raises(StorageError):
        await SessionAuthState(store, "main").load()


@pytest.mark.asyncio
async def test_persisted_creds_survive_a_restart(
    store: CredentialStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(authstate, "init_auth_creds", lambda: {"me": None})
    state = SessionAuthState(store, "main")
    await state.load()
    state.swap_credentials({"me": {"id": "573000000000:1@s.whatsapp.net"}, "noise": b"k"})
    await state.persist_credentials()
    reloaded = await SessionAuthState(store, "main").load()
    assert reloaded.creds == {"me": {"id": "573000000000:1@s.whatsapp.net"}, "noise": b"k"}


@pytest.mark.asyncio
async def test_persist_before_load_is_an_error(store: CredentialStore) -> None:
    with pytest.raises(RuntimeError):
        await SessionAuthState(store, "main").persist_credentials()


@pytest.mark.asyncio
async def test_keys_set_get_and_delete(store: CredentialStore, table: FakeAuthTable) -> None:
    keys = SessionAuthState(store, "main")
    await keys.set(
        {
            "pre-key": {"1": {"public": b"\x01", "private": b"\x02"}, "2": {"public": b"\x03"}},
            "session": {"573000000000.0": b"\x09"},
        }
    )
    assert "main:pre-key-1" in table.rows
    found = await keys.get("pre-key", ["1", "2", "3"])
    assert found == {"1": {"public": b"\x01", "private": b"\x02"}, "2": {"public": b"\x03"}}
    await keys.set({"pre-key": {"1": None}})
    assert await keys.get("pre-key", ["1", "2"]) == {"2": {"public": b"\x03"}}
    assert ("remove", "main:pre-key-1") in table.calls


@pytest.mark.asyncio
async def test_one_failed_key_write_doesnt_block_the_rest(
    store: CredentialStore, table: FakeAuthTable
) -> None:
    table.fail_keys.add("main:pre-key-2")
    keys = SessionAuthState(store, "main")
    with pytest.raises(KeySyncError) as info:
        await keys.set({"pre-key": {"1": b"a", "2": b"b", "3": b"c"}})
    assert [(category, id_) for category, id_, _ in info.value.failures] == [("pre-key", "2")]
    assert isinstance(info.value.failures[0][2], StorageError)
    assert await keys.get("pre-key", ["1", "3"]) == {"1": b"a", "3": b"c"}


@pytest.mark.asyncio
async def test_key_decoders_rebuild_values(store: CredentialStore) -> None:
    keys = SessionAuthState(
        store, "main", key_decoders={"app-state-sync-key": lambda value: ("decoded", value)}
    )
    await keys.set({"app-state-sync-key": {"AAA=": {"keyData": b"\x01"}}, "pre-key": {"1": b"x"}})
    assert await keys.get("app-state-sync-key", ["AAA="]) == {
        "AAA=": ("decoded", {"keyData": b"\x01"})
    }
    assert await keys.get("pre-key", ["1"]) == {"1": b"x"}


@pytest.mark.asyncio
async def test_delete_session_clears_everything(
    store: CredentialStore, table: FakeAuthTable, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(authstate, "init_auth_creds", lambda: {"generation": 1})
    state = SessionAuthState(store, "main")
    await state.load()
    await state.persist_credentials()
    await state.set({"session": {"a": b"1"}})
    await store.write("main2", CREDS_KEY, {"keep": True})
    await state.delete_session()
    assert list(table.rows) == ["main2:auth_creds"]
    assert state.creds is None


@pytest.mark.asyncio
async def test_snapshot_auth_state(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(authstate, "init_auth_creds", lambda: {"fresh": b"\x00"})
    table = FakeSnapshotTable()
    snapshot = SnapshotStore(table, RowSerializer(encrypt=False))
    state = SnapshotAuthState(snapshot)
    auth = await state.load()
    assert auth.creds == {"fresh": b"\x00"}
    await auth.keys.set({"pre-key": {"1": b"a", "2": b"b"}})
    await auth.keys.set({"pre-key": {"1": None}})
    state.swap_credentials({"rotated": True})
    await state.persist_credentials()
    reloaded = SnapshotAuthState(snapshot)
    auth = await reloaded.load()
    assert auth.creds == {"rotated": True}
    assert await auth.keys.get("pre-key", ["1", "2"]) == {"2": b"b"}
    assert table.saves == 3
    await reloaded.delete_session()
    assert (await SnapshotAuthState(snapshot).load()).creds == {"fresh": b"\x00"}
