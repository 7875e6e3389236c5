import asyncio
import json
import os

import pytest

os.environ["ENV"] = "test"

from canopy import codec
from canopy.authstate import AuthState, SessionAuthState
from canopy.datastore import CredentialStore, RowSerializer
from canopy.message import (
    ConnectionStateChanged,
    CredentialsRotated,
    MessageAcknowledged,
    MessageReceived,
)
from canopy.runtime import BridgeRuntime, TransportError, rpc
from tests.mockbot import USER_JID, FakeAuthTable, make_message


@pytest.fixture()
def bridge() -> BridgeRuntime:
    runtime = BridgeRuntime("main", command="node bridge.js")
    keys = SessionAuthState(CredentialStore(FakeAuthTable(), RowSerializer(encrypt=False)), "main")
    runtime.auth = AuthState(creds={"registered": True}, keys=keys)
    return runtime


async def answer(bridge: BridgeRuntime, result: object) -> dict:
    "wait for the next outgoing request and reply to it"
    command = await asyncio.wait_for(bridge.outbox.get(), timeout=1)
    await bridge.decode_line(json.dumps({"jsonrpc": "2.0", "id": command["id"], "result": result}))
    return command


def test_rpc_shape() -> None:
    assert rpc("connect", {"a": 1}, "connect-1", b=2) == {
        "jsonrpc": "2.0",
        "method": "connect",
        "params": {"a": 1, "b": 2},
        "id": "connect-1",
    }
    assert "id" not in rpc("note")


@pytest.mark.asyncio
async def test_send_raw_resolves_with_the_network_id(bridge: BridgeRuntime) -> None:
    sending = asyncio.create_task(bridge.send_raw(USER_JID, {"text": "hola"}))
    command = await answer(bridge, {"key": {"id": "3EB0AA", "fromMe": True}})
    assert await sending == "3EB0AA"
    assert command["method"] == "sendMessage"
    assert command["params"] == {"jid": USER_JID, "content": {"text": "hola"}, "options": {}}
    assert bridge.pending_requests == {}


@pytest.mark.asyncio
async def test_binary_params_are_tagged_on_the_wire(bridge: BridgeRuntime) -> None:
    connecting = asyncio.create_task(bridge.request("connect", creds={"noiseKey": b"\x01"}))
    command = await answer(bridge, None)
    await connecting
    assert command["params"]["creds"] == {"noiseKey": {"kind": "binary", "bytes": [1]}}


@pytest.mark.asyncio
async def test_errors_become_transport_errors(bridge: BridgeRuntime) -> None:
    checking = asyncio.create_task(bridge.check_registered(USER_JID))
    command = await asyncio.wait_for(bridge.outbox.get(), timeout=1)
    await bridge.decode_line(
        json.dumps({"id": command["id"], "error": {"code": 1, "message": "not connected"}})
    )
    with pytest.raises(TransportError, match="not connected"):
        await checking


@pytest.mark.asyncio
async def test_check_registered(bridge: BridgeRuntime) -> None:
    checking = asyncio.create_task(bridge.check_registered(USER_JID))
    await answer(bridge, [{"jid": USER_JID, "exists": True}])
    assert await checking is True
    checking = asyncio.create_task(bridge.check_registered(USER_JID))
    await answer(bridge, [])
    assert await checking is False


@pytest.mark.asyncio
async def test_process_exit_fails_pending_requests(bridge: BridgeRuntime) -> None:
    epoch = bridge.epoch
    pending = asyncio.create_task(bridge.presence_subscribe(USER_JID))
    await asyncio.wait_for(bridge.outbox.get(), timeout=1)
    await bridge.stop()
    with pytest.raises(TransportError):
        await pending
    assert bridge.epoch == epoch + 1


@pytest.mark.asyncio
async def test_notifications_become_events(bridge: BridgeRuntime) -> None:
    lines = [
        rpc("connection.update", connection="close", lastDisconnect={"error": {"output": {"statusCode": 401}}}),
        rpc("creds.update", noiseKey={"kind": "binary", "bytes": [7]}),
        rpc("messages.update", updates=[{"key": {"id": "3EB0AA", "fromMe": True, "remoteJid": USER_JID}, "update": {"status": 3}}]),
        rpc(
            "messages.upsert",
            type="notify",
            messages=[{"key": {"id": "IN1", "remoteJid": USER_JID}, "message": {"conversation": "/ping"}}],
        ),
    ]
    for line in lines:
        await bridge.decode_line(json.dumps(line))
    closed, rotated, acked, received = [bridge.inbox.get_nowait() for _ in range(4)]
    assert isinstance(closed, ConnectionStateChanged) and closed.logged_out
    assert isinstance(rotated, CredentialsRotated) and rotated.creds == {"noiseKey": b"\x07"}
    assert isinstance(acked, MessageAcknowledged) and acked.key.from_me and acked.status == 3
    assert isinstance(received, MessageReceived) and received.message.arg0 == "ping"


@pytest.mark.asyncio
async def test_key_requests_are_answered_from_the_store(bridge: BridgeRuntime) -> None:
    await bridge.decode_line(
        json.dumps(
            {
                "jsonrpc": "2.0",
                "id": 9,
                "method": "keys.set",
                "params": {"data": {"pre-key": {"1": {"kind": "binary", "bytes": [1, 2]}}}},
            }
        )
    )
    assert (await asyncio.wait_for(bridge.outbox.get(), timeout=1)) == {
        "jsonrpc": "2.0",
        "id": 9,
        "result": None,
    }
    await bridge.decode_line(
        json.dumps({"id": 10, "method": "keys.get", "params": {"type": "pre-key", "ids": ["1", "2"]}})
    )
    response = await asyncio.wait_for(bridge.outbox.get(), timeout=1)
    assert codec.decode(response["result"]) == {"1": b"\x01\x02"}


@pytest.mark.asyncio
async def test_unknown_runtime_requests_get_an_error(bridge: BridgeRuntime) -> None:
    await bridge.decode_line(json.dumps({"id": 11, "method": "groups.fetch", "params": {}}))
    response = await asyncio.wait_for(bridge.outbox.get(), timeout=1)
    assert response["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_garbage_lines_are_logged_and_skipped(bridge: BridgeRuntime) -> None:
    await bridge.decode_line("npm WARN deprecated")
    await bridge.decode_line("[1, 2]")
    assert bridge.inbox.empty()


@pytest.mark.asyncio
async def test_download_media_accepts_tagged_or_base64(bridge: BridgeRuntime) -> None:
    message = make_message("", content={"imageMessage": {"caption": "cat"}})
    downloading = asyncio.create_task(bridge.download_media(message))
    await answer(bridge, {"kind": "binary", "bytes": [255, 216]})
    assert await downloading == b"\xff\xd8"
    downloading = asyncio.create_task(bridge.download_media(message))
    await answer(bridge, "/9g=")
    assert await downloading == b"\xff\xd8"


@pytest.mark.asyncio
async def test_start_without_a_command_fails(bridge: BridgeRuntime) -> None:
    bridge.command = ""
    with pytest.raises(TransportError):
        await bridge.start_process()


@pytest.mark.asyncio
async def test_key_store_failures_still_get_an_answer(bridge: BridgeRuntime) -> None:
    store = bridge.auth.keys.store  # type: ignore
    store.interface.rows["main:pre-key-2"] = "{not json"
    await bridge.decode_line(
        json.dumps({"id": 12, "method": "keys.get", "params": {"type": "pre-key", "ids": ["2"]}})
    )
    response = await asyncio.wait_for(bridge.outbox.get(), timeout=1)
    assert response["id"] == 12
    assert response["error"]["message"].startswith("CodecError")
    store.interface.down = True
    await bridge.decode_line(
        json.dumps({"id": 13, "method": "keys.get", "params": {"type": "pre-key", "ids": ["1"]}})
    )
    response = await asyncio.wait_for(bridge.outbox.get(), timeout=1)
    assert response["id"] == 13
    assert response["error"]["message"].startswith("StorageError")


@pytest.mark.asyncio
async def test_blank_lines_dont_stop_the_reader(bridge: BridgeRuntime) -> None:
    reader = asyncio.StreamReader()
    note = json.dumps(rpc("connection.update", connection="open"))
    reader.feed_data(f"{note}\n\n{note}\n".encode())
    reader.feed_eof()
    await asyncio.wait_for(bridge.read_stdout(reader), timeout=1)
    assert bridge.inbox.qsize() == 2


@pytest.mark.asyncio
async def test_undecodable_notifications_are_skipped(bridge: BridgeRuntime) -> None:
    await bridge.decode_line(
        json.dumps(rpc("creds.update", noiseKey={"kind": "binary", "bytes": "nope"}))
    )
    assert bridge.inbox.empty()
