import asyncio
import logging
import os
from typing import Any, Optional

os.environ["ENV"] = "test"

from canopy.authstate import SessionAuthState
from canopy.core import Bot, SessionConfig
from canopy.datastore import CredentialStore, RowSerializer
from canopy.message import Message, MessageKey, MessageReceived
from canopy.runtime import Runtime, TransportError

# Sample bot number alice
BOT_NUMBER = "11111111111"
USER_NUMBER = "573144864063"
USER_JID = f"{USER_NUMBER}@s.whatsapp.net"


class FakeAuthTable:
    """In-memory stand-in for the auth table's PGInterface: same statement names,
    same row shapes. Keys in `fail_keys` raise like a dropped connection."""

    table = "auth_data"

    def __init__(self) -> None:
        self.rows: dict[str, str] = {}
        self.fail_keys: set[str] = set()
        self.down = False
        self.calls: list[tuple] = []

    def check(self, key: str = "") -> None:
        if self.down or key in self.fail_keys:
            raise OSError("connection refused")

    async def create_table(self) -> None:
        self.check()

    async def upsert(self, key: str, data: str) -> None:
        self.calls.append(("upsert", key))
        self.check(key)
        self.rows[key] = data

    async def get(self, key: str) -> list[dict]:
        self.check(key)
        return [{"data": self.rows[key]}] if key in self.rows else []

    async def remove(self, key: str) -> None:
        self.calls.append(("remove", key))
        self.check(key)
        self.rows.pop(key, None)

    async def delete_session(self, prefix: str) -> None:
        self.check()
        for key in [key for key in self.rows if key.startswith(prefix)]:
            del self.rows[key]

    async def list_sessions(self) -> list[dict]:
        self.check()
        counts: dict[str, int] = {}
        for key in self.rows:
            session_id = key.split(":", 1)[0]
            counts[session_id] = counts.get(session_id, 0) + 1
        return [{"session_id": sid, "keys": count} for sid, count in sorted(counts.items())]


class FakeSnapshotTable:
    table = "auth_snapshot"

    def __init__(self) -> None:
        self.rows: dict[int, str] = {}
        self.saves = 0

    async def create_table(self) -> None:
        pass

    async def save(self, id_: int, data: str) -> None:
        self.saves += 1
        self.rows[id_] = data

    async def load(self, id_: int) -> list[dict]:
        return [{"data": self.rows[id_]}] if id_ in self.rows else []


class MockRuntime(Runtime):
    """Records every call in order instead of talking to a network"""

    def __init__(self, registered: Optional[set[str]] = None) -> None:
        super().__init__()
        self.registered = {USER_JID} if registered is None else registered
        self.calls: list[tuple] = []
        self.sent: list[tuple[str, dict, Optional[dict]]] = []
        self.durations: dict[str, Optional[float]] = {}
        self.sizes: dict[str, Optional[int]] = {}
        self.media: dict[str, bytes] = {}
        self.fail_send: Optional[Exception] = None
        self.starts = 0
        self.next_id = 0

    async def start(self, auth: Any) -> None:
        self.auth = auth
        self.starts += 1
        self.calls.append(("start",))

    async def stop(self) -> None:
        self.calls.append(("stop",))

    async def send_raw(self, target: str, content: dict, options: Optional[dict] = None) -> str:
        self.calls.append(("send_raw", target))
        if self.fail_send:
            raise self.fail_send
        self.sent.append((target, content, options))
        self.next_id += 1
        return f"3EB0{self.next_id:04d}"

    async def check_registered(self, address: str) -> bool:
        self.calls.append(("check_registered", address))
        return address in self.registered

    async def presence_subscribe(self, target: str) -> None:
        self.calls.append(("presence_subscribe", target))

    async def send_presence_update(self, state: str, target: str) -> None:
        self.calls.append((state, target))

    async def read_messages(self, keys: list[MessageKey]) -> None:
        self.calls.append(("read_messages", [key.id for key in keys]))

    async def download_media(self, message: Message) -> bytes:
        self.calls.append(("download_media", message.id))
        if message.id not in self.media:
            raise TransportError("no such media")
        return self.media[message.id]

    async def media_duration(self, path: str) -> Optional[float]:
        return self.durations.get(path)

    def stat_file_size(self, path: str) -> Optional[int]:
        return self.sizes.get(path)

    def send_calls(self) -> list[tuple]:
        return [call for call in self.calls if call[0] == "send_raw"]


def make_message(
    text: str = "",
    id_: str = "ABCD1234",
    from_me: bool = False,
    remote_jid: str = USER_JID,
    content: Optional[dict] = None,
) -> Message:
    return Message(
        {
            "key": {"remoteJid": remote_jid, "fromMe": from_me, "id": id_},
            "message": content if content is not None else {"conversation": text},
            "pushName": "sylv",
            "messageTimestamp": 1700000000,
        }
    )


class MockBot(Bot):
    """A bot wired to a MockRuntime and in-memory tables, with no presence delays"""

    def __init__(self, runtime: Optional[MockRuntime] = None, **kwargs: Any) -> None:
        self.table = FakeAuthTable()
        store = CredentialStore(self.table, RowSerializer(encrypt=False))
        super().__init__(
            SessionConfig("main", BOT_NUMBER),
            runtime=runtime or MockRuntime(),
            auth_state=kwargs.pop("auth_state", None) or SessionAuthState(store, "main"),
            **kwargs,
        )
        self.dispatcher.subscribe_delay = self.dispatcher.composing_delay = 0
        self.prune_interval = 0.01

    async def send_input(self, text: str, id_: str = "ABCD1234") -> None:
        """Puts a received message in the runtime's inbox"""
        await self.runtime.inbox.put(MessageReceived(make_message(text, id_)))

    async def get_output(self) -> str:
        """Waits for the next text the bot sends"""
        runtime = self.runtime
        assert isinstance(runtime, MockRuntime)
        for _ in range(100):
            if runtime.sent:
                _, content, _ = runtime.sent.pop(0)
                return content.get("text", "")
            await asyncio.sleep(0.01)
        logging.error("timed out waiting for output")
        return ""

    async def get_cmd_output(self, text: str) -> str:
        await self.send_input(text)
        return await self.get_output()
