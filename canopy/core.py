#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
The bot: one per session. Wires the auth state, runtime, status tracker and
dispatcher together, reacts to runtime events, and exposes the aiohttp app.
"""
import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from textwrap import dedent
from typing import Any, Optional, Type, Union

import termcolor
from aiohttp import web
from prometheus_async import aio

from canopy import datastore, pghelp, tasks, utils
from canopy.authstate import SessionAuthState, SnapshotAuthState
from canopy.codec import CodecError
from canopy.datastore import StorageError
from canopy.dispatch import OutboundDispatcher, OutboundRequest, SendResult
from canopy.message import (
    ConnectionStateChanged,
    CredentialsRotated,
    Message,
    MessageAcknowledged,
    MessageReceived,
    media_info,
)
from canopy.registry import ChannelKind, DispatchRegistry, TextPayload, builtin_registry
from canopy.runtime import BridgeRuntime, Runtime, TransportError
from canopy.sessions import SessionRegistry
from canopy.status import DeliveryStatus, StatusTracker
from canopy.tasks import create_handled_task

Response = Union[str, list, dict[str, str], None]
AuthStateType = Union[SessionAuthState, SnapshotAuthState]


@dataclass
class SessionConfig:
    session_id: str
    number: str


def parse_sessions(raw: Optional[str] = None) -> list[SessionConfig]:
    """SESSIONS=main:573000000001,support:573000000002
    A bare number is its own session id."""
    if raw is None:
        raw = utils.get_secret("SESSIONS")
    configs = []
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        session_id, _, number = entry.rpartition(":")
        configs.append(SessionConfig(session_id or number, number))
    ids = [config.session_id for config in configs]
    if len(set(ids)) != len(ids):
        raise ValueError(f"duplicate session ids in {raw!r}")
    return configs


def make_auth_state(session_id: str) -> AuthStateType:
    if (utils.get_secret("AUTH_STORE") or "multi") == "snapshot":
        return SnapshotAuthState(datastore.SnapshotStore(), session_id)
    return SessionAuthState(datastore.CredentialStore(), session_id)


class Bot:
    """Handles runtime events and command dispatch for one session.
    Subclass this with your own do_x commands."""

    def __init__(
        self,
        config: SessionConfig,
        runtime: Optional[Runtime] = None,
        auth_state: Optional[AuthStateType] = None,
        tracker: Optional[StatusTracker] = None,
        registry: Optional[DispatchRegistry] = None,
    ) -> None:
        self.config = config
        self.session_id = config.session_id
        self.runtime = runtime or BridgeRuntime(config.session_id)
        self.auth_state = auth_state or make_auth_state(config.session_id)
        self.tracker = tracker or StatusTracker()
        self.registry = registry or builtin_registry()
        self.dispatcher = OutboundDispatcher(self.runtime, self.registry, self.tracker)
        self.media_dir = Path(utils.MEDIA_DIR)
        self.reconnecting = False
        self.prune_interval = utils.get_float_secret("STATUS_PRUNE_INTERVAL", 300.0)
        self.status_ttl = utils.get_float_secret("STATUS_TTL", 86400.0)
        self.handle_events_task: Optional[asyncio.Task] = None
        self.prune_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Load creds and connect. A storage outage here stops this session from
        starting; we never make up a new identity because the database is down."""
        if pghelp.AUTOCREATE:
            await self.auth_state.store.ensure_schema()
        auth = await self.auth_state.load()
        await self.runtime.start(auth)
        self.handle_events_task = create_handled_task(
            self.handle_events(),
            message="%s stopped handling events",
            message_args=(self.session_id,),
            name=f"events-{self.session_id}",
        )
        self.prune_task = create_handled_task(
            self.prune_statuses(),
            message="%s stopped pruning statuses",
            message_args=(self.session_id,),
            name=f"prune-{self.session_id}",
        )
        logging.info("✅ bot started for %s (%s)", self.session_id, self.config.number)

    async def stop(self) -> None:
        for task in (self.handle_events_task, self.prune_task):
            if task:
                task.cancel()
        await self.runtime.stop()

    async def handle_events(self) -> None:
        """
        Read events from the runtime. Acks and credential swaps are applied
        here, in the order they arrived; everything else gets its own task so
        a slow reply never holds up the queue.
        """
        while True:
            event = await self.runtime.inbox.get()
            if isinstance(event, MessageAcknowledged):
                self.tracker.observe_ack(event.key, event.status)
                continue
            if isinstance(event, CredentialsRotated):
                self.auth_state.swap_credentials(event.creds)
            create_handled_task(
                self.handle_event(event),
                message="%s failed handling %s",
                message_args=(self.session_id, type(event).__name__),
            )

    async def handle_event(self, event: Any) -> None:
        if isinstance(event, CredentialsRotated):
            # a lost write here means pairing again, so let it raise
            await self.auth_state.persist_credentials()
        elif isinstance(event, ConnectionStateChanged):
            await self.handle_connection(event)
        elif isinstance(event, MessageReceived):
            if event.kind == "notify":
                await self.handle_inbound(event.message)
        else:
            logging.debug("unhandled event %s", event)

    async def prune_statuses(self) -> None:
        "drop finished and long idle statuses every prune_interval seconds"
        while True:
            await asyncio.sleep(self.prune_interval)
            pruned = self.tracker.prune(max_age=self.status_ttl)
            if pruned:
                logging.info("pruned %s message statuses for %s", pruned, self.session_id)

    async def handle_connection(self, event: ConnectionStateChanged) -> None:
        if event.qr:
            logging.info("new QR code generated for %s", self.config.number)
        if event.state == "open":
            logging.info("connection open for %s", self.config.number)
        elif event.state == "close":
            await self.reconnect(event)

    async def reconnect(self, event: ConnectionStateChanged) -> None:
        if self.reconnecting:
            logging.info("%s is already reconnecting", self.session_id)
            return
        self.reconnecting = True
        try:
            self.runtime.invalidate()
            self.runtime.fail_pending(TransportError("connection closed"))
            if event.logged_out:
                logging.warning("%s was logged out, deleting credentials", self.session_id)
                await self.auth_state.delete_session()
            else:
                logging.info("reconnecting %s", self.session_id)
            # always re-read: after a logout the in-memory copy is stale
            auth = await self.auth_state.load()
            await self.runtime.start(auth)
        except (StorageError, CodecError, TransportError) as e:
            logging.error(
                termcolor.colored("couldn't reconnect %s: %s", "red"), self.session_id, e
            )
        finally:
            self.reconnecting = False

    async def handle_inbound(self, message: Message) -> None:
        if message.from_me or message.newsletter:
            return
        self.tracker.log_received(message.id)
        logging.info("🔔 new message from %s", message.source)
        if message.media_type:
            create_handled_task(
                self.save_media(message),
                message="couldn't save media from %s",
                message_args=(message.id,),
            )
        await self.runtime.read_messages([message.key])
        response = await self.handle_message(message)
        if response is not None:
            await self.respond(message, response)

    async def save_media(self, message: Message) -> Optional[Path]:
        info = media_info(message)
        if not info:
            return None
        _, filename = info
        data = await self.runtime.download_media(message)
        self.media_dir.mkdir(parents=True, exist_ok=True)
        path = self.media_dir / os.path.basename(filename)
        path.write_bytes(data)
        logging.info("✅ saved %s", path)
        return path

    async def handle_message(self, message: Message) -> Response:
        """Method dispatch to do_x commands.
        Overwrite this to add your own non-command logic,
        but call super().handle_message(message) at the end"""
        if message.arg0 and hasattr(self, "do_" + message.arg0):
            return await getattr(self, "do_" + message.arg0)(message)
        return await self.default(message)

    def documented_commands(self) -> str:
        commands = ", ".join(
            name.removeprefix("do_")
            for name in dir(self)
            if name.startswith("do_") and getattr(getattr(self, name), "__doc__", None)
        )
        return f'Documented commands: {commands}\n\nFor more info about a command, try "/help" [command]'

    async def default(self, message: Message) -> Response:
        "Default response. Override in your class to change this behavior"
        if message.arg0:
            return "That didn't look like a valid command!\n" + self.documented_commands()
        return None

    async def do_help(self, msg: Message) -> Response:
        """
        /help [command]. see the documentation for command, or all commands
        """
        if msg.arg1:
            cmd = getattr(self, f"do_{msg.arg1}", None)
            if cmd is None:
                return f"No such command '{msg.arg1}'"
            if cmd.__doc__:
                return dedent(cmd.__doc__).strip()
            return f"{msg.arg1} isn't documented, sorry :("
        return self.documented_commands()

    async def do_ping(self, message: Message) -> str:
        """replies to /ping with /pong"""
        if message.text:
            return f"/pong {message.text}"
        return "/pong"

    async def respond(self, target_msg: Message, msg: Response) -> SendResult:
        """Reply to a message, quoting it"""
        if isinstance(msg, list):
            msg = "\n".join(map(str, msg))
        if isinstance(msg, dict):
            msg = "\n".join((f"{key}:\t{value}" for key, value in msg.items()))
        request = OutboundRequest(
            ChannelKind.TEXT,
            "text",
            target_msg.source,
            TextPayload(text=str(msg), quoted=target_msg.quote()),
        )
        result = await self.send(request)
        if result.error:
            logging.warning("reply to %s failed: %s", target_msg.id, result.error)
        return result

    async def send(self, request: OutboundRequest) -> SendResult:
        return await self.dispatcher.send(request)


def status_name(status: Any) -> Any:
    return status.name if isinstance(status, DeliveryStatus) else status


async def health(request: web.Request) -> web.Response:
    sessions = request.app["sessions"]
    return web.json_response({"sessions": [bot.session_id for bot in sessions]})


async def send_message_handler(request: web.Request) -> web.Response:
    """Allow webhooks to send messages.
    Turn this off, authenticate, or obfuscate in prod to keep someone from using your bot to spam people
    """
    bot = request.app["sessions"].get(request.match_info["session"])
    if not bot:
        return web.Response(status=404, text="Sorry, no such session.")
    try:
        outbound = OutboundRequest.from_dict(await request.json())
    except (json.JSONDecodeError, ValueError, AttributeError) as e:
        return web.json_response({"error": str(e)}, status=400)
    result = await bot.send(outbound)
    return web.json_response(result.to_dict(), status=200 if result.ok else 422)


async def status_handler(request: web.Request) -> web.Response:
    bot = request.app["sessions"].get(request.match_info["session"])
    if not bot:
        return web.Response(status=404, text="Sorry, no such session.")
    id_ = request.match_info["id"]
    status = bot.tracker.get(id_)
    if status is None:
        return web.Response(status=404, text="Sorry, can't find that message.")
    return web.json_response({"id": id_, "status": status_name(status)})


def build_app() -> web.Application:
    _app = web.Application()
    _app["sessions"] = SessionRegistry()
    _app.add_routes(
        [
            web.get("/", health),
            web.post("/send/{session}", send_message_handler),
            web.get("/status/{session}/{id}", status_handler),
            web.get("/metrics", aio.web.server_stats),
        ]
    )
    return _app


app = build_app()


def run_bot(bot: Type[Bot] = Bot, local_app: web.Application = app) -> None:
    async def start_wrapper(our_app: web.Application) -> None:
        for config in parse_sessions():
            session = bot(config)
            try:
                await session.start()
            except (StorageError, CodecError, TransportError) as e:
                logging.error(
                    termcolor.colored("session %s didn't start: %s", "red"),
                    config.session_id,
                    e,
                )
                continue
            our_app["sessions"].add(config.session_id, session)

    async def stop_wrapper(our_app: web.Application) -> None:
        for session in our_app["sessions"]:
            await session.stop()
        await tasks.cancel_all()
        await pghelp.close_pools()

    local_app.on_startup.append(start_wrapper)
    local_app.on_cleanup.append(stop_wrapper)
    port = int(utils.get_secret("PORT") or 8080)
    web.run_app(local_app, port=port, host="0.0.0.0", access_log=None)


if __name__ == "__main__":
    run_bot(Bot)
