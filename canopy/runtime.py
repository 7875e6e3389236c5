#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
The messaging runtime: the process that actually holds the websocket,
does the encryption and speaks the network protocol. We only drive it.
"""
import asyncio
import asyncio.subprocess as subprocess  # https://github.com/PyCQA/pylint/issues/1469
import base64
import binascii
import json
import logging
import os
import shlex
import time
from asyncio import Queue, StreamReader, StreamWriter
from asyncio.subprocess import PIPE
from typing import Any, Optional

import termcolor
from ulid2 import generate_ulid_as_base32 as get_uid

from canopy import codec, utils
from canopy.authstate import AuthState, KeySyncError
from canopy.codec import CodecError
from canopy.datastore import StorageError
from canopy.message import Message, MessageKey, parse_events
from canopy.tasks import create_handled_task

JSON = dict[str, Any]
# creds and media travel over stdout as single lines
STREAM_LIMIT = 2**26
FFPROBE = "ffprobe"


class TransportError(Exception):
    pass


def rpc(
    method: str, param_dict: Optional[dict] = None, _id: Optional[str] = None, **params: Any
) -> dict:
    request = {
        "jsonrpc": "2.0",
        "method": method,
        "params": (param_dict or {}) | params,
    }
    if _id:
        request["id"] = _id
    return request


class Runtime:
    """
    What the bot needs from a messaging runtime.
    `epoch` is bumped every time the transport is invalidated, so in-flight
    work can tell it's talking to a connection that no longer exists.
    Events (see canopy.message) are put in `inbox`.
    """

    def __init__(self) -> None:
        self.epoch = 0
        self.inbox: Queue = Queue()
        self.auth: Optional[AuthState] = None
        self.pending_requests: dict[str, asyncio.Future] = {}

    def invalidate(self) -> None:
        self.epoch += 1
        logging.info("transport invalidated, now at epoch %s", self.epoch)

    def fail_pending(self, error: Exception) -> None:
        "requests sent over a transport that's gone will never be answered"
        for rpc_id, future in list(self.pending_requests.items()):
            if not future.done():
                future.set_exception(error)
            self.pending_requests.pop(rpc_id, None)

    async def start(self, auth: AuthState) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError

    async def send_raw(
        self, target: str, content: dict, options: Optional[dict] = None
    ) -> str:
        "send one message and return the id the network gave it"
        raise NotImplementedError

    async def check_registered(self, address: str) -> bool:
        raise NotImplementedError

    async def presence_subscribe(self, target: str) -> None:
        raise NotImplementedError

    async def send_presence_update(self, state: str, target: str) -> None:
        raise NotImplementedError

    async def read_messages(self, keys: list[MessageKey]) -> None:
        raise NotImplementedError

    async def download_media(self, message: Message) -> bytes:
        raise NotImplementedError

    async def media_duration(self, path: str) -> Optional[float]:
        """Duration in seconds according to ffprobe, or None if it couldn't tell"""
        try:
            proc = await asyncio.create_subprocess_exec(
                *f"{FFPROBE} -v error -show_entries format=duration -of csv=p=0".split(),
                path,
                stdout=PIPE,
                stderr=PIPE,
            )
        except OSError as e:
            logging.error("couldn't run %s: %s", FFPROBE, e)
            return None
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            logging.warning("%s failed on %s: %s", FFPROBE, path, stderr.decode().strip())
            return None
        try:
            return float(stdout.decode().strip())
        except ValueError:
            logging.warning("%s gave no duration for %s", FFPROBE, path)
            return None

    def stat_file_size(self, path: str) -> Optional[int]:
        try:
            return os.stat(path).st_size
        except OSError as e:
            logging.warning("couldn't stat %s: %s", path, e)
            return None


class BridgeRuntime(Runtime):
    """
    Runs the runtime as a subprocess speaking newline-delimited JSON-RPC on stdio.
    Lifecycle: (re)starts the process with backoff and asks it to connect with our creds.
    I/O: reads its stdout, resolving our pending requests, answering its key
    lookups and putting everything else in inbox as events. Writes queued
    commands to its stdin.
    """

    def __init__(self, session_id: str, command: Optional[str] = None) -> None:
        super().__init__()
        self.session_id = session_id
        self.command = command or utils.get_secret("RUNTIME_COMMAND")
        self.proc: Optional[subprocess.Process] = None
        self.outbox: Queue[dict] = Queue()
        self.exiting = False
        self.process_task: Optional[asyncio.Task] = None
        self.write_task: Optional[asyncio.Task] = None

    async def start(self, auth: AuthState) -> None:
        "connect with these creds, starting the process if it isn't up yet"
        self.auth = auth
        self.exiting = False
        if self.process_task and not self.process_task.done():
            await self.connect()
            return
        self.process_task = create_handled_task(
            self.start_process(),
            message="%s runtime process loop failed",
            message_args=(self.session_id,),
            name=f"runtime-{self.session_id}",
        )

    async def start_process(self) -> None:
        """
        (Re)start the runtime and launch reading and writing with it.
        """
        if not self.command:
            raise TransportError("RUNTIME_COMMAND is not set")
        restart_count = 0
        max_backoff = 15
        while not self.exiting:
            command = shlex.split(self.command) + ["--session", self.session_id]
            logging.info(command)
            proc_launch_time = time.time()
            self.proc = await asyncio.create_subprocess_exec(
                *command, stdin=PIPE, stdout=PIPE, limit=STREAM_LIMIT
            )
            logging.info(
                "started runtime for %s with PID %s", self.session_id, self.proc.pid
            )
            assert self.proc.stdout and self.proc.stdin
            create_handled_task(
                self.read_stdout(self.proc.stdout),
                message="reading runtime output failed",
            )
            # prevent the previous process's write task from stealing commands from the outbox queue
            if self.write_task:
                self.write_task.cancel()
            self.write_task = create_handled_task(
                self.write_commands(self.proc.stdin),
                message="writing to runtime failed",
            )
            create_handled_task(self.connect(), message="runtime connect failed")
            returncode = await self.proc.wait()
            self.invalidate()
            self.fail_pending(TransportError(f"runtime exited with {returncode}"))
            if self.exiting:
                break
            runtime = time.time() - proc_launch_time
            if runtime > max_backoff * 4:
                restart_count = 0
            restart_count += 1
            backoff = 0.5 * (2**restart_count - 1)
            logging.warning("runtime exited with returncode %s", returncode)
            if backoff > max_backoff:
                logging.error(
                    "%s runtime giving up after %s retries", self.session_id, restart_count
                )
                break
            logging.info("%s runtime will restart in %s second(s)", self.session_id, backoff)
            await asyncio.sleep(backoff)

    async def connect(self) -> None:
        if not self.auth:
            raise TransportError("no auth state to connect with")
        await self.request("connect", session=self.session_id, creds=self.auth.creds)

    async def stop(self) -> None:
        self.exiting = True
        self.invalidate()
        self.fail_pending(TransportError("runtime stopped"))
        if self.proc:
            try:
                self.proc.kill()
                await self.proc.wait()
            except ProcessLookupError:
                logging.info("no runtime process")
        if self.write_task:
            self.write_task.cancel()

    async def read_stdout(self, stream: StreamReader) -> None:
        """Read runtime output but delegate handling it"""
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode().strip()
            if line:
                await self.decode_line(line)
        logging.info("stopped reading runtime stdout")

    async def decode_line(self, line: str) -> None:
        "decode json and log errors"
        try:
            blob = json.loads(line)
        except json.JSONDecodeError:
            logging.info("runtime: %s", line)
            return
        if not isinstance(blob, dict):
            logging.warning("runtime sent a non-object: %s", line)
            return
        if "error" in blob:
            error = json.dumps(blob["error"])
            logging.error(
                json.dumps(blob).replace(error, termcolor.colored(error, "red"))
            )
        if "method" in blob and "id" in blob:
            create_handled_task(
                self.answer_request(blob),
                message="answering runtime request %s failed",
                message_args=(blob.get("method"),),
            )
        elif "method" in blob:
            try:
                params = codec.decode(blob.get("params"))
            except CodecError as e:
                logging.error("undecodable %s from runtime: %s", blob["method"], e)
                return
            for event in parse_events(blob["method"], params):
                await self.inbox.put(event)
        elif blob.get("id") in self.pending_requests:
            self.resolve(blob)
        else:
            logging.info("unexpected runtime output: %s", line)

    def resolve(self, blob: JSON) -> None:
        future = self.pending_requests.pop(blob["id"])
        if future.done():
            return
        if "error" in blob:
            message = (blob["error"] or {}).get("message") or str(blob["error"])
            future.set_exception(TransportError(message))
        else:
            future.set_result(codec.decode(blob.get("result")))

    async def answer_request(self, blob: JSON) -> None:
        "the runtime reads and writes our key store through these"
        method = blob["method"]
        response: JSON = {"jsonrpc": "2.0", "id": blob["id"]}
        try:
            params = codec.decode(blob.get("params") or {})
            if not self.auth:
                raise TransportError("not started")
            if method == "keys.get":
                result = await self.auth.keys.get(params["type"], params["ids"])
                response["result"] = codec.encode(result)
            elif method == "keys.set":
                await self.auth.keys.set(params["data"])
                response["result"] = None
            else:
                response["error"] = {"code": -32601, "message": f"no method {method}"}
        except (
            KeySyncError,
            StorageError,
            CodecError,
            TransportError,
            KeyError,
            TypeError,
            ValueError,
        ) as e:
            logging.error("%s from runtime failed: %s", method, e)
            response["error"] = {"code": -32000, "message": f"{type(e).__name__}: {e}"}
        finally:
            # the runtime waits on every request it makes
            if "result" not in response and "error" not in response:
                response["error"] = {"code": -32603, "message": "internal error"}
            await self.outbox.put(response)

    async def write_commands(self, pipe: StreamWriter) -> None:
        """Encode and write pending runtime commands"""
        while True:
            command = await self.outbox.get()
            if command.get("method"):
                logging.debug("input to runtime: %s", command["method"])
            if pipe.is_closing():
                logging.error("runtime stdin pipe is closed")
            pipe.write(json.dumps(command).encode() + b"\n")
            await pipe.drain()

    async def request(self, method: str, **params: Any) -> Any:
        """Send a request and wait for its result"""
        rpc_id = f"{method}-{get_uid()}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.pending_requests[rpc_id] = future
        await self.outbox.put(rpc(method, codec.encode(params), rpc_id))
        return await future

    async def send_raw(
        self, target: str, content: dict, options: Optional[dict] = None
    ) -> str:
        result = await self.request(
            "sendMessage", jid=target, content=content, options=options or {}
        )
        message_id = ((result or {}).get("key") or {}).get("id")
        if not message_id:
            raise TransportError(f"runtime didn't return a message id: {result}")
        return message_id

    async def check_registered(self, address: str) -> bool:
        results = await self.request("onWhatsApp", jids=[address])
        return bool(results and results[0].get("exists"))

    async def presence_subscribe(self, target: str) -> None:
        await self.request("presenceSubscribe", jid=target)

    async def send_presence_update(self, state: str, target: str) -> None:
        await self.request("sendPresenceUpdate", state=state, jid=target)

    async def read_messages(self, keys: list[MessageKey]) -> None:
        await self.request("readMessages", keys=[key.to_dict() for key in keys])

    async def download_media(self, message: Message) -> bytes:
        result = await self.request("downloadMedia", message=message.blob)
        if isinstance(result, bytes):
            return result
        try:
            return base64.b64decode(result or "", validate=True)
        except (binascii.Error, TypeError) as e:
            raise TransportError(f"couldn't decode downloaded media: {e}") from e
