"""
OutboundDispatcher: one outbound send, from recipient check to network id.

    recipient check -> validate -> presence (subscribe, composing, paused) -> send

Every step records into the StatusTracker under the request's correlation id.
Nothing raises out of `send`; failures come back in the SendResult.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from prometheus_client import Counter, Histogram
from ulid2 import generate_ulid_as_base32 as get_uid

from canopy import utils
from canopy.registry import (
    ChannelKind,
    DispatchRegistry,
    Handler,
    UnsupportedMessageKind,
    parse_payload,
)
from canopy.runtime import Runtime, TransportError
from canopy.status import DeliveryStatus, StatusTracker
from canopy.validators import ValidationError

PRESENCE_SUBSCRIBE_DELAY = 0.5
PRESENCE_COMPOSING_DELAY = 2.0

dispatch_histogram = Histogram("dispatch_seconds", "Time from request to network id")
dispatch_counter = Counter(
    "dispatch_outcomes", "Outbound dispatches by outcome", ["channel", "kind", "outcome"]
)

__all__ = [
    "OutboundDispatcher",
    "OutboundRequest",
    "RecipientUnknown",
    "SendResult",
    "UnsupportedMessageKind",
]


class RecipientUnknown(Exception):
    def __init__(self, target: str) -> None:
        self.target = target
        super().__init__(f"{target} is not on the network")


@dataclass
class OutboundRequest:
    channel: ChannelKind
    kind: str
    target: str
    payload: Any
    correlation_id: str = field(default_factory=get_uid)

    @classmethod
    def from_dict(cls, blob: dict, target: Optional[str] = None) -> "OutboundRequest":
        """{"channel": "media", "kind": "image", "to": "...", "payload": {...}}
        ValueError on an unknown channel or missing kind/target"""
        channel = ChannelKind.parse(blob.get("channel") or "")
        kind = blob.get("kind")
        to = target or blob.get("to") or blob.get("target")
        if not kind or not to:
            raise ValueError("kind and target are required")
        request = cls(channel, kind, to, parse_payload(channel, blob.get("payload") or {}))
        if blob.get("correlation_id"):
            request.correlation_id = str(blob["correlation_id"])
        return request


@dataclass
class SendResult:
    correlation_id: str
    message_id: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.message_id)

    def to_dict(self) -> dict:
        return {
            "correlation_id": self.correlation_id,
            "message_id": self.message_id,
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
        }


class OutboundDispatcher:
    def __init__(
        self,
        runtime: Runtime,
        registry: DispatchRegistry,
        tracker: StatusTracker,
        subscribe_delay: Optional[float] = None,
        composing_delay: Optional[float] = None,
    ) -> None:
        self.runtime = runtime
        self.registry = registry
        self.tracker = tracker
        self.subscribe_delay = (
            utils.get_float_secret("PRESENCE_SUBSCRIBE_DELAY", PRESENCE_SUBSCRIBE_DELAY)
            if subscribe_delay is None
            else subscribe_delay
        )
        self.composing_delay = (
            utils.get_float_secret("PRESENCE_COMPOSING_DELAY", PRESENCE_COMPOSING_DELAY)
            if composing_delay is None
            else composing_delay
        )

    async def resolve_target(self, target: str) -> str:
        jid = utils.wa_format(target)
        if not jid:
            raise RecipientUnknown(target)
        try:
            registered = await self.runtime.check_registered(jid)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"couldn't check {jid}: {e}") from e
        if not registered:
            raise RecipientUnknown(target)
        return jid

    async def simulate_presence(self, jid: str) -> None:
        "look like a person typing; strictly in this order"
        await self.runtime.presence_subscribe(jid)
        await asyncio.sleep(self.subscribe_delay)
        await self.runtime.send_presence_update("composing", jid)
        await asyncio.sleep(self.composing_delay)
        await self.runtime.send_presence_update("paused", jid)

    def fail(
        self, request: OutboundRequest, error: Exception, outcome: str
    ) -> SendResult:
        self.tracker.observe(request.correlation_id, DeliveryStatus.FAILED)
        channel = getattr(request.channel, "value", request.channel)
        dispatch_counter.labels(channel, request.kind, outcome).inc()
        return SendResult(request.correlation_id, error=error)

    async def send(self, request: OutboundRequest) -> SendResult:
        start_time = time.time()
        epoch = self.runtime.epoch
        channel = getattr(request.channel, "value", request.channel)
        try:
            jid = await self.resolve_target(request.target)
        except (RecipientUnknown, TransportError) as e:
            logging.info("not sending %s: %s", request.correlation_id, e)
            dispatch_counter.labels(channel, request.kind, "unknown_recipient").inc()
            return SendResult(request.correlation_id, error=e)
        handler: Optional[Handler] = self.registry.get(request.channel, request.kind)
        if handler is None:
            error = UnsupportedMessageKind(request.channel, request.kind)
            logging.error("can't send %s: %s", request.correlation_id, error)
            self.tracker.observe(request.correlation_id, DeliveryStatus.FAILED)
            dispatch_counter.labels(channel, request.kind, "unsupported").inc()
            return SendResult(request.correlation_id, error=error)
        try:
            payload = await handler.validate(self.runtime, request.payload)
        except ValidationError as e:
            logging.info("%s rejected: %s", request.correlation_id, e)
            return self.fail(request, e, "invalid")
        except Exception as e:  # pylint: disable=broad-except
            logging.error("validating %s failed: %s", request.correlation_id, e)
            return self.fail(request, e, "failed")
        self.tracker.observe(request.correlation_id, DeliveryStatus.VALIDATED)
        try:
            await self.simulate_presence(jid)
            if self.runtime.epoch != epoch:
                raise TransportError("connection was replaced while dispatching")
            message_id = await handler.send(self.runtime, jid, payload)
        except Exception as e:  # pylint: disable=broad-except
            logging.error("sending %s to %s failed: %s", request.correlation_id, jid, e)
            return self.fail(request, e, "failed")
        self.tracker.observe(request.correlation_id, DeliveryStatus.SENT_TO_SERVER)
        self.tracker.link(message_id, request.correlation_id)
        dispatch_counter.labels(channel, request.kind, "sent").inc()
        dispatch_histogram.observe(time.time() - start_time)
        return SendResult(request.correlation_id, message_id=message_id)
