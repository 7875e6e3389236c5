"""
Delivery status of outbound messages.

The network acknowledges a sent message several times (server, delivery,
read, played) and sometimes skips or reorders those acknowledgments.
StatusTracker keeps one last-seen status per message and only lets it move
forward, filling in DELIVERED when a READ or PLAYED arrives without it.
FAILED is terminal: it is always recorded, and only another FAILED is
accepted after it.
"""
import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Optional, Union

from prometheus_client import Counter

from canopy.message import MessageKey


class DeliveryStatus(IntEnum):
    RECEIVED = 0
    VALIDATED = 1
    SENT_TO_SERVER = 2
    DELIVERED = 3
    READ = 4
    PLAYED = 5
    FAILED = 6


STATUS_LABELS = {
    DeliveryStatus.RECEIVED: "user message received",
    DeliveryStatus.VALIDATED: "reply validated",
    DeliveryStatus.SENT_TO_SERVER: "sent to server",
    DeliveryStatus.DELIVERED: "delivered to recipient",
    DeliveryStatus.READ: "read",
    DeliveryStatus.PLAYED: "played",
    DeliveryStatus.FAILED: "delivery failed",
}

# names the runtime uses for the same acknowledgments
STATUS_ALIASES = {
    "SERVER_ACK": DeliveryStatus.SENT_TO_SERVER,
    "DELIVERY_ACK": DeliveryStatus.DELIVERED,
    "ERROR": DeliveryStatus.FAILED,
}

GAP_FILLED = (DeliveryStatus.READ, DeliveryStatus.PLAYED)
TERMINAL = (DeliveryStatus.FAILED, DeliveryStatus.PLAYED)

# anything that isn't a DeliveryStatus is kept as-is, outside the ordering
Status = Union[DeliveryStatus, Any]

status_counter = Counter(
    "delivery_status_transitions", "Recorded delivery status transitions", ["status"]
)


@dataclass
class StatusEvent:
    id: str
    status: Status
    previous: Optional[Status]
    synthesized: bool = False

    @property
    def label(self) -> str:
        if isinstance(self.status, DeliveryStatus):
            return STATUS_LABELS[self.status]
        return str(self.status)


def coerce_status(status: Any) -> Status:
    if isinstance(status, DeliveryStatus):
        return status
    if isinstance(status, int) and not isinstance(status, bool):
        try:
            return DeliveryStatus(status)
        except ValueError:
            logging.warning("unknown delivery status %s, keeping it as-is", status)
            return status
    if isinstance(status, str):
        name = status.strip().upper()
        if name.isdigit():
            return coerce_status(int(name))
        if name in DeliveryStatus.__members__:
            return DeliveryStatus[name]
        if name in STATUS_ALIASES:
            return STATUS_ALIASES[name]
    logging.warning("unparseable delivery status %r, keeping it as-is", status)
    return status


def is_ordered(status: Status) -> bool:
    return isinstance(status, DeliveryStatus)


Listener = Callable[[StatusEvent], None]


class StatusTracker:
    """Owns the per-message status map. Other components feed it observations
    and subscribe to the transitions it accepts; they never write the map."""

    def __init__(self) -> None:
        self.last_status: dict[str, Status] = {}
        # last status that has a place in the ordering; unknown ones never replace it
        self.settled: dict[str, DeliveryStatus] = {}
        self.updated: dict[str, float] = {}
        # network message id -> correlation id it was sent under
        self.aliases: dict[str, str] = {}
        self.listeners: list[Listener] = []

    def __len__(self) -> int:
        return len(self.last_status)

    def __contains__(self, id_: str) -> bool:
        return self.aliases.get(id_, id_) in self.last_status

    def subscribe(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def get(self, id_: str) -> Optional[Status]:
        return self.last_status.get(self.aliases.get(id_, id_))

    def log_received(self, id_: str) -> None:
        "inbound messages are logged and counted, never stored"
        logging.info("➡️ message %s: %s", id_, STATUS_LABELS[DeliveryStatus.RECEIVED])
        status_counter.labels(STATUS_LABELS[DeliveryStatus.RECEIVED]).inc()

    def record(
        self, id_: str, status: Status, previous: Optional[Status], synthesized: bool = False
    ) -> StatusEvent:
        self.last_status[id_] = status
        if is_ordered(status):
            self.settled[id_] = status
        self.updated[id_] = time.monotonic()
        event = StatusEvent(id_, status, previous, synthesized)
        logging.info("➡️ message %s: %s", id_, event.label)
        status_counter.labels(event.label if is_ordered(status) else "unknown").inc()
        for listener in self.listeners:
            try:
                listener(event)
            except Exception:  # pylint: disable=broad-except
                logging.exception("status listener %s failed", listener)
        return event

    def observe(self, id_: str, status: Any) -> list[StatusEvent]:
        """Apply one observed status and return the transitions it produced, in order.
        Never raises for odd input."""
        id_ = self.aliases.get(id_, id_)
        observed = coerce_status(status)
        previous = self.last_status.get(id_)
        settled = self.settled.get(id_)
        if settled == DeliveryStatus.FAILED and observed != DeliveryStatus.FAILED:
            return []
        if not is_ordered(observed) or observed == DeliveryStatus.FAILED:
            return [self.record(id_, observed, previous)]
        events = []
        if observed in GAP_FILLED and (settled is None or settled < DeliveryStatus.DELIVERED):
            events.append(
                self.record(id_, DeliveryStatus.DELIVERED, previous, synthesized=True)
            )
            previous = settled = DeliveryStatus.DELIVERED
        if settled is not None and observed <= settled:
            return events
        events.append(self.record(id_, observed, previous))
        return events

    def observe_ack(self, key: MessageKey, status: Any) -> list[StatusEvent]:
        """Acknowledgment from the runtime. Only messages we sent are tracked."""
        if not key.from_me or not key.id:
            return []
        return self.observe(key.id, status)

    def forget(self, id_: str) -> None:
        self.last_status.pop(id_, None)
        self.settled.pop(id_, None)
        self.updated.pop(id_, None)

    def link(self, message_id: str, correlation_id: str) -> list[StatusEvent]:
        """Route future acks for message_id to correlation_id.
        An ack that raced ahead of the link is folded into the correlation entry."""
        if not message_id or message_id == correlation_id:
            return []
        self.aliases[message_id] = correlation_id
        early_settled = self.settled.get(message_id)
        early = self.last_status.get(message_id)
        self.forget(message_id)
        events = []
        if early_settled is not None:
            events += self.observe(correlation_id, early_settled)
        if early is not None and not is_ordered(early):
            events += self.observe(correlation_id, early)
        return events

    def prune(self, max_age: Optional[float] = None) -> int:
        """Drop entries that can't change any more and, given max_age, entries
        nobody has updated for that many seconds. Returns how many went."""
        now = time.monotonic()
        done = [
            id_
            for id_ in self.last_status
            if self.settled.get(id_) in TERMINAL
            or (max_age is not None and now - self.updated.get(id_, now) > max_age)
        ]
        for id_ in done:
            self.forget(id_)
        self.aliases = {
            message_id: correlation_id
            for message_id, correlation_id in self.aliases.items()
            if correlation_id in self.last_status
        }
        return len(done)
