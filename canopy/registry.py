"""
Outbound message kinds and the handlers that send them.

A handler is a (validate, send) pair keyed by (channel, kind). validate
measures the payload through the runtime and raises ValidationError;
send calls runtime.send_raw exactly once and returns the network message id.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Optional, Union

from canopy import validators
from canopy.message import MessageKey
from canopy.runtime import Runtime


class ChannelKind(str, Enum):
    TEXT = "text"
    MEDIA = "media"
    REACTION = "reaction"

    @classmethod
    def parse(cls, value: Union[str, "ChannelKind"]) -> "ChannelKind":
        if isinstance(value, ChannelKind):
            return value
        return cls(CHANNEL_ALIASES.get(value, value))


# older clients post these
CHANNEL_ALIASES = {"txt": "text", "react": "reaction"}


class UnsupportedMessageKind(Exception):
    def __init__(self, channel: Any, kind: str) -> None:
        self.channel = channel
        self.kind = kind
        super().__init__(f"no handler for {getattr(channel, 'value', channel)}/{kind}")


@dataclass
class TextPayload:
    text: str
    quoted: Optional[dict] = None


@dataclass
class MediaPayload:
    url: str
    caption: Optional[str] = None
    quoted: Optional[dict] = None
    file_name: Optional[str] = None
    mimetype: Optional[str] = None


@dataclass
class ReactPayload:
    key: Optional[MessageKey]
    emoji: Any


Payload = Union[TextPayload, MediaPayload, ReactPayload]


def parse_payload(channel: ChannelKind, blob: dict) -> Payload:
    "build a payload from posted json; missing fields are left for validation to reject"
    if channel is ChannelKind.TEXT:
        return TextPayload(text=blob.get("text"), quoted=blob.get("quoted"))
    if channel is ChannelKind.MEDIA:
        return MediaPayload(
            url=blob.get("url") or "",
            caption=blob.get("caption"),
            quoted=blob.get("quoted"),
            file_name=blob.get("fileName") or blob.get("file_name"),
            mimetype=blob.get("mimetype"),
        )
    key = blob.get("key")
    return ReactPayload(
        key=MessageKey.from_dict(key) if isinstance(key, dict) else None,
        emoji=blob.get("emoji"),
    )


Validate = Callable[[Runtime, Any], Awaitable[Any]]
Send = Callable[[Runtime, str, Any], Awaitable[str]]


@dataclass
class Handler:
    channel: ChannelKind
    kind: str
    validate: Validate
    send: Send = field(repr=False)


class DispatchRegistry:
    """(channel, kind) -> Handler. Filled once at startup, then only read."""

    def __init__(self) -> None:
        self.handlers: dict[tuple[ChannelKind, str], Handler] = {}

    def add(self, channel: ChannelKind, kind: str, validate: Validate, send: Send) -> Handler:
        channel = ChannelKind.parse(channel)
        if (channel, kind) in self.handlers:
            raise ValueError(f"{channel.value}/{kind} is already registered")
        handler = Handler(channel, kind, validate, send)
        self.handlers[(channel, kind)] = handler
        return handler

    def register(self, channel: ChannelKind, kind: str, validate: Validate) -> Callable:
        """decorator form of add, for the send function"""

        def decorator(send: Send) -> Send:
            self.add(channel, kind, validate, send)
            return send

        return decorator

    def get(self, channel: Union[str, ChannelKind], kind: str) -> Optional[Handler]:
        try:
            channel = ChannelKind.parse(channel)
        except ValueError:
            return None
        return self.handlers.get((channel, kind))

    def resolve(self, channel: Union[str, ChannelKind], kind: str) -> Handler:
        handler = self.get(channel, kind)
        if handler is None:
            raise UnsupportedMessageKind(channel, kind)
        return handler

    def __contains__(self, channel_kind: tuple) -> bool:
        return self.get(*channel_kind) is not None

    def __iter__(self) -> Iterator[Handler]:
        return iter(self.handlers.values())

    def __len__(self) -> int:
        return len(self.handlers)


def quoted_options(payload: Union[TextPayload, MediaPayload]) -> dict:
    return {"quoted": payload.quoted} if payload.quoted else {}


async def validate_text(_: Runtime, payload: TextPayload) -> TextPayload:
    if not isinstance(payload, TextPayload):
        raise validators.ValidationError("text", "not a text message")
    validators.check_text(payload.text)
    return payload


async def send_text(runtime: Runtime, target: str, payload: TextPayload) -> str:
    return await runtime.send_raw(target, {"text": payload.text}, quoted_options(payload))


def require_url(kind: str, payload: MediaPayload) -> None:
    if not isinstance(payload, MediaPayload) or not payload.url:
        raise validators.ValidationError(kind, "media needs a url")


async def validate_audio(runtime: Runtime, payload: MediaPayload) -> MediaPayload:
    require_url("audio", payload)
    validators.check_duration("audio", await runtime.media_duration(payload.url))
    return payload


def media_size_validator(kind: str) -> Validate:
    async def validate(runtime: Runtime, payload: MediaPayload) -> MediaPayload:
        require_url(kind, payload)
        validators.check_media_size(kind, runtime.stat_file_size(payload.url))
        return payload

    return validate


async def validate_document(runtime: Runtime, payload: MediaPayload) -> MediaPayload:
    require_url("document", payload)
    validators.check_document_size(runtime.stat_file_size(payload.url))
    payload.file_name, payload.mimetype = validators.document_metadata(
        payload.url, payload.file_name, payload.mimetype
    )
    return payload


async def send_voice_note(runtime: Runtime, target: str, payload: MediaPayload) -> str:
    content = {"audio": {"url": payload.url}, "ptt": True}
    return await runtime.send_raw(target, content, quoted_options(payload))


async def send_audio(runtime: Runtime, target: str, payload: MediaPayload) -> str:
    return await runtime.send_raw(
        target, {"audio": {"url": payload.url}}, quoted_options(payload)
    )


def captioned_sender(kind: str) -> Send:
    async def send(runtime: Runtime, target: str, payload: MediaPayload) -> str:
        content: dict[str, Any] = {kind: {"url": payload.url}}
        if payload.caption:
            content["caption"] = payload.caption
        return await runtime.send_raw(target, content, quoted_options(payload))

    return send


async def send_sticker(runtime: Runtime, target: str, payload: MediaPayload) -> str:
    return await runtime.send_raw(
        target, {"sticker": {"url": payload.url}}, quoted_options(payload)
    )


async def send_document(runtime: Runtime, target: str, payload: MediaPayload) -> str:
    content: dict[str, Any] = {
        "document": {"url": payload.url},
        "fileName": payload.file_name,
        "mimetype": payload.mimetype,
    }
    if payload.caption:
        content["caption"] = payload.caption
    return await runtime.send_raw(target, content, quoted_options(payload))


async def validate_reaction(_: Runtime, payload: ReactPayload) -> ReactPayload:
    if not isinstance(payload, ReactPayload):
        raise validators.ValidationError("react", "not a reaction")
    validators.check_reaction(payload.emoji, payload.key)
    return payload


async def send_reaction(runtime: Runtime, target: str, payload: ReactPayload) -> str:
    validators.check_reaction(payload.emoji, payload.key)
    content = {"react": {"key": payload.key.to_dict(), "text": payload.emoji}}
    return await runtime.send_raw(target, content)


def builtin_registry() -> DispatchRegistry:
    registry = DispatchRegistry()
    registry.add(ChannelKind.TEXT, "text", validate_text, send_text)
    registry.add(ChannelKind.MEDIA, "voiceNote", validate_audio, send_voice_note)
    registry.add(ChannelKind.MEDIA, "audio", validate_audio, send_audio)
    for kind in ("image", "video"):
        registry.add(ChannelKind.MEDIA, kind, media_size_validator(kind), captioned_sender(kind))
    registry.add(ChannelKind.MEDIA, "sticker", media_size_validator("sticker"), send_sticker)
    registry.add(ChannelKind.MEDIA, "document", validate_document, send_document)
    registry.add(ChannelKind.REACTION, "react", validate_reaction, send_reaction)
    return registry
