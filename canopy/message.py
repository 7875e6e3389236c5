"""
Inbound side of the runtime: message keys, parsed messages and the four
event variants the bot reacts to.

FYI: this module uses a lot of `or`. The runtime happily sends
`{"message": null}`, which breaks our typing if we expect a dict.
"""
import json
import shlex
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from canopy.utils import is_jid_newsletter, logging


def unicode_character_name(i: int) -> str:
    """Tries to get the unicode name for a given character ordinal.
    Useful for finding various quotation marks"""
    try:
        return unicodedata.name(chr(i))
    except ValueError:
        return ""


unicode_quotes = [
    chr(i) for i in range(0, 0x10FFF) if "QUOTATION MARK" in unicode_character_name(i)
]

# message content type -> (saved file extension, media type to download as)
MEDIA_INFO = {
    "imageMessage": (".jpg", "image"),
    "videoMessage": (".mp4", "video"),
    "audioMessage": (".mp3", "audio"),
    "stickerMessage": (".webp", "sticker"),
    "documentMessage": ("", "document"),
}

# statusCode the runtime reports when the account was unlinked from the phone
LOGGED_OUT = 401


@dataclass
class MessageKey:
    remote_jid: str
    id: str = ""
    from_me: bool = False
    participant: Optional[str] = None

    @classmethod
    def from_dict(cls, blob: Optional[dict]) -> "MessageKey":
        blob = blob or {}
        return cls(
            remote_jid=blob.get("remoteJid") or "",
            id=blob.get("id") or "",
            from_me=bool(blob.get("fromMe")),
            participant=blob.get("participant"),
        )

    def to_dict(self) -> dict:
        key: dict[str, Any] = {
            "remoteJid": self.remote_jid,
            "id": self.id,
            "fromMe": self.from_me,
        }
        if self.participant:
            key["participant"] = self.participant
        return key


class Dictable:
    def to_dict(self) -> dict:
        """
        Returns a dictionary of message instance
        variables except for the blob
        """
        properties = {}
        for attr in dir(self):
            if not (attr.startswith("_") or attr in ("blob", "full_text", "content")):
                val = getattr(self, attr)
                if val and not callable(val):
                    if isinstance(val, (Dictable, MessageKey)):
                        properties[attr] = val.to_dict()
                    else:
                        properties[attr] = val
        return properties


class Message(Dictable):
    """
    One inbound message from the runtime, optionally containing a command with arguments.

    Attributes
    -----------
    blob: dict
       the message as the runtime sent it: {"key": ..., "message": ..., "pushName": ...}
    """

    key: MessageKey
    text: str
    full_text: str
    source: str
    name: str
    timestamp: int
    media_type: Optional[str]
    quoted_text: Optional[str]
    arg0: str
    arg1: Optional[str]
    arg2: Optional[str]
    arg3: Optional[str]

    def __init__(self, blob: dict) -> None:
        self.blob = blob
        self.key = MessageKey.from_dict(blob.get("key"))
        self.id = self.key.id
        self.source = self.key.remote_jid
        self.name = blob.get("pushName") or self.source
        self.timestamp = int(blob.get("messageTimestamp") or 0)
        self.content: dict = blob.get("message") or {}
        extended = self.content.get("extendedTextMessage") or {}
        self.media_type = next(
            (kind for kind in self.content if kind in MEDIA_INFO), None
        )
        media = self.content.get(self.media_type or "") or {}
        self.full_text = self.text = (
            self.content.get("conversation")
            or extended.get("text")
            or media.get("caption")
            or ""
        )
        quoted = (extended.get("contextInfo") or {}).get("quotedMessage") or {}
        self.quoted_text = quoted.get("conversation") or (
            quoted.get("extendedTextMessage") or {}
        ).get("text")
        # list that will hold the separate words of the message if there are any.
        self.tokens: list[str] = []
        if self.text:
            self.parse_text(self.text)
            logging.info(self)

    @property
    def from_me(self) -> bool:
        return self.key.from_me

    @property
    def newsletter(self) -> bool:
        return is_jid_newsletter(self.source)

    def quote(self) -> dict:
        "the shape the runtime wants for replying to this message"
        return {"key": self.key.to_dict(), "message": self.content}

    def parse_text(self, text: str) -> None:
        "set current self.text and tokenization to text"
        try:
            try:
                # this is if you're expecting json
                arg0, maybe_json = text.split(" ", 1)
                assert json.loads(maybe_json)
                self.tokens = maybe_json.split(" ")
            except (json.JSONDecodeError, AssertionError):
                clean_quote_text = text
                for quote in unicode_quotes:
                    clean_quote_text = clean_quote_text.replace(quote, "'")
                arg0, *self.tokens = shlex.split(clean_quote_text)
        except ValueError:
            arg0, *self.tokens = text.split(" ")
        self.arg0 = arg0.removeprefix("/").lower() if text.startswith("/") else ""
        if self.tokens:
            self.arg1, self.arg2, self.arg3, *_ = self.tokens + [""] * 3
        if self.arg0:
            # reconstitute the text minus the command
            self.text = " ".join(self.tokens)

    def __getattr__(self, attr: str) -> None:
        # return falsy string back if not found
        return None

    def __repr__(self) -> str:
        return f"Message: {json.dumps(self.to_dict(), default=str)}"


def media_info(message: Message) -> Optional[tuple[str, str]]:
    """(media type, filename) to save an inbound attachment under, or None for plain text"""
    if not message.media_type:
        return None
    ext, kind = MEDIA_INFO[message.media_type]
    filename = f"{message.id}{ext}"
    if message.media_type == "documentMessage":
        doc = message.content.get("documentMessage") or {}
        subtype = (doc.get("mimetype") or "").split("/")[-1].split(";")[0]
        filename = doc.get("fileName") or f"{message.id}.{subtype or 'bin'}"
    return kind, filename


@dataclass
class ConnectionStateChanged:
    state: str
    status_code: Optional[int] = None
    qr: Optional[str] = None

    @property
    def logged_out(self) -> bool:
        return self.status_code == LOGGED_OUT


@dataclass
class CredentialsRotated:
    creds: dict


@dataclass
class MessageAcknowledged:
    key: MessageKey
    status: Any


@dataclass
class MessageReceived:
    message: Message
    kind: str = "notify"


Event = Union[ConnectionStateChanged, CredentialsRotated, MessageAcknowledged, MessageReceived]


@dataclass
class UnknownEvent:
    method: str
    params: Any = field(default=None)


def parse_events(method: str, params: Any) -> list:
    """Turn one notification from the runtime into events.
    messages.update and messages.upsert carry batches, so this returns a list."""
    params = params if params is not None else {}
    if method == "connection.update":
        error = ((params.get("lastDisconnect") or {}).get("error") or {})
        status_code = (error.get("output") or {}).get("statusCode")
        return [
            ConnectionStateChanged(
                state=params.get("connection") or "", status_code=status_code, qr=params.get("qr")
            )
        ]
    if method == "creds.update":
        return [CredentialsRotated(creds=params)]
    if method == "messages.update":
        updates = params if isinstance(params, list) else params.get("updates") or []
        return [
            MessageAcknowledged(
                key=MessageKey.from_dict(update.get("key")),
                status=(update.get("update") or {}).get("status"),
            )
            for update in updates
            if (update.get("update") or {}).get("status") is not None
        ]
    if method == "messages.upsert":
        kind = params.get("type") or "notify"
        return [
            MessageReceived(message=Message(blob), kind=kind)
            for blob in params.get("messages") or []
        ]
    logging.debug("ignoring %s notification", method)
    return [UnknownEvent(method, params)]
