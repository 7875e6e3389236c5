"""
Reversible encoding between key material (bytes nested in lists and dicts)
and JSON-safe values.

Binary blobs are tagged so decoding is unambiguous:

    b"\\x01\\x02" <-> {"kind": "binary", "bytes": [1, 2]}

A mapping that could be mistaken for a tag (it has a "kind" key, or looks
like a Node Buffer) is wrapped on the way out:

    {"kind": "x"} <-> {"kind": "map", "entries": {"kind": "x"}}

Any other dict is decoded structurally, one entry at a time.
"""
import base64
import binascii
import json
from typing import Any

BINARY_KIND = "binary"
MAP_KIND = "map"
# shape written by Node's Buffer.toJSON, found in stores written by older bridges
LEGACY_BUFFER_TYPE = "Buffer"


class CodecError(Exception):
    pass


def needs_wrapping(value: dict) -> bool:
    return "kind" in value or value.get("type") == LEGACY_BUFFER_TYPE


def encode(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"kind": BINARY_KIND, "bytes": list(bytes(value))}
    if isinstance(value, (list, tuple)):
        return [encode(item) for item in value]
    if isinstance(value, dict):
        encoded = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise CodecError(f"mapping keys must be strings, got {key!r}")
            encoded[key] = encode(item)
        if needs_wrapping(value):
            return {"kind": MAP_KIND, "entries": encoded}
        return encoded
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    raise CodecError(f"can't encode {type(value).__name__}")


def _decode_byte_list(data: Any) -> bytes:
    if not isinstance(data, list):
        raise CodecError(f"binary payload must be a list of bytes, got {data!r:.64}")
    if not all(
        isinstance(byte, int) and not isinstance(byte, bool) and 0 <= byte <= 255
        for byte in data
    ):
        raise CodecError("binary payload contains values outside 0-255")
    return bytes(data)


def _decode_legacy_buffer(data: Any) -> bytes:
    if isinstance(data, str):
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CodecError(f"bad base64 in buffer: {e}") from e
    return _decode_byte_list(data)


def _decode_tag(value: dict, legacy: bool) -> Any:
    kind = value["kind"]
    if kind == BINARY_KIND:
        if set(value) != {"kind", "bytes"}:
            raise CodecError(f"malformed binary tag with keys {sorted(value)}")
        return _decode_byte_list(value["bytes"])
    if kind == MAP_KIND:
        if set(value) != {"kind", "entries"} or not isinstance(value["entries"], dict):
            raise CodecError(f"malformed map tag with keys {sorted(value)}")
        return {key: decode(item, legacy) for key, item in value["entries"].items()}
    # written by something that didn't wrap it
    return {key: decode(item, legacy) for key, item in value.items()}


def decode(value: Any, legacy: bool = False) -> Any:
    """Inverse of encode. With legacy set, Node Buffer shapes written by older
    bridges are read as bytes too."""
    if isinstance(value, list):
        return [decode(item, legacy) for item in value]
    if isinstance(value, dict):
        if "kind" in value:
            return _decode_tag(value, legacy)
        if legacy and value.get("type") == LEGACY_BUFFER_TYPE and "data" in value:
            return _decode_legacy_buffer(value["data"])
        return {key: decode(item, legacy) for key, item in value.items()}
    return value


def dumps(value: Any) -> str:
    return json.dumps(encode(value), separators=(",", ":"))


def loads(serialized: str, legacy: bool = False) -> Any:
    try:
        blob = json.loads(serialized)
    except json.JSONDecodeError as e:
        raise CodecError(f"stored value is not json: {e}") from e
    return decode(blob, legacy)
