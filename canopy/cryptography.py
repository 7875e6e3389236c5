import gzip
import logging
import os
import secrets
from typing import Union, cast

import base58
from Crypto.Cipher import AES, _mode_eax
from Crypto.PublicKey import ECC
from Crypto.Random import get_random_bytes
import xeddsa

# build your AESKEY envvar with this: cat /dev/urandom | head -c 32 | base58
AESKEY = base58.b58decode(os.getenv("AESKEY", "kWKuomB9Ty3GcJ9yA1yED").encode()) * 2

if not AESKEY or len(AESKEY) not in [16, 32, 64]:
    logging.error(
        "Need to set 128b or 256b (16 or 32 byte) AESKEY envvar for persistence. It should be base58 encoded."
    )

if len(AESKEY) == 64:
    AESKEY = AESKEY[:32]

KeyPair = dict[str, bytes]
# prefix the signal protocol puts in front of serialized curve25519 public keys
KEY_BUNDLE_TYPE = b"\x05"


def encrypt(data: bytes, key: bytes) -> bytes:
    """Accepts data (as arbitrary length bytearray) and key (as 16B or 32B bytearray) and returns authenticated and encrypted blob (as bytearray)"""
    cipher = cast(_mode_eax.EaxMode, AES.new(key, AES.MODE_EAX))
    ciphertext, authtag = cipher.encrypt_and_digest(data)  # pylint: disable
    return cipher.nonce + authtag + ciphertext


def decrypt(data: bytes, key: bytes) -> bytes:
    """Accepts ciphertext (as arbitrary length bytearray) and key (as 16B or 32B bytearray) and returns decrypted (plaintext) blob (as bytearray)"""
    cipher = cast(_mode_eax.EaxMode, AES.new(key, AES.MODE_EAX, data[:16]))
    return cipher.decrypt_and_verify(data[32:], data[16:32])  # pylint: disable


def get_ciphertext_value(value_: Union[str, bytes]) -> str:
    """returns a base58 encoded aes128 AES EAX mode encrypted gzip compressed value"""
    if isinstance(value_, str):
        value_bytes = value_.encode()
    elif isinstance(value_, bytes):
        value_bytes = value_
    else:
        raise ValueError
    return base58.b58encode(encrypt(gzip.compress(value_bytes), AESKEY)).decode()


def get_cleartext_value(value_: str) -> str:
    """decrypts, decodes, decompresses a b58 blob returning cleartext"""
    return gzip.decompress(decrypt(base58.b58decode(value_), AESKEY)).decode()


def clamp(scalar: bytes) -> bytes:
    "curve25519 private scalars have their low 3 bits cleared and bit 254 set"
    clamped = bytearray(scalar)
    clamped[0] &= 248
    clamped[31] &= 127
    clamped[31] |= 64
    return bytes(clamped)


def generate_key_pair() -> KeyPair:
    """a fresh curve25519 key pair as raw 32 byte public and private halves"""
    private = clamp(get_random_bytes(32))
    key = ECC.construct(curve="Curve25519", seed=private)
    return {"public": key.public_key().export_key(format="raw"), "private": private}


def sign(private: bytes, message: bytes) -> bytes:
    """XEdDSA signature over message with a curve25519 private key.
    Verifies against the matching curve25519 public key, which is what the
    network checks signed pre-keys with."""
    return xeddsa.xeddsa_sign(private, message, get_random_bytes(64))


def signed_key_pair(identity: KeyPair, key_id: int) -> dict:
    pre_key = generate_key_pair()
    return {
        "keyPair": pre_key,
        "signature": sign(identity["private"], KEY_BUNDLE_TYPE + pre_key["public"]),
        "keyId": key_id,
    }


def generate_registration_id() -> int:
    # 14 bits, same range the protocol uses
    return secrets.randbits(16) & 16383
