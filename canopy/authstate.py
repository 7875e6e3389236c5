"""
Session auth state: credentials plus the categorized key lookup the
messaging runtime reads and writes while it keeps a session alive.
"""
import asyncio
import base64
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from Crypto.Random import get_random_bytes

from canopy import cryptography
from canopy.datastore import CREDS_KEY, CredentialStore, SnapshotStore

KeyBatch = dict[str, dict[str, Any]]
KeyDecoder = Callable[[Any], Any]


class KeySyncError(Exception):
    """Some entries of a key batch couldn't be stored.
    Every other entry of the batch was still attempted."""

    def __init__(self, failures: list[tuple[str, str, Exception]]) -> None:
        self.failures = failures
        summary = ", ".join(f"{category}-{id_}: {e}" for category, id_, e in failures)
        super().__init__(f"{len(failures)} key writes failed: {summary}")


class KeyLookup(Protocol):
    async def get(self, category: str, ids: list[str]) -> dict[str, Any]:
        ...

    async def set(self, data: KeyBatch) -> None:
        ...


@dataclass
class AuthState:
    creds: dict
    keys: KeyLookup


def init_auth_creds() -> dict:
    """Fresh identity for a session that has never paired"""
    identity_key = cryptography.generate_key_pair()
    return {
        "noiseKey": cryptography.generate_key_pair(),
        "pairingEphemeralKeyPair": cryptography.generate_key_pair(),
        "signedIdentityKey": identity_key,
        "signedPreKey": cryptography.signed_key_pair(identity_key, 1),
        "registrationId": cryptography.generate_registration_id(),
        "advSecretKey": base64.b64encode(get_random_bytes(32)).decode(),
        "processedHistoryMessages": [],
        "nextPreKeyId": 1,
        "firstUnuploadedPreKeyId": 1,
        "accountSyncCounter": 0,
        "accountSettings": {"unarchiveChats": False},
        "deviceId": base64.b64encode(get_random_bytes(16)).decode(),
        "phoneId": str(uuid.uuid4()),
        "identityId": get_random_bytes(20),
        "registered": False,
        "backupToken": get_random_bytes(20),
        "registration": {},
        "pairingCode": None,
        "lastPropHash": None,
        "routingInfo": None,
    }


def key_name(category: str, id_: str) -> str:
    return f"{category}-{id_}"


class SessionAuthState:
    """
    Credentials and key material of one session, kept in a CredentialStore.

    `load` must run before anything else. `persist_credentials` has to be
    called after every credential change the runtime reports; a lost write
    means pairing again.
    """

    def __init__(
        self,
        store: CredentialStore,
        session_id: str,
        key_decoders: Optional[dict[str, KeyDecoder]] = None,
    ) -> None:
        self.store = store
        self.session_id = session_id
        self.key_decoders = key_decoders or {}
        self.creds: Optional[dict] = None

    async def load(self) -> AuthState:
        # a StorageError here must stop startup, not fall through to a new identity
        creds = await self.store.read(self.session_id, CREDS_KEY)
        if creds is None:
            logging.info("no credentials for %s, generating new ones", self.session_id)
            creds = init_auth_creds()
        else:
            logging.info("loaded credentials for %s", self.session_id)
        self.creds = creds
        return AuthState(creds=creds, keys=self)

    async def get(self, category: str, ids: list[str]) -> dict[str, Any]:
        values = await asyncio.gather(
            *(self.store.read(self.session_id, key_name(category, id_)) for id_ in ids)
        )
        decoder = self.key_decoders.get(category)
        return {
            id_: decoder(value) if decoder else value
            for id_, value in zip(ids, values)
            if value is not None
        }

    async def _set_one(self, category: str, id_: str, value: Any) -> None:
        if value is None:
            await self.store.remove(self.session_id, key_name(category, id_))
        else:
            await self.store.write(self.session_id, key_name(category, id_), value)

    async def set(self, data: KeyBatch) -> None:
        triples = [
            (category, id_, value)
            for category, entries in data.items()
            for id_, value in (entries or {}).items()
        ]
        results = await asyncio.gather(
            *(self._set_one(*triple) for triple in triples), return_exceptions=True
        )
        failures = [
            (category, id_, result)
            for (category, id_, _), result in zip(triples, results)
            if isinstance(result, Exception)
        ]
        if failures:
            logging.error(
                "%s of %s key writes failed for %s",
                len(failures),
                len(triples),
                self.session_id,
            )
            raise KeySyncError(failures)

    def swap_credentials(self, creds: dict) -> None:
        "replace the whole in-memory record; never merged"
        self.creds = creds

    async def persist_credentials(self) -> None:
        if self.creds is None:
            raise RuntimeError("credentials were never loaded")
        await self.store.write(self.session_id, CREDS_KEY, self.creds)

    async def delete_session(self) -> None:
        await self.store.delete_session(self.session_id)
        self.creds = None


class SnapshotAuthState:
    """The same contract over one snapshot row: {"creds": ..., "keys": {category: {id: value}}}.
    The snapshot is rewritten on every key batch and credential save."""

    def __init__(
        self,
        store: SnapshotStore,
        session_id: str = "default",
        key_decoders: Optional[dict[str, KeyDecoder]] = None,
    ) -> None:
        self.store = store
        self.session_id = session_id
        self.key_decoders = key_decoders or {}
        self.creds: Optional[dict] = None
        self.keys: KeyBatch = {}
        self.lock = asyncio.Lock()

    async def load(self) -> AuthState:
        snapshot = await self.store.load()
        if snapshot is None:
            logging.info("no credential snapshot, generating new credentials")
            self.creds, self.keys = init_auth_creds(), {}
        else:
            logging.info("loaded credential snapshot")
            self.creds, self.keys = snapshot["creds"], snapshot.get("keys") or {}
        return AuthState(creds=self.creds, keys=self)

    async def get(self, category: str, ids: list[str]) -> dict[str, Any]:
        stored = self.keys.get(category, {})
        decoder = self.key_decoders.get(category)
        return {
            id_: decoder(stored[id_]) if decoder else stored[id_]
            for id_ in ids
            if stored.get(id_) is not None
        }

    async def save(self) -> None:
        async with self.lock:
            await self.store.save({"creds": self.creds, "keys": self.keys})

    async def set(self, data: KeyBatch) -> None:
        for category, entries in data.items():
            stored = self.keys.setdefault(category, {})
            for id_, value in (entries or {}).items():
                if value is None:
                    stored.pop(id_, None)
                else:
                    stored[id_] = value
        await self.save()

    def swap_credentials(self, creds: dict) -> None:
        self.creds = creds

    async def persist_credentials(self) -> None:
        if self.creds is None:
            raise RuntimeError("credentials were never loaded")
        await self.save()

    async def delete_session(self) -> None:
        self.creds, self.keys = None, {}
        await self.store.save(None)
