#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team

import argparse
import asyncio
import logging
from typing import Any, Callable, Optional, Union

import asyncpg

from canopy import codec, cryptography, pghelp, utils

CREDS_KEY = "auth_creds"
SESSION_SEPARATOR = ":"
# there is only ever one snapshot row
SNAPSHOT_ROW = 1


class StorageError(Exception):
    pass


AuthPGExpressions = pghelp.PGExpressions(
    table="auth_data",
    create_table="CREATE TABLE IF NOT EXISTS {self.table} \
            (session_key VARCHAR(255) PRIMARY KEY, \
            data TEXT NOT NULL);",
    upsert="INSERT INTO {self.table} (session_key, data) VALUES ($1, $2) \
            ON CONFLICT (session_key) DO UPDATE SET data = EXCLUDED.data;",
    get="SELECT data FROM {self.table} WHERE session_key=$1;",
    remove="DELETE FROM {self.table} WHERE session_key=$1;",
    # plain prefix comparison so _ and % in session ids aren't wildcards
    delete_session="DELETE FROM {self.table} \
            WHERE left(session_key, char_length($1)) = $1;",
    list_sessions="SELECT split_part(session_key, ':', 1) AS session_id, \
            count(*) AS keys FROM {self.table} GROUP BY 1 ORDER BY 1;",
)

SnapshotPGExpressions = pghelp.PGExpressions(
    table="auth_snapshot",
    create_table="CREATE TABLE IF NOT EXISTS {self.table} \
            (id INTEGER PRIMARY KEY, \
            data TEXT NOT NULL);",
    save="INSERT INTO {self.table} (id, data) VALUES ($1, $2) \
            ON CONFLICT (id) DO UPDATE SET data = EXCLUDED.data;",
    load="SELECT data FROM {self.table} WHERE id=$1;",
)

DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def get_auth_interface(
    database: Union[str, dict, None] = None, table: Optional[str] = None
) -> pghelp.PGInterface:
    return pghelp.PGInterface(
        query_strings=AuthPGExpressions.with_table(table or utils.AUTH_TABLE),
        database=utils.get_secret("DATABASE_URL") if database is None else database,
    )


def get_snapshot_interface(
    database: Union[str, dict, None] = None, table: Optional[str] = None
) -> pghelp.PGInterface:
    return pghelp.PGInterface(
        query_strings=SnapshotPGExpressions.with_table(table or utils.SNAPSHOT_TABLE),
        database=utils.get_secret("DATABASE_URL") if database is None else database,
    )


def first_value(rows: Optional[list], column: str = "data") -> Optional[str]:
    "rows come back as asyncpg.Records or, in fake mode, whatever was canned"
    if not rows or not rows[0]:
        return None
    return rows[0].get(column)


class RowSerializer:
    """codec json, optionally encrypted at rest"""

    def __init__(self, encrypt: Optional[bool] = None, legacy: Optional[bool] = None) -> None:
        if encrypt is None:
            encrypt = bool(utils.get_secret("ENCRYPT_AUTH"))
        if legacy is None:
            # stores first written by a Node bridge hold Buffer shapes
            legacy = bool(utils.get_secret("LEGACY_BUFFERS"))
        self.encrypt = encrypt
        self.legacy = legacy

    def serialize(self, value: Any) -> str:
        serialized = codec.dumps(value)
        if self.encrypt:
            return cryptography.get_ciphertext_value(serialized)
        return serialized

    def deserialize(self, data: str) -> Any:
        if self.encrypt:
            try:
                data = cryptography.get_cleartext_value(data)
            except (ValueError, KeyError, OSError) as e:
                # wrong AESKEY, plaintext row or corruption all end up here
                raise codec.CodecError(f"couldn't decrypt stored value: {e}") from e
        return codec.loads(data, self.legacy)


class CredentialStore:
    """
    Durable storage for session credentials and key material,
    one row per (session id, logical key)
    """

    def __init__(
        self,
        interface: Optional[pghelp.PGInterface] = None,
        serializer: Optional[RowSerializer] = None,
    ) -> None:
        self.interface = interface or get_auth_interface()
        self.serializer = serializer or RowSerializer()

    @staticmethod
    def row_key(session_id: str, key: str) -> str:
        if not session_id or SESSION_SEPARATOR in session_id:
            raise ValueError(f"invalid session id {session_id!r}")
        return f"{session_id}{SESSION_SEPARATOR}{key}"

    async def ensure_schema(self) -> None:
        "safe to call on every startup"
        try:
            await self.interface.create_table()
        except DRIVER_ERRORS as e:
            raise StorageError(f"couldn't create {self.interface.table}: {e}") from e

    async def write(self, session_id: str, key: str, value: Any) -> None:
        row_key = self.row_key(session_id, key)
        data = self.serializer.serialize(value)
        try:
            await self.interface.upsert(row_key, data)
        except DRIVER_ERRORS as e:
            raise StorageError(f"couldn't write {row_key}: {e}") from e
        logging.debug("wrote %s (%s chars)", row_key, len(data))

    async def read(self, session_id: str, key: str) -> Any:
        row_key = self.row_key(session_id, key)
        try:
            rows = await self.interface.get(row_key)
        except DRIVER_ERRORS as e:
            raise StorageError(f"couldn't read {row_key}: {e}") from e
        data = first_value(rows)
        if data is None:
            return None
        return self.serializer.deserialize(data)

    async def remove(self, session_id: str, key: str) -> None:
        row_key = self.row_key(session_id, key)
        try:
            await self.interface.remove(row_key)
        except DRIVER_ERRORS as e:
            raise StorageError(f"couldn't remove {row_key}: {e}") from e

    async def delete_session(self, session_id: str) -> None:
        """Removes every row under the session. Only for logout, never for disconnects."""
        prefix = self.row_key(session_id, "")
        try:
            await self.interface.delete_session(prefix)
        except DRIVER_ERRORS as e:
            raise StorageError(f"couldn't delete session {session_id}: {e}") from e
        logging.info("deleted all stored keys for session %s", session_id)

    async def list_sessions(self) -> list[tuple[str, int]]:
        try:
            rows = await self.interface.list_sessions()
        except DRIVER_ERRORS as e:
            raise StorageError(f"couldn't list sessions: {e}") from e
        return [
            (row.get("session_id"), row.get("keys")) for row in (rows or []) if row
        ]


class SnapshotStore:
    """Single row holding the whole serialized state, replaced wholesale on each save.
    Enough for a deployment with exactly one session."""

    def __init__(
        self,
        interface: Optional[pghelp.PGInterface] = None,
        serializer: Optional[RowSerializer] = None,
    ) -> None:
        self.interface = interface or get_snapshot_interface()
        self.serializer = serializer or RowSerializer()

    async def ensure_schema(self) -> None:
        try:
            await self.interface.create_table()
        except DRIVER_ERRORS as e:
            raise StorageError(f"couldn't create {self.interface.table}: {e}") from e

    async def save(self, value: Any) -> None:
        data = self.serializer.serialize(value)
        try:
            await self.interface.save(SNAPSHOT_ROW, data)
        except DRIVER_ERRORS as e:
            raise StorageError(f"couldn't save snapshot: {e}") from e
        logging.debug("saved %s chars of snapshot", len(data))

    async def load(self) -> Any:
        try:
            rows = await self.interface.load(SNAPSHOT_ROW)
        except DRIVER_ERRORS as e:
            raise StorageError(f"couldn't load snapshot: {e}") from e
        data = first_value(rows)
        if data is None:
            return None
        return self.serializer.deserialize(data)


parser = argparse.ArgumentParser(
    description="manage stored session credentials. use ENV=... to use something other than dev"
)
subparser = parser.add_subparsers(dest="subparser")

# h/t https://gist.github.com/mivade/384c2c41c3a29c637cb6c603d4197f9f


def argument(*name_or_flags: Any, **kwargs: Any) -> tuple:
    """Convenience function to properly format arguments to pass to the
    subcommand decorator.
    """
    return (list(name_or_flags), kwargs)


def subcommand(
    _args: Optional[list] = None, parent: argparse._SubParsersAction = subparser
) -> Callable:
    """Decorator to define a new subcommand in a sanity-preserving way.
    The function will be stored in the ``func`` variable when the parser
    parses arguments so that it can be called directly like so::
        args = cli.parse_args()
        args.func(args)
    """

    def decorator(func: Callable) -> Callable:
        _parser = parent.add_parser(func.__name__, description=func.__doc__)
        for arg in _args if _args else []:
            _parser.add_argument(*arg[0], **arg[1])
        _parser.set_defaults(func=func)
        return func

    return decorator


@subcommand()
async def create_table(_args: argparse.Namespace) -> None:
    "create the credential table if it doesn't exist"
    await CredentialStore().ensure_schema()


@subcommand()
async def list_sessions(_args: argparse.Namespace) -> None:
    "list stored sessions and how many keys each has"
    table = [["session", "keys"]] + [
        [session_id, str(count)]
        for session_id, count in await CredentialStore().list_sessions()
    ]
    widths = [max(len(row[index]) for row in table) for index in range(2)]
    row_format = " ".join("{:<" + str(width) + "}" for width in widths)
    for row in table:
        print(row_format.format(*row).rstrip())


@subcommand([argument("--session", required=True)])
async def delete_session(ns: argparse.Namespace) -> None:
    "log a session out for good: delete its credentials and keys"
    await CredentialStore().delete_session(ns.session)


async def main(args: argparse.Namespace) -> None:
    try:
        await args.func(args)
    finally:
        await pghelp.close_pools()


def cli(argv: Optional[list[str]] = None) -> None:
    cli_args = parser.parse_args(argv)
    if hasattr(cli_args, "func"):
        asyncio.run(main(cli_args))
    else:
        parser.print_help()


if __name__ == "__main__":
    cli()
