import os

import pytest

os.environ["ENV"] = "test"

from canopy import pghelp
from canopy.datastore import CredentialStore, RowSerializer, get_auth_interface
from canopy.utils import get_secret

DATABASE_URL = get_secret("TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(not DATABASE_URL, reason="needs TEST_DATABASE_URL")


@pytest.mark.asyncio
async def test_credential_store_against_postgres() -> None:
    store = CredentialStore(
        get_auth_interface(DATABASE_URL, table="auth_data_test"), RowSerializer(encrypt=False)
    )
    try:
        await store.ensure_schema()
        await store.write("bot_1", "auth_creds", {"noiseKey": b"\x01\x02"})
        await store.write("bot_10", "auth_creds", {"registered": True})
        assert await store.read("bot_1", "auth_creds") == {"noiseKey": b"\x01\x02"}
        await store.delete_session("bot_1")
        assert await store.read("bot_1", "auth_creds") is None
        assert await store.read("bot_10", "auth_creds") == {"registered": True}
        await store.delete_session("bot_10")
    finally:
        await pghelp.close_pools()
