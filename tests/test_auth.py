"""Token provider tests."""
import pytest

from voice_stream.auth import CallableTokenProvider, StaticTokenProvider
from voice_stream.errors import AuthenticationRequired


@pytest.mark.asyncio
async def test_static_token():
    assert await StaticTokenProvider("tok").get_access_token() == "tok"


@pytest.mark.asyncio
@pytest.mark.parametrize("token", [None, ""])
async def test_static_token_missing(token):
    with pytest.raises(AuthenticationRequired):
        await StaticTokenProvider(token).get_access_token()


@pytest.mark.asyncio
async def test_callable_sync_and_async():
    async def fetch():
        return "async-tok"

    assert await CallableTokenProvider(lambda: "sync-tok").get_access_token() == "sync-tok"
    assert await CallableTokenProvider(fetch).get_access_token() == "async-tok"


@pytest.mark.asyncio
async def test_callable_without_session():
    with pytest.raises(AuthenticationRequired):
        await CallableTokenProvider(lambda: None).get_access_token()
