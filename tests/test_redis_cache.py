"""Unit tests for RedisCache with the redis client replaced by mocks."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gatehouse.storage.errors import CredentialStoreError
from gatehouse.storage.redis_cache import RedisCache, session_key, user_sessions_key


def _cache_with_client(client) -> RedisCache:
    cache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://test"
    cache.client = client
    cache._token_bucket = AsyncMock(return_value=[1, 4, 0])
    return cache


def _pipeline_client():
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[True, 1, True])
    client = MagicMock()
    client.pipeline.return_value = pipe
    return client, pipe


def test_key_layout():
    assert session_key("abc") == "sess:abc"
    assert user_sessions_key("u1") == "user:u1:sessions"


async def test_save_session_writes_record_and_index_in_one_pipeline():
    client, pipe = _pipeline_client()
    cache = _cache_with_client(client)

    await cache.save_session("tok", "u1", "{}", 86400)

    pipe.set.assert_called_once_with("sess:tok", "{}", ex=86400)
    pipe.sadd.assert_called_once_with("user:u1:sessions", "tok")
    pipe.expire.assert_called_once_with("user:u1:sessions", 86400)
    pipe.execute.assert_awaited_once()


async def test_delete_session_removes_index_entry():
    client, pipe = _pipeline_client()
    cache = _cache_with_client(client)

    await cache.delete_session("tok", "u1")

    pipe.srem.assert_called_once_with("user:u1:sessions", "tok")
    pipe.delete.assert_called_once_with("sess:tok")


async def test_delete_user_sessions_counts_tokens():
    client, pipe = _pipeline_client()
    client.smembers = AsyncMock(return_value={"a", "b"})
    cache = _cache_with_client(client)

    assert await cache.delete_user_sessions("u1") == 2
    deleted_keys = set(pipe.delete.call_args_list[0].args)
    assert deleted_keys == {"sess:a", "sess:b"}
    pipe.delete.assert_any_call("user:u1:sessions")


async def test_delete_user_sessions_without_index():
    client, pipe = _pipeline_client()
    client.smembers = AsyncMock(return_value=set())
    cache = _cache_with_client(client)

    assert await cache.delete_user_sessions("u1") == 0
    pipe.execute.assert_not_awaited()


async def test_connection_errors_become_credential_store_errors():
    client = MagicMock()
    client.get = AsyncMock(side_effect=RedisConnectionError("refused"))
    cache = _cache_with_client(client)

    with pytest.raises(CredentialStoreError):
        await cache.get_session_payload("tok")


async def test_rate_limit_keys_are_hashed():
    cache = _cache_with_client(MagicMock())

    allowed, remaining, reset = await cache.check_rate_limit(
        "login:10.0.0.1", 5, 900, return_remaining=True
    )

    assert (allowed, remaining, reset) == (True, 4, 0)
    keys = cache._token_bucket.await_args.kwargs["keys"]
    assert keys[0].startswith("rate:")
    assert "10.0.0.1" not in keys[0]
