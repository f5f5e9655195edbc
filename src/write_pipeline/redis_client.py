"""
Redis-backed counter store for rate-limit counters and idempotency records.

Follows a start/stop lifecycle. Multi-step atomic operations (increment with
TTL, compare-and-set) run as Lua scripts loaded once and executed by SHA.
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import NoScriptError, RedisError

from write_pipeline.logging_utils import create_service_logger
from write_pipeline.protocols import CounterStoreProtocol, CounterStoreUnavailableError

logger = create_service_logger("write_pipeline.redis_client")

INCR_WITH_TTL_SCRIPT = """
local value = redis.call('INCRBY', KEYS[1], ARGV[1])
if redis.call('TTL', KEYS[1]) == -1 then
    redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return value
"""

COMPARE_AND_SET_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if ARGV[4] == '1' then
    if current then
        return 0
    end
elseif current ~= ARGV[1] then
    return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
return 1
"""


class RedisCounterStore(CounterStoreProtocol):
    """Counter store over redis.asyncio; Redis failures surface as CounterStoreUnavailableError."""

    def __init__(self, *, client_id: str, redis_url: str) -> None:
        self.redis_url = redis_url
        self.client_id = client_id
        self.client = aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        self._started = False
        self._script_shas: dict[str, str] = {}

    async def start(self) -> None:
        """Verify connectivity and load the Lua scripts."""
        if self._started:
            return
        try:
            await self.client.ping()
            self._script_shas["incr_with_ttl"] = await self.client.script_load(
                INCR_WITH_TTL_SCRIPT
            )
            self._script_shas["compare_and_set"] = await self.client.script_load(
                COMPARE_AND_SET_SCRIPT
            )
            self._started = True
            logger.info(f"Redis counter store '{self.client_id}' connected to {self.redis_url}")
        except RedisError as e:
            logger.error(f"Redis counter store '{self.client_id}' failed to connect: {e}")
            raise CounterStoreUnavailableError(str(e)) from e

    async def stop(self) -> None:
        if not self._started:
            return
        try:
            await self.client.aclose()
            self._started = False
            logger.info(f"Redis counter store '{self.client_id}' disconnected")
        except Exception as e:
            logger.error(
                f"Error stopping Redis counter store '{self.client_id}': {e}",
                exc_info=True,
            )

    async def _ensure_started(self) -> None:
        if not self._started:
            logger.warning(f"Redis store '{self.client_id}' not started. Attempting to start.")
            await self.start()

    async def _execute_script(
        self, name: str, script_body: str, keys: list[str], args: list[Any]
    ) -> Any:
        try:
            return await self.client.evalsha(self._script_shas[name], len(keys), *keys, *args)
        except NoScriptError:
            # Script cache was flushed (restart, SCRIPT FLUSH); reload once
            logger.warning(f"Lua script '{name}' missing on server, reloading")
            self._script_shas[name] = await self.client.script_load(script_body)
            return await self.client.evalsha(self._script_shas[name], len(keys), *keys, *args)

    async def get(self, key: str) -> str | None:
        await self._ensure_started()
        try:
            value = await self.client.get(key)
            logger.debug(
                f"Redis GET by '{self.client_id}': key='{key}' "
                f"result={'HIT' if value is not None else 'MISS'}",
            )
            return str(value) if value is not None else None
        except RedisError as e:
            logger.error(f"Error in Redis GET by '{self.client_id}' for key '{key}': {e}")
            raise CounterStoreUnavailableError(str(e)) from e

    async def set_if_not_exists(self, key: str, value: str, ttl_seconds: int) -> bool:
        await self._ensure_started()
        try:
            result = await self.client.set(key, value, ex=ttl_seconds, nx=True)
            success = bool(result)
            logger.debug(
                f"Redis SETNX by '{self.client_id}': key='{key}' "
                f"ttl={ttl_seconds}s result={'SET' if success else 'EXISTS'}",
            )
            return success
        except RedisError as e:
            logger.error(f"Error in Redis SETNX by '{self.client_id}' for key '{key}': {e}")
            raise CounterStoreUnavailableError(str(e)) from e

    async def compare_and_set(
        self,
        key: str,
        expected: str | None,
        new_value: str,
        ttl_seconds: int,
    ) -> bool:
        await self._ensure_started()
        try:
            result = await self._execute_script(
                "compare_and_set",
                COMPARE_AND_SET_SCRIPT,
                keys=[key],
                args=[expected or "", new_value, ttl_seconds, "1" if expected is None else "0"],
            )
            logger.debug(f"Redis CAS by '{self.client_id}': key='{key}' swapped={bool(result)}")
            return bool(result)
        except RedisError as e:
            logger.error(f"Error in Redis CAS by '{self.client_id}' for key '{key}': {e}")
            raise CounterStoreUnavailableError(str(e)) from e

    async def incr_with_ttl(self, key: str, amount: int, ttl_seconds: int) -> int:
        await self._ensure_started()
        try:
            value = await self._execute_script(
                "incr_with_ttl",
                INCR_WITH_TTL_SCRIPT,
                keys=[key],
                args=[amount, ttl_seconds],
            )
            return int(value)
        except RedisError as e:
            logger.error(f"Error in Redis INCRBY by '{self.client_id}' for key '{key}': {e}")
            raise CounterStoreUnavailableError(str(e)) from e

    async def delete_key(self, key: str) -> int:
        await self._ensure_started()
        try:
            deleted_count = await self.client.delete(key)
            logger.debug(f"Redis DELETE by '{self.client_id}': key='{key}' deleted={deleted_count}")
            return int(deleted_count)
        except RedisError as e:
            logger.error(f"Error deleting Redis key '{key}' by '{self.client_id}': {e}")
            raise CounterStoreUnavailableError(str(e)) from e

    async def scan_pattern(self, pattern: str) -> list[str]:
        await self._ensure_started()
        try:
            keys: list[str] = []
            cursor = 0
            while True:
                cursor, batch_keys = await self.client.scan(cursor=cursor, match=pattern, count=100)
                keys.extend(batch_keys)
                if cursor == 0:
                    break
            logger.debug(f"Redis SCAN by '{self.client_id}': pattern='{pattern}' found={len(keys)}")
            return keys
        except RedisError as e:
            logger.error(f"Error in Redis SCAN by '{self.client_id}' for '{pattern}': {e}")
            raise CounterStoreUnavailableError(str(e)) from e

    async def ping(self) -> bool:
        try:
            await self._ensure_started()
            return bool(await self.client.ping())
        except (RedisError, CounterStoreUnavailableError) as e:
            logger.error(f"Error in Redis PING by '{self.client_id}': {e}")
            return False
