"""
Key-value storage for ledger entries, entity records, secondary indexes and
rate-limit counters.

The REST backend talks to a Redis-compatible REST API (Upstash / Vercel KV) so
state persists across independently scheduled worker invocations. Conditional
writes are the only concurrency control: ``SET NX`` for creation and a
version-checked compare-and-set script for updates.
"""
import json
import time
import httpx
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ConflictError, PersistenceError
from .settings import KV_REST_API_URL, KV_REST_API_TOKEN

logger = logging.getLogger(__name__)

_CAS_SCRIPT = """
local cur = redis.call('GET', KEYS[1])
if not cur then return 0 end
local doc = cjson.decode(cur)
if tonumber(doc['version']) ~= tonumber(ARGV[1]) then return 0 end
redis.call('SET', KEYS[1], ARGV[2])
return 1
"""

# KEYS: current window, previous window. ARGV: previous weight, limit, ttl.
# Only counts the call when it fits; the estimate is returned as a string
# because Lua numbers come back from Redis truncated to integers.
_SLIDING_WINDOW_SCRIPT = """
local previous = tonumber(redis.call('GET', KEYS[2]) or '0')
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local estimate = previous * tonumber(ARGV[1]) + current + 1
if estimate > tonumber(ARGV[2]) then return {0, tostring(estimate)} end
local v = redis.call('INCR', KEYS[1])
if v == 1 then redis.call('EXPIRE', KEYS[1], ARGV[3]) end
return {1, tostring(estimate)}
"""


class RestKVStorage:
    def __init__(self, url: str, token: str, timeout: float = 10):
        self.kv_rest_api_url = url.rstrip("/")
        self.kv_rest_api_token = token
        self.timeout = timeout
        logger.info("KV storage enabled")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.kv_rest_api_token}",
            "Content-Type": "application/json"
        }

    async def _command(self, *args: Any) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.kv_rest_api_url,
                    headers=self._headers(),
                    json=[str(a) for a in args]
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"KV command {args[0]} failed: {e}")
            raise PersistenceError(f"KV command {args[0]} failed: {e}") from e
        if data.get("error"):
            logger.error(f"KV command {args[0]} returned error: {data['error']}")
            raise PersistenceError(f"KV command {args[0]} returned error: {data['error']}")
        return data.get("result")

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        result = await self._command("GET", key)
        if result is None:
            return None
        return json.loads(result)

    async def put(self, key: str, doc: Dict[str, Any], only_if_absent: bool = False) -> bool:
        args = ["SET", key, json.dumps(doc)]
        if only_if_absent:
            args.append("NX")
        result = await self._command(*args)
        # SET NX answers null when the key already exists
        return result == "OK"

    async def compare_and_set(self, key: str, expected_version: int, doc: Dict[str, Any]) -> bool:
        result = await self._command("EVAL", _CAS_SCRIPT, 1, key, expected_version, json.dumps(doc))
        return int(result or 0) == 1

    async def add_to_index(self, index_key: str, member: str) -> None:
        await self._command("SADD", index_key, member)

    async def index_members(self, index_key: str) -> List[str]:
        result = await self._command("SMEMBERS", index_key)
        return list(result or [])

    async def incr_within_limit(self, key: str, previous_key: str, previous_weight: float,
                                limit: int, ttl_s: int) -> Tuple[bool, float]:
        allowed, estimate = await self._command(
            "EVAL", _SLIDING_WINDOW_SCRIPT, 2, key, previous_key, previous_weight, limit, ttl_s
        )
        return int(allowed) == 1, float(estimate)

    async def get_counter(self, key: str) -> int:
        result = await self._command("GET", key)
        return int(result) if result is not None else 0


class InMemoryKVStorage:
    """Single-process stand-in. Every operation completes without awaiting, so it is atomic on one event loop."""

    def __init__(self, clock=time.time):
        self._data: Dict[str, str] = {}
        self._indexes: Dict[str, set] = {}
        self._counters: Dict[str, int] = {}
        self._expiry: Dict[str, float] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, doc: Dict[str, Any], only_if_absent: bool = False) -> bool:
        if only_if_absent and key in self._data:
            return False
        self._data[key] = json.dumps(doc)
        return True

    async def compare_and_set(self, key: str, expected_version: int, doc: Dict[str, Any]) -> bool:
        raw = self._data.get(key)
        if raw is None or json.loads(raw).get("version") != expected_version:
            return False
        self._data[key] = json.dumps(doc)
        return True

    async def add_to_index(self, index_key: str, member: str) -> None:
        self._indexes.setdefault(index_key, set()).add(member)

    async def index_members(self, index_key: str) -> List[str]:
        return sorted(self._indexes.get(index_key, set()))

    def _expire(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._counters.pop(key, None)
            self._expiry.pop(key, None)

    async def incr_within_limit(self, key: str, previous_key: str, previous_weight: float,
                                limit: int, ttl_s: int) -> Tuple[bool, float]:
        estimate = await self.get_counter(previous_key) * previous_weight + await self.get_counter(key) + 1
        if estimate > limit:
            return False, estimate
        value = self._counters.get(key, 0) + 1
        self._counters[key] = value
        if value == 1:
            self._expiry[key] = self._clock() + ttl_s
        return True, estimate

    async def get_counter(self, key: str) -> int:
        self._expire(key)
        return self._counters.get(key, 0)


def create_kv_storage():
    if not KV_REST_API_URL or not KV_REST_API_TOKEN:
        logger.warning("KV storage not configured - falling back to in-memory storage")
        return InMemoryKVStorage()
    return RestKVStorage(KV_REST_API_URL, KV_REST_API_TOKEN)


async def update_versioned(kv, key: str, apply: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]], attempts: int = 5) -> Optional[Dict[str, Any]]:
    """
    Read-modify-write a stored record guarded by its ``version``.

    ``apply`` receives a copy of the current document and returns the new one,
    or None to leave the record untouched. Returns the stored document, or None
    when the key does not exist.
    """
    for _ in range(attempts):
        current = await kv.get(key)
        if current is None:
            return None
        updated = apply(dict(current))
        if updated is None:
            return current
        expected = current.get("version", 0)
        updated["version"] = expected + 1
        if await kv.compare_and_set(key, expected, updated):
            return updated
        logger.warning(f"Concurrent update on {key} (version {expected}); retrying")
    raise ConflictError(f"Too many concurrent updates on {key}", code="CONCURRENT_UPDATE")
