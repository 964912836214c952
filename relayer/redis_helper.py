import os
from typing import Dict, List, Optional

TESTING = os.getenv("TESTING") == "1"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

if not TESTING:
    import redis.asyncio as redis  # type: ignore
    RedisClient = redis.Redis
else:
    RedisClient = None


def _slice(items: List[str], start: int, end: int) -> List[str]:
    # Redis ranges are inclusive and accept negative indexes
    n = len(items)
    if start < 0:
        start = max(n + start, 0)
    if end < 0:
        end = n + end
    if start > end or start >= n:
        return []
    return items[start:end + 1]


class AsyncInMemoryRedis:
    """Single-process stand-in for the subset of Redis commands the queues use.

    Each command runs without awaiting anything, so under asyncio every command
    is atomic just like on a real server.
    """

    def __init__(self):
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._lists: Dict[str, List[str]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._counters: Dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def aclose(self):
        return None

    async def incr(self, name: str, amount: int = 1) -> int:
        self._counters[name] = self._counters.get(name, 0) + amount
        return self._counters[name]

    # hash methods
    async def hset(self, name: str, key: str, value: str):
        h = self._hashes.setdefault(name, {})
        created = key not in h
        h[key] = value
        return int(created)

    async def hget(self, name: str, key: str) -> Optional[str]:
        h = self._hashes.get(name, {})
        return h.get(key)

    async def hgetall(self, name: str) -> Dict[str, str]:
        return dict(self._hashes.get(name, {}))

    async def hsetnx(self, name: str, key: str, value: str) -> bool:
        h = self._hashes.setdefault(name, {})
        if key in h:
            return False
        h[key] = value
        return True

    async def hincrby(self, name: str, key: str, amount: int = 1) -> int:
        h = self._hashes.setdefault(name, {})
        h[key] = str(int(h.get(key, "0")) + amount)
        return int(h[key])

    async def hdel(self, name: str, *keys: str) -> int:
        h = self._hashes.get(name, {})
        removed = 0
        for k in keys:
            if k in h:
                del h[k]
                removed += 1
        return removed

    # list methods
    async def rpush(self, name: str, *values: str):
        lst = self._lists.setdefault(name, [])
        for v in values:
            lst.append(v)
        return len(lst)

    async def lpush(self, name: str, *values: str):
        lst = self._lists.setdefault(name, [])
        for v in values:
            lst.insert(0, v)
        return len(lst)

    async def lmove(self, first_list: str, second_list: str, src: str = "LEFT", dest: str = "RIGHT") -> Optional[str]:
        source = self._lists.get(first_list, [])
        if not source:
            return None
        value = source.pop(0) if src.upper() == "LEFT" else source.pop()
        target = self._lists.setdefault(second_list, [])
        if dest.upper() == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    async def lrem(self, name: str, count: int, value: str) -> int:
        lst = self._lists.get(name, [])
        removed = 0
        kept = []
        for item in lst:
            if item == value and (count <= 0 or removed < count):
                removed += 1
                continue
            kept.append(item)
        self._lists[name] = kept
        return removed

    async def lrange(self, name: str, start: int, end: int) -> List[str]:
        return list(_slice(self._lists.get(name, []), start, end))

    async def ltrim(self, name: str, start: int, end: int):
        self._lists[name] = list(_slice(self._lists.get(name, []), start, end))
        return True

    async def llen(self, name: str) -> int:
        return len(self._lists.get(name, []))

    # zset methods
    async def zadd(self, name: str, mapping: Dict[str, float]):
        z = self._zsets.setdefault(name, {})
        added = 0
        for member, score in mapping.items():
            if member not in z:
                added += 1
            z[member] = score
        return added

    async def zrangebyscore(self, name: str, min_score: float, max_score: float) -> List[str]:
        z = self._zsets.get(name, {})
        items = sorted(z.items(), key=lambda kv: (kv[1], kv[0]))
        return [m for m, s in items if min_score <= s <= max_score]

    async def zrem(self, name: str, *members: str) -> int:
        z = self._zsets.get(name, {})
        removed = 0
        for m in members:
            if m in z:
                del z[m]
                removed += 1
        return removed

    async def zscore(self, name: str, member: str) -> Optional[float]:
        return self._zsets.get(name, {}).get(member)

    async def zcard(self, name: str) -> int:
        return len(self._zsets.get(name, {}))


# Singleton in-memory client for testing
_inmemory_client: Optional[AsyncInMemoryRedis] = None


async def get_redis(url: Optional[str] = None):
    global _inmemory_client
    if TESTING:
        if _inmemory_client is None:
            _inmemory_client = AsyncInMemoryRedis()
        return _inmemory_client
    else:
        return RedisClient.from_url(url or REDIS_URL, decode_responses=True)  # type: ignore
