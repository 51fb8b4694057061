"""Root conftest for test suite.

Provides an in-memory Redis double for the webhook queue and settings
factories with short timings so worker tests finish quickly.

Integration tests against a real Redis live in tests/integration and skip
themselves when Redis is not reachable.
"""

import fnmatch
import inspect
import math
from typing import Any, Optional

import pytest
from redis.exceptions import WatchError

from webhook_queue.config import Settings


def _encode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    if isinstance(value, float):
        return repr(value)
    return str(value)


def _score(value: Any) -> float:
    if value in ("-inf", "+inf", "inf"):
        return -math.inf if value == "-inf" else math.inf
    return float(value)


class FakeKeyspace:
    """Synchronous implementation of the Redis commands used by the queue.

    Behaves like a client created with decode_responses=True.
    """

    def __init__(self):
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.strings: dict[str, str] = {}

    # Keys

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            for space in (self.hashes, self.zsets, self.strings):
                if space.pop(key, None) is not None:
                    removed += 1
        return removed

    def exists(self, *keys: str) -> int:
        return sum(
            1
            for key in keys
            if key in self.hashes or key in self.zsets or key in self.strings
        )

    def snapshot(self, key: str) -> Any:
        """Copy of a key's value, used to detect writes to watched keys."""
        for space in (self.hashes, self.zsets, self.strings):
            if key in space:
                value = space[key]
                return dict(value) if isinstance(value, dict) else value
        return None

    def keys(self, pattern: str = "*") -> list[str]:
        names = set(self.hashes) | set(self.zsets) | set(self.strings)
        return sorted(name for name in names if fnmatch.fnmatchcase(name, pattern))

    # Strings

    def set(self, key: str, value: Any) -> bool:
        self.strings[key] = _encode(value)
        return True

    def get(self, key: str) -> Optional[str]:
        return self.strings.get(key)

    def incr(self, key: str) -> int:
        value = int(self.strings.get(key, "0")) + 1
        self.strings[key] = str(value)
        return value

    # Hashes

    def hset(
        self,
        key: str,
        field: Optional[str] = None,
        value: Any = None,
        mapping: Optional[dict[str, Any]] = None,
    ) -> int:
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        bucket = self.hashes.setdefault(key, {})
        added = 0
        for name, item in items.items():
            if name not in bucket:
                added += 1
            bucket[name] = _encode(item)
        return added

    def hsetnx(self, key: str, field: str, value: Any) -> bool:
        bucket = self.hashes.setdefault(key, {})
        if field in bucket:
            return False
        bucket[field] = _encode(value)
        return True

    def hget(self, key: str, field: str) -> Optional[str]:
        return self.hashes.get(key, {}).get(field)

    def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    def hdel(self, key: str, *fields: str) -> int:
        bucket = self.hashes.get(key, {})
        removed = sum(1 for name in fields if bucket.pop(name, None) is not None)
        if key in self.hashes and not bucket:
            del self.hashes[key]
        return removed

    # Sorted sets

    def _sorted(self, key: str) -> list[tuple[str, float]]:
        members = self.zsets.get(key, {})
        return sorted(members.items(), key=lambda item: (item[1], item[0]))

    def zadd(
        self,
        key: str,
        mapping: dict[str, Any],
        nx: bool = False,
        xx: bool = False,
        ch: bool = False,
    ) -> int:
        zset = self.zsets.setdefault(key, {})
        added = changed = 0
        for member, score in mapping.items():
            score = float(score)
            if member in zset:
                if nx:
                    continue
                if zset[member] != score:
                    changed += 1
                zset[member] = score
            else:
                if xx:
                    continue
                zset[member] = score
                added += 1
        if not zset:
            del self.zsets[key]
        return added + changed if ch else added

    def zrem(self, key: str, *members: str) -> int:
        zset = self.zsets.get(key, {})
        removed = sum(1 for member in members if zset.pop(member, None) is not None)
        if key in self.zsets and not zset:
            del self.zsets[key]
        return removed

    def zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    def zscore(self, key: str, member: str) -> Optional[float]:
        return self.zsets.get(key, {}).get(member)

    def zpopmin(self, key: str, count: int = 1) -> list[tuple[str, float]]:
        popped = self._sorted(key)[:count]
        for member, _ in popped:
            self.zrem(key, member)
        return popped

    def zrange(self, key: str, start: int, end: int) -> list[str]:
        members = [member for member, _ in self._sorted(key)]
        end = len(members) - 1 if end == -1 else end
        return members[start : end + 1]

    def zrevrange(self, key: str, start: int, end: int) -> list[str]:
        members = [member for member, _ in reversed(self._sorted(key))]
        end = len(members) - 1 if end == -1 else end
        return members[start : end + 1]

    def zrangebyscore(
        self,
        key: str,
        min: Any,
        max: Any,
        start: Optional[int] = None,
        num: Optional[int] = None,
    ) -> list[str]:
        low, high = _score(min), _score(max)
        members = [m for m, score in self._sorted(key) if low <= score <= high]
        if start is not None and num is not None:
            members = members[start : start + num]
        return members

    # Server

    def ping(self) -> bool:
        return True

    def info(self, section: Optional[str] = None) -> dict[str, Any]:
        return {"loading": 0}


class FakePipeline:
    """Buffers commands and runs them in order on execute().

    After watch() commands run immediately until multi() is called, as in
    redis-py. execute() raises WatchError if a watched key changed.
    """

    def __init__(self, client: "FakeRedis"):
        self._client = client
        self._commands: list[tuple[str, tuple, dict]] = []
        self._watched: Optional[dict[str, Any]] = None
        self._buffering = True

    def __getattr__(self, name: str):
        if not hasattr(FakeKeyspace, name):
            raise AttributeError(name)

        if not self._buffering:

            async def run_command(*args, **kwargs):
                self._client._check(name)
                return self._client.keyspace_call(name, args, kwargs)

            return run_command

        def queue_command(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self

        return queue_command

    async def watch(self, *keys: str) -> None:
        self._client._check("watch")
        self._watched = {key: self._client.keyspace.snapshot(key) for key in keys}
        self._buffering = False

    def multi(self) -> None:
        self._buffering = True

    def reset(self) -> None:
        self._commands = []
        self._watched = None
        self._buffering = True

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.reset()

    async def execute(self) -> list[Any]:
        commands, watched = self._commands, self._watched
        self.reset()
        self._client._check("execute")
        if watched and any(
            self._client.keyspace.snapshot(key) != value for key, value in watched.items()
        ):
            raise WatchError("Watched variable changed.")
        return [self._client.keyspace_call(name, args, kwargs) for name, args, kwargs in commands]


class FakeRedis:
    """Async stand-in for redis.asyncio.Redis backed by FakeKeyspace.

    Set `error` to an exception instance to make every command raise it, or
    call fail_next() to make only the next use of one command raise.
    """

    def __init__(self):
        self.keyspace = FakeKeyspace()
        self.error: Optional[BaseException] = None
        self.closed = False
        self._fail_next: dict[str, BaseException] = {}

    def fail_next(self, command: str, error: BaseException) -> None:
        """Raise `error` on the next `command` ("execute" for EXEC)."""
        self._fail_next[command] = error

    def _check(self, command: Optional[str] = None) -> None:
        if self.error is not None:
            raise self.error
        if command in self._fail_next:
            raise self._fail_next.pop(command)

    def keyspace_call(self, name: str, args: tuple, kwargs: dict) -> Any:
        return getattr(self.keyspace, name)(*args, **kwargs)

    def __getattr__(self, name: str):
        if not hasattr(FakeKeyspace, name):
            raise AttributeError(name)

        async def command(*args, **kwargs):
            self._check(name)
            return self.keyspace_call(name, args, kwargs)

        return command

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def transaction(self, func, *watches: str, value_from_callable: bool = False):
        async with self.pipeline(True) as pipe:
            while True:
                try:
                    if watches:
                        await pipe.watch(*watches)
                    value = func(pipe)
                    if inspect.isawaitable(value):
                        value = await value
                    result = await pipe.execute()
                    return value if value_from_callable else result
                except WatchError:
                    continue

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_redis() -> FakeRedis:
    """Fresh in-memory Redis double."""
    return FakeRedis()


def make_settings(**overrides) -> Settings:
    """Settings isolated from .env with fast queue timings."""
    values = {
        "webhook_backoff_delay_ms": 10,
        "webhook_poll_interval_s": 0.01,
        "webhook_shutdown_timeout_s": 2.0,
        "redis_reconnect_step_ms": 10,
        "redis_reconnect_backoff_cap_ms": 50,
        "log_json": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """Build settings with fast timings plus overrides."""
    return make_settings

