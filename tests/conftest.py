"""
Shared pytest configuration.

Puts the project root on sys.path so that `import ztoapi` works in all
tests, and provides small in-memory stand-ins used across test modules.
"""

import sys
from pathlib import Path
from typing import Any, Dict, Set

import pytest


ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from ztoapi.settings import Settings  # noqa: E402


def make_settings(**overrides: Any) -> Settings:
    """
    Settings isolated from the developer's environment and .env file.
    """
    values: Dict[str, Any] = {
        "platform_id": "zai",
        "platforms": "zai,zread",
        "model_name": "GLM-4.5",
        "default_key": "sk-test",
        "default_stream": False,
        "enable_thinking": False,
        "think_tags_mode": "strip",
        "upstream_token": "",
        "zai_token": "",
        "token_pool_strategy": "random",
        "anonymous_token_enabled": True,
        "kv_url": None,
        "redis_url": None,
        "model_platform_map": "",
        "upstream_model_id_map": "",
        "response_cache_ttl": 60.0,
        "auth_timeout": 10.0,
        "upstream_timeout": 45.0,
        "dashboard_enabled": True,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeRedis:
    """
    Minimal async Redis replacement covering the commands the gateway uses.
    """

    def __init__(self) -> None:
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.expirations: Dict[str, int] = {}

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def hset(self, key: str, field: str, value: str) -> int:
        bucket = self.hashes.setdefault(key, {})
        added = 0 if field in bucket else 1
        bucket[field] = value
        return added

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        bucket = self.hashes.setdefault(key, {})
        bucket[field] = str(int(bucket.get(field, "0")) + int(amount))
        return int(bucket[field])

    async def sadd(self, key: str, *members: str) -> int:
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def scard(self, key: str) -> int:
        return len(self.sets.get(key, set()))

    async def expire(self, key: str, seconds: int) -> bool:
        self.expirations[key] = seconds
        return True

    async def aclose(self) -> None:
        return None


class BrokenRedis:
    async def hgetall(self, key: str):
        raise ConnectionError("redis is down")


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def broken_redis() -> BrokenRedis:
    return BrokenRedis()


@pytest.fixture
def settings_factory():
    return make_settings
