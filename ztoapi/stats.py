"""
Request statistics.

Counters are kept in memory per process and read by the /dashboard JSON
endpoints. When Redis is configured, hourly aggregates are also written
there by a background worker fed through an asyncio.Queue, so the request
path never waits on the store.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, List, Optional

from redis.asyncio import Redis

from ztoapi.logging_config import logger

HOURLY_KEY_TEMPLATE = "stats:hourly:{hour}"
HOURLY_IPS_KEY_TEMPLATE = "stats:hourly:{hour}:ips"
HOURLY_TTL_SECONDS = 7 * 24 * 3600
LIVE_REQUESTS_CAPACITY = 100
QUEUE_MAX_SIZE = 1000


@dataclass
class StatsEvent:
    duration_ms: float
    status: int
    model: str
    is_streaming: bool = False
    message_count: int = 0
    token_count: int = 0
    client_ip: str = "unknown"
    path: str = "/v1/chat/completions"
    method: str = "POST"
    user_agent: str = ""
    timestamp: float = field(default_factory=time.time)

    @property
    def success(self) -> bool:
        return self.status < 400


@dataclass
class RequestStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_response_time_ms: float = 0.0
    fastest_response_ms: Optional[float] = None
    slowest_response_ms: Optional[float] = None
    streaming_requests: int = 0
    non_streaming_requests: int = 0
    total_tokens: int = 0
    total_messages: int = 0
    chat_requests: int = 0
    models_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    model_usage: Dict[str, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    last_request_at: Optional[float] = None

    @property
    def average_response_ms(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.total_response_time_ms / self.total_requests

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["average_response_ms"] = round(self.average_response_ms, 2)
        data["uptime_seconds"] = round(time.time() - self.started_at, 1)
        return data


def hour_bucket(timestamp: float) -> str:
    return dt.datetime.fromtimestamp(timestamp, tz=dt.timezone.utc).strftime("%Y-%m-%d-%H")


class StatsRecorder:
    def __init__(self, *, live_capacity: int = LIVE_REQUESTS_CAPACITY) -> None:
        self.stats = RequestStats()
        self.live: Deque[StatsEvent] = deque(maxlen=live_capacity)
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._redis: Optional[Redis] = None

    def record(self, event: StatsEvent) -> None:
        s = self.stats
        s.total_requests += 1
        if event.success:
            s.successful_requests += 1
        else:
            s.failed_requests += 1
        s.total_response_time_ms += event.duration_ms
        if s.fastest_response_ms is None or event.duration_ms < s.fastest_response_ms:
            s.fastest_response_ms = event.duration_ms
        if s.slowest_response_ms is None or event.duration_ms > s.slowest_response_ms:
            s.slowest_response_ms = event.duration_ms
        if event.is_streaming:
            s.streaming_requests += 1
        else:
            s.non_streaming_requests += 1
        s.total_tokens += event.token_count
        s.total_messages += event.message_count
        if event.path.endswith("/models"):
            s.models_requests += 1
        else:
            s.chat_requests += 1
        if event.model:
            s.model_usage[event.model] = s.model_usage.get(event.model, 0) + 1
        s.last_request_at = event.timestamp
        self.live.append(event)
        self._dispatch(event)

    def record_cache(self, hit: bool) -> None:
        if hit:
            self.stats.cache_hits += 1
        else:
            self.stats.cache_misses += 1

    def _dispatch(self, event: StatsEvent) -> None:
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("stats queue full, dropping event for %s", event.model)

    async def start(self, redis: Optional[Redis]) -> None:
        if redis is None or self._worker is not None:
            return
        self._redis = redis
        self._queue = asyncio.Queue(maxsize=QUEUE_MAX_SIZE)
        self._worker = asyncio.create_task(self._run())

    async def flush(self) -> None:
        """
        Wait until every queued event has been persisted.
        """
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                await persist_hourly(self._redis, event)
            except Exception as exc:
                logger.warning("Failed to persist hourly stats: %s", exc)
            finally:
                self._queue.task_done()

    def recent(self, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        page = max(page, 1)
        page_size = min(max(page_size, 1), LIVE_REQUESTS_CAPACITY)
        items = list(reversed(self.live))
        start = (page - 1) * page_size
        return {
            "data": [asdict(e) for e in items[start : start + page_size]],
            "total": len(items),
            "page": page,
            "pageSize": page_size,
            "totalPages": (len(items) + page_size - 1) // page_size,
        }


async def persist_hourly(redis: Redis, event: StatsEvent) -> None:
    hour = hour_bucket(event.timestamp)
    key = HOURLY_KEY_TEMPLATE.format(hour=hour)
    await redis.hincrby(key, "requests", 1)
    await redis.hincrby(key, "success" if event.success else "failed", 1)
    await redis.hincrby(key, "streaming" if event.is_streaming else "non_streaming", 1)
    await redis.hincrby(key, "total_response_ms", int(event.duration_ms))
    await redis.hincrby(key, "tokens", event.token_count)
    await redis.hincrby(key, "messages", event.message_count)
    if event.model:
        await redis.hincrby(key, f"model:{event.model}", 1)
    if not event.success:
        await redis.hincrby(key, f"error:{event.status}", 1)
    await redis.expire(key, HOURLY_TTL_SECONDS)

    ips_key = HOURLY_IPS_KEY_TEMPLATE.format(hour=hour)
    await redis.sadd(ips_key, event.client_ip)
    await redis.expire(ips_key, HOURLY_TTL_SECONDS)


async def load_hourly(redis: Redis, hours: int = 24, now: Optional[float] = None) -> List[Dict[str, Any]]:
    now = now if now is not None else time.time()
    result: List[Dict[str, Any]] = []
    for offset in range(max(hours, 1) - 1, -1, -1):
        hour = hour_bucket(now - offset * 3600)
        raw = await redis.hgetall(HOURLY_KEY_TEMPLATE.format(hour=hour)) or {}
        counters = {k: int(v) for k, v in raw.items()}
        requests = counters.get("requests", 0)
        models = {k[len("model:"):]: v for k, v in counters.items() if k.startswith("model:")}
        errors = {k[len("error:"):]: v for k, v in counters.items() if k.startswith("error:")}
        result.append(
            {
                "hour": hour,
                "requests": requests,
                "success": counters.get("success", 0),
                "failed": counters.get("failed", 0),
                "avgResponseTime": round(counters.get("total_response_ms", 0) / requests, 2)
                if requests
                else 0,
                "tokens": counters.get("tokens", 0),
                "streamingCount": counters.get("streaming", 0),
                "nonStreamingCount": counters.get("non_streaming", 0),
                "totalMessages": counters.get("messages", 0),
                "uniqueIPs": await redis.scard(HOURLY_IPS_KEY_TEMPLATE.format(hour=hour)),
                "models": models,
                "errorTypes": errors,
            }
        )
    return result


__all__ = [
    "RequestStats",
    "StatsEvent",
    "StatsRecorder",
    "hour_bucket",
    "load_hourly",
    "persist_hourly",
]
