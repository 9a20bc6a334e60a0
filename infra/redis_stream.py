# infra/redis_stream.py
import asyncio, json
import redis.asyncio as aioredis
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from utils.logger import logger

FeedCallback = Callable[[Dict[str, Any]], Awaitable[None]]


class RedisStreamsPublisher:
    def __init__(self,
                 dsn: str,
                 stream: str = "order_changes",
                 maxlen_approx: Optional[int] = 100_000
                 ):
        self._dsn = dsn
        self._stream = stream
        self._maxlen = maxlen_approx
        self._redis: Optional[aioredis.Redis] = None
        self._lock = asyncio.Lock()
        logger.info(f"Redis stream {self._stream} publisher initialized.")

    async def _conn(self):
        if self._redis is None:
            async with self._lock:
                if self._redis is None:
                    self._redis = aioredis.from_url(self._dsn, decode_responses=False)
        return self._redis

    async def publish(self, payload: Mapping[str, Any]) -> None:
        r = await self._conn()
        data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        await r.xadd(self._stream, {"data": data}, maxlen=self._maxlen, approximate=True)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class RedisStreamsSubscriber:
    """
    Tails one stream with XREAD and hands entries to the callback one at a
    time, in stream order (the fan-out relies on that order).
    """
    def __init__(
        self,
        dsn: str,
        stream: str = "order_changes",
        *,
        start: str = "now",
        block_ms: int = 5000,
        fetch_count: int = 100,
    ):
        self._dsn = dsn
        self._stream = stream
        self._block_ms = block_ms
        self._fetch_count = fetch_count
        self._r: Optional[aioredis.Redis] = None
        self._stop = False

        if start == "now":
            self._last_id: bytes = b"$"
        elif start == "earliest":
            self._last_id = b"0-0"
        else:
            self._last_id = start.encode() if isinstance(start, str) else start

    async def _conn(self) -> aioredis.Redis:
        if self._r is None:
            self._r = aioredis.from_url(self._dsn, decode_responses=False)
        return self._r

    async def consume(self, on_message: FeedCallback) -> None:
        r = await self._conn()
        while not self._stop:
            try:
                resp = await r.xread({self._stream: self._last_id}, block=self._block_ms, count=self._fetch_count)
                if not resp:
                    continue
                # resp: [(b'stream', [(b'169...-0', {b'data': b'...json...'}), ...])]
                _, entries = resp[0]
                for entry_id, fields in entries:
                    self._last_id = entry_id
                    raw = fields.get(b"data")
                    if not raw:
                        continue
                    try:
                        payload = json.loads(raw)
                    except ValueError:
                        logger.warning(f"[feed] json decode error id={entry_id!r}")
                        continue
                    try:
                        await on_message(payload)
                    except Exception as e:
                        logger.warning(f"[feed] callback error for id={entry_id!r}: {e!r}")

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[feed] loop error: {e!r}")
                await asyncio.sleep(0.5)

    async def stop(self):
        self._stop = True
        if self._r is not None:
            await self._r.aclose()
            self._r = None


class RedisStreamsTransport:
    """Change-feed transport over one Redis stream (publisher + tailing subscriber)."""
    def __init__(self, dsn: str, stream: str = "order_changes", *, start: str = "now"):
        self.publisher = RedisStreamsPublisher(dsn, stream)
        self.subscriber = RedisStreamsSubscriber(dsn, stream, start=start)

    async def publish(self, event: Mapping[str, Any]) -> None:
        await self.publisher.publish(event)

    async def consume(self, on_message: FeedCallback) -> None:
        await self.subscriber.consume(on_message)

    async def stop(self) -> None:
        await self.subscriber.stop()
        await self.publisher.close()
