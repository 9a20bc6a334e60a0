# infra/__init__.py
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Protocol, Mapping, Any, Optional, Sequence, List

from infra.http_client import HttpClient


# ========== 1) port: services depend on this, not on HttpClient ==========
class RpcPort(Protocol):
    async def call(self, method: str, params: Optional[Sequence[Any]] = None, *,
                   timeout_ms: Optional[int] = None, retry: bool = False) -> Any: ...
    async def ping(self) -> bool: ...


# ========== 2) background task: oracle liveness probe ==========
async def _periodic_probe(container: "HttpContainer", interval_sec: float = 30.0) -> None:
    while True:
        try:
            container.healthy = await container.http.ping()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            container.healthy = False
            container.http.log.warning("Oracle probe failed: %s", e)
        await asyncio.sleep(interval_sec)


# ========== 3) container: create / probe / close ==========
class HttpContainer:
    """
    Owns the JSON-RPC HttpClient and its liveness probe.
    - the composition root holds it
    - services get container.http injected
    An unreachable oracle at startup is not fatal; readiness reports it.
    """
    def __init__(self, http: HttpClient, tasks: List[asyncio.Task]) -> None:
        self.http = http
        self.healthy: Optional[bool] = None
        self._tasks = tasks

    @classmethod
    async def start(cls,
                    cfg: Mapping[str, Any],
                    logger: Optional[logging.Logger] = None,
                    *,
                    probe_interval_sec: float = 30.0
                    ) -> "HttpContainer":
        http = HttpClient(cfg, logger=logger)
        self = cls(http, tasks=[])
        self.healthy = await http.ping()
        if not self.healthy:
            http.log.warning("Oracle %s not reachable at startup", http.rpc_url)
        self._tasks.append(asyncio.create_task(_periodic_probe(self, probe_interval_sec), name="oracle-probe"))
        return self

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
            with contextlib.suppress(Exception, asyncio.CancelledError):
                await t
        self._tasks.clear()
        await self.http.close()


# ========== 4) health check (startup / ready probes) ==========
async def http_healthcheck(http: RpcPort) -> bool:
    try:
        return await http.ping()
    except Exception:
        return False
