# infra/http_client.py
from __future__ import annotations

import aiohttp
import asyncio
import itertools
import json
import random
from typing import Any, Dict, Mapping, Optional, Sequence
import logging
from utils.logger import logger

JSON_SEPARATORS = (",", ":")


class HttpError(Exception):
    def __init__(self, status: int, message: str, payload: Optional[dict] = None):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.payload = payload or {}


class JsonRpcError(Exception):
    def __init__(self, code: Any, msg: str, payload: dict | None = None):
        self.code = code
        self.msg = msg
        self.payload = payload or {}
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        base = f"JSON-RPC code={self.code}, msg={self.msg}"
        data = (self.payload.get("error") or {}).get("data")
        if data:
            base += f", data={data}"
        return base


def _json_dumps_compact(obj: Any) -> str:
    return json.dumps(obj, separators=JSON_SEPARATORS, ensure_ascii=False)


class HttpClient:
    """
    Minimal JSON-RPC 2.0 client over aiohttp for the ledger endpoint.

    Retries are opt-in per call (`retry=True`); the reconciler owns the retry
    policy for oracle reads, so those calls go out with retry disabled.
    """
    def __init__(self,
                 cfg: Mapping[str, Any],
                 logger: Optional[logging.Logger] = None,
                 *,
                 timeout_ms: Optional[int] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 ) -> None:
        self.cfg = cfg
        self.log = logger or logging.getLogger("HttpClient")
        self.session = session
        self._owned_session = session is None

        oracle_cfg = cfg.get("oracle", {})
        self.rpc_url = str(oracle_cfg["rpc_url"]).rstrip("/")

        # timeouts & retries
        retries_cfg = cfg.get("retries", {})
        self.timeout_ms = int(timeout_ms or oracle_cfg.get("timeout_ms", 3000))
        self.max_attempts = int(retries_cfg.get("rpc_max_attempts", 3))
        self.backoff_ms = int(retries_cfg.get("backoff_ms", 200))

        self._ids = itertools.count(1)

        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000)
            self.session = aiohttp.ClientSession(timeout=timeout, raise_for_status=False, trust_env=True)

        self.log.debug(f"HttpClient init rpc_url={self.rpc_url} timeout_ms={self.timeout_ms}")

    # ---- async context manager ----------------------------------------------------
    async def __aenter__(self) -> "HttpClient":
        if self._owned_session and (self.session is None or self.session.closed):
            timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000.0)
            self.session = aiohttp.ClientSession(timeout=timeout, raise_for_status=False, trust_env=True)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owned_session and self.session is not None and not self.session.closed:
            await self.session.close()

    async def call(
            self,
            method: str,
            params: Optional[Sequence[Any]] = None,
            *,
            timeout_ms: Optional[int] = None,
            retry: bool = False,
        ) -> Any:
        """
        Single JSON-RPC request; returns `result`.
        - HttpError for transport failures (599 = network/timeout) and HTTP >= 400
        - JsonRpcError when the response carries an `error` object
        """
        req_id = next(self._ids)
        body = {"jsonrpc": "2.0", "id": req_id, "method": method, "params": list(params or [])}
        body_str = _json_dumps_compact(body)
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        timeout_ctx = aiohttp.ClientTimeout(total=(timeout_ms or self.timeout_ms) / 1000.0)

        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.session.post(
                    self.rpc_url,
                    data=body_str,
                    headers=headers,
                    timeout=timeout_ctx,
                ) as resp:
                    text = await resp.text()
                    status = resp.status
                    if status >= 400:
                        if retry and (status >= 500 or status == 429) and attempt < self.max_attempts:
                            await self._sleep_backoff(attempt)
                            continue
                        raise HttpError(status, text[:256])

                    try:
                        payload = json.loads(text) if text else {}
                    except json.JSONDecodeError:
                        raise HttpError(status, f"invalid json: {text[:256]}")

                    err = payload.get("error")
                    if err:
                        raise JsonRpcError(err.get("code"), err.get("message", ""), payload)
                    if "result" not in payload:
                        raise JsonRpcError("no_result", f"response without result: {text[:256]}", payload)
                    return payload["result"]
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if retry and attempt < self.max_attempts:
                    logger.warning(f"Network error: {e!r} calling {method}, retrying...")
                    await self._sleep_backoff(attempt)
                    continue
                raise HttpError(599, f"Network error: {e!r}") from e
            except JsonRpcError:
                raise
            except HttpError:
                raise
            except Exception as e:
                raise HttpError(599, f"Unexpected error: {e!r}") from e

    async def _sleep_backoff(self, attempt: int) -> None:
        base = self.backoff_ms * (2 ** (attempt - 1))
        jitter = random.randint(0, self.backoff_ms)
        await asyncio.sleep((base + jitter) / 1000.0)

    async def ping(self) -> bool:
        """Cheap liveness probe; any JSON-RPC answer (even an error object) counts as up."""
        try:
            await self.call("net_version", timeout_ms=min(self.timeout_ms, 2000))
            return True
        except JsonRpcError:
            return True
        except HttpError:
            return False

    def describe(self) -> Dict[str, Any]:
        return {"rpc_url": self.rpc_url, "timeout_ms": self.timeout_ms}
