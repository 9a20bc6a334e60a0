# ledger/config.py
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional


@dataclass
class OracleSettings:
    """Where and how to read authoritative contract status."""
    rpc_url: str
    method: str = "getContractDetails"
    timeout_ms: int = 3000
    contract_address: Optional[str] = None


@dataclass
class ReconcileSettings:
    """Reconciler runtime configuration."""
    workers: int = 4
    tick_s: float = 0.5                 # how often the loop looks for due orders
    poll_interval_s: float = 30.0       # re-poll delay for healthy non-terminal orders
    backoff_base_s: float = 1.0
    backoff_factor: float = 2.0
    backoff_max_s: float = 300.0
    max_retries: int = 5                # failures tolerated before escalation

    def backoff_delay(self, failures: int) -> float:
        """Delay before the next attempt after `failures` consecutive failures (>= 1)."""
        raw = self.backoff_base_s * (self.backoff_factor ** max(0, failures - 1))
        return min(raw, self.backoff_max_s)


@dataclass
class FeedSettings:
    transport: str = "memory"           # "memory" | "redis"
    redis_dsn: Optional[str] = None
    stream: str = "order_changes"
    flush_interval_s: float = 0.2
    queue_max: int = 256                # per-subscriber buffer


@dataclass
class ControlSettings:
    host: str = "127.0.0.1"
    port: int = 8080
    token: Optional[str] = None


@dataclass
class LedgerSettings:
    oracle: OracleSettings
    reconcile: ReconcileSettings
    feed: FeedSettings
    control: ControlSettings
    db_path: str = "data/agrisync.db"
    platform_fee_pct: Decimal = Decimal("5")
    notifications_enabled: bool = True


def settings_from_cfg(cfg: Mapping[str, Any]) -> LedgerSettings:
    try:
        o = cfg["oracle"]
        oracle = OracleSettings(
            rpc_url=str(o["rpc_url"]).rstrip("/"),
            method=o.get("method", "getContractDetails"),
            timeout_ms=int(o.get("timeout_ms", 3000)),
            contract_address=o.get("contract_address") or None,
        )
        db_path = cfg["store"]["db_path"]
    except KeyError as e:
        raise ValueError(f"Invalid cfg missing key: {e}") from e

    r = cfg.get("reconcile", {}) or {}
    reconcile = ReconcileSettings(
        workers=max(1, int(r.get("workers", 4))),
        tick_s=float(r.get("tick_s", 0.5)),
        poll_interval_s=float(r.get("poll_interval_s", 30.0)),
        backoff_base_s=float(r.get("backoff_base_s", 1.0)),
        backoff_factor=float(r.get("backoff_factor", 2.0)),
        backoff_max_s=float(r.get("backoff_max_s", 300.0)),
        max_retries=int(r.get("max_retries", 5)),
    )

    f = cfg.get("feed", {}) or {}
    fan = cfg.get("fanout", {}) or {}
    feed = FeedSettings(
        transport=str(f.get("transport", "memory")).lower(),
        redis_dsn=f.get("redis_dsn") or None,
        stream=f.get("stream", "order_changes"),
        flush_interval_s=float(f.get("flush_interval_s", 0.2)),
        queue_max=int(fan.get("queue_max", 256)),
    )
    if feed.transport == "redis" and not feed.redis_dsn:
        raise ValueError("Invalid cfg: feed.transport=redis requires feed.redis_dsn")

    c = cfg.get("control", {}) or {}
    control = ControlSettings(
        host=c.get("host", "127.0.0.1"),
        port=int(c.get("port", 8080)),
        token=c.get("token") or None,
    )

    n = cfg.get("notifications", {}) or {}
    return LedgerSettings(
        oracle=oracle,
        reconcile=reconcile,
        feed=feed,
        control=control,
        db_path=db_path,
        platform_fee_pct=Decimal(str(n.get("platform_fee_pct", 5))),
        notifications_enabled=bool(n.get("enabled", True)),
    )
