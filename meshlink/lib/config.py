import os
from dataclasses import dataclass, field
from typing import Literal

from meshlink.lib.constants import (
    ARCHIVE_AFTER_SECONDS,
    ARCHIVE_INTERVAL_SECONDS,
    QUOTA_POLL_INTERVAL_SECONDS,
    RECONCILE_INTERVAL_SECONDS,
)


@dataclass
class BrokerConfig:
    """
    Runtime configuration for the broker daemon.
        - broker_id: Stable identifier for this gateway (persistent across restarts)
        - store_backend: "postgres" for the durable store, "memory" for development
        - enforcement_backend: "ipset" to drive the kernel sets, "memory" for a dry run
        - ipset_bin: ipset command, may be prefixed with sudo
        - tiers_file: JSON tier catalog; built-in tiers are used when unset
        - trusted_proxies: portal addresses allowed to authorize on behalf of another client
    """

    broker_id: str = "meshlink-default"
    store_backend: Literal["postgres", "memory"] = "postgres"
    enforcement_backend: Literal["ipset", "memory"] = "ipset"
    ipset_bin: str = "ipset"
    tiers_file: str | None = None

    http_host: str = "0.0.0.0"
    http_port: int = 3000
    trusted_proxies: list[str] = field(default_factory=list)

    pg_host: str = "127.0.0.1"
    pg_port: int = 5432
    pg_db: str = "meshlink"
    pg_user: str = "meshlink"
    pg_password: str = "meshlink"
    pg_pool_max: int = 10

    redis_host: str | None = None
    redis_port: int = 6379

    reconcile_interval: int = RECONCILE_INTERVAL_SECONDS
    quota_poll_interval: int = QUOTA_POLL_INTERVAL_SECONDS
    archive_interval: int = ARCHIVE_INTERVAL_SECONDS
    archive_after: int = ARCHIVE_AFTER_SECONDS

    log_level: str = "INFO"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_config_from_env() -> BrokerConfig:
    return BrokerConfig(
        broker_id=os.getenv("MESHLINK_BROKER_ID", "meshlink-default"),
        store_backend=os.getenv("MESHLINK_STORE", "postgres"),
        enforcement_backend=os.getenv("MESHLINK_ENFORCEMENT", "ipset"),
        ipset_bin=os.getenv("MESHLINK_IPSET_BIN", "ipset"),
        tiers_file=os.getenv("MESHLINK_TIERS_FILE") or None,
        http_host=os.getenv("MESHLINK_HTTP_HOST", "0.0.0.0"),
        http_port=_env_int("MESHLINK_HTTP_PORT", 3000),
        trusted_proxies=_env_list("MESHLINK_TRUSTED_PROXIES"),
        pg_host=os.getenv("PG_HOST", "127.0.0.1"),
        pg_port=_env_int("PG_PORT", 5432),
        pg_db=os.getenv("PG_DB", "meshlink"),
        pg_user=os.getenv("PG_USER", "meshlink"),
        pg_password=os.getenv("PG_PASSWORD", "meshlink"),
        pg_pool_max=_env_int("PG_POOL_MAX", 10),
        redis_host=os.getenv("REDIS_HOST") or None,
        redis_port=_env_int("REDIS_PORT", 6379),
        reconcile_interval=_env_int("MESHLINK_RECONCILE_INTERVAL", RECONCILE_INTERVAL_SECONDS),
        quota_poll_interval=_env_int("MESHLINK_QUOTA_POLL_INTERVAL", QUOTA_POLL_INTERVAL_SECONDS),
        archive_interval=_env_int("MESHLINK_ARCHIVE_INTERVAL", ARCHIVE_INTERVAL_SECONDS),
        archive_after=_env_int("MESHLINK_ARCHIVE_AFTER", ARCHIVE_AFTER_SECONDS),
        log_level=os.getenv("MESHLINK_LOG_LEVEL", "INFO"),
    )
