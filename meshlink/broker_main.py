#!/usr/bin/env python3
import argparse
import asyncio
import uuid

import redis.asyncio as aioredis
import structlog
import uvicorn

from meshlink.api.main import create_app
from meshlink.lib.config import BrokerConfig, load_config_from_env
from meshlink.lib.db import create_pool
from meshlink.lib.log import configure_logging
from meshlink.lib.services.broker_loop import Broker, BrokerIntervals
from meshlink.lib.services.enforcement_gateway import (
    EnforcementGatewayConfig,
    IpsetEnforcementGateway,
    MemoryEnforcementGateway,
)
from meshlink.lib.services.event_dispatcher import BrokerEventDispatcher, BrokerEventDispatcherConfig
from meshlink.lib.services.session_store import MemorySessionStore, PgSessionStore
from meshlink.lib.session.tiers import load_tier_catalog

log = structlog.get_logger(__name__)


async def wait_for_redis(host: str, port: int, max_retries=30, delay=2) -> aioredis.Redis:
    """Wait for Redis to be available."""
    for i in range(max_retries):
        try:
            r = aioredis.Redis(host=host, port=port)
            await r.ping()
            log.info("redis_connected", host=host, port=port)
            return r
        except Exception:
            log.info("redis_waiting", attempt=i + 1, max_retries=max_retries)
            await asyncio.sleep(delay)
    raise RuntimeError("Could not connect to Redis")


async def build_broker(config: BrokerConfig, broker_instance_id: str) -> Broker:
    tiers = load_tier_catalog(config.tiers_file)

    if config.store_backend == "memory":
        log.warning("store_memory_backend", note="sessions are lost on restart")
        store = MemorySessionStore()
    else:
        pool = create_pool(
            host=config.pg_host,
            port=config.pg_port,
            dbname=config.pg_db,
            user=config.pg_user,
            password=config.pg_password,
            maxconn=config.pg_pool_max,
        )
        store = PgSessionStore(pool)
        await store.init_schema()

    if config.enforcement_backend == "memory":
        log.warning("enforcement_memory_backend", note="kernel sets are not touched")
        gateway = MemoryEnforcementGateway(tiers.names())
    else:
        gateway = IpsetEnforcementGateway(
            EnforcementGatewayConfig(tier_names=tiers.names(), ipset_bin=config.ipset_bin)
        )

    redis_conn = None
    if config.redis_host:
        redis_conn = await wait_for_redis(config.redis_host, config.redis_port)

    event_dispatcher = BrokerEventDispatcher(
        config=BrokerEventDispatcherConfig(
            broker_id=config.broker_id,
            broker_instance_id=broker_instance_id,
            redis_conn=redis_conn,
            test_mode=redis_conn is None,
        )
    )

    return Broker(
        store,
        gateway,
        tiers,
        event_dispatcher,
        BrokerIntervals.from_config(config),
    )


def parse_args(config: BrokerConfig) -> BrokerConfig:
    parser = argparse.ArgumentParser(description="MeshLink session authorization broker")
    parser.add_argument("--broker-id", default=config.broker_id, help="Gateway identifier used in emitted events")
    parser.add_argument("--store", choices=["postgres", "memory"], default=config.store_backend)
    parser.add_argument("--enforcement", choices=["ipset", "memory"], default=config.enforcement_backend)
    parser.add_argument("--tiers-file", default=config.tiers_file, help="JSON tier catalog")
    parser.add_argument("--host", default=config.http_host)
    parser.add_argument("--port", type=int, default=config.http_port)
    args = parser.parse_args()

    config.broker_id = args.broker_id
    config.store_backend = args.store
    config.enforcement_backend = args.enforcement
    config.tiers_file = args.tiers_file
    config.http_host = args.host
    config.http_port = args.port
    return config


async def async_main(config: BrokerConfig) -> None:
    # Generate unique instance ID (changes on restart)
    broker_instance_id = str(uuid.uuid4())
    log.info("broker_starting", broker_id=config.broker_id, instance=broker_instance_id)

    app = create_app(
        lambda: build_broker(config, broker_instance_id),
        trusted_proxies=config.trusted_proxies,
    )
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.http_host,
            port=config.http_port,
            log_config=None,
            access_log=False,
        )
    )
    await server.serve()


def main():
    config = parse_args(load_config_from_env())
    configure_logging(config.log_level)
    asyncio.run(async_main(config))


if __name__ == "__main__":
    main()
