from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Iterable

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from meshlink.api.routes import authorize, sessions, tiers
from meshlink.lib.errors import (
    BrokerError,
    Conflict,
    EnforcementFailure,
    InvalidState,
    NotFound,
    UnknownTier,
)
from meshlink.lib.services.broker_loop import Broker
from meshlink.lib.session.models import normalize_address

log = structlog.get_logger(__name__)

_ERROR_STATUS = {
    UnknownTier: 404,
    NotFound: 404,
    Conflict: 409,
    InvalidState: 409,
    EnforcementFailure: 503,
}


def _status_for(e: BrokerError) -> int:
    for kind, status in _ERROR_STATUS.items():
        if isinstance(e, kind):
            return status
    return 500


async def broker_error_handler(request: Request, e: BrokerError) -> JSONResponse:
    status = _status_for(e)
    if status >= 500:
        log.error("api_request_failed", path=request.url.path, error=e.code, message=str(e))
    return JSONResponse(status_code=status, content={"detail": {"error": e.code, "message": str(e)}})


def create_app(
    build_broker: Callable[[], Awaitable[Broker]],
    run_background: bool = True,
    trusted_proxies: Iterable[str] = (),
) -> FastAPI:
    """
    Build the HTTP app. The broker is created and reconciled inside the lifespan,
    so no authorization is served before kernel state matches the store.

    `trusted_proxies` are portal addresses allowed to authorize on behalf of another
    client address.
    """
    trusted = frozenset(normalize_address(a) for a in trusted_proxies)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        broker = await build_broker()
        await broker.start()
        if run_background:
            broker.run_background()
        app.state.broker = broker
        try:
            yield
        finally:
            await broker.stop()
            await broker.store.close()

    app = FastAPI(title="MeshLink Broker API", lifespan=lifespan)
    app.state.trusted_proxies = trusted

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(BrokerError, broker_error_handler)

    app.include_router(authorize.router)
    app.include_router(sessions.router)
    app.include_router(tiers.router)

    @app.get("/health")
    async def health(request: Request):
        broker = getattr(request.app.state, "broker", None)
        ready = broker is not None and broker.ready
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"status": "ok" if ready else "starting", "active_timers": len(broker.scheduler) if broker else 0},
        )

    return app
