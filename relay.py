from fastapi import FastAPI, HTTPException, Request, Depends, Query
import asyncio
import secrets
from contextlib import asynccontextmanager
from typing import Optional
import logging

from models import (
    SessionCreateRequest, SessionCreateResponse, RelayAddress,
    SessionBindRequest, SessionBindResponse,
    SessionInfo, SessionStatusResponse, RelayHealthResponse
)
from sessions import SessionStore, ROLES
from forwarder import start_forwarder
from config import RelaySettings
from clock import Clock, now_ms
from common import install_api_support, json_body, periodic_sweep, stop_task, configure_logging

logger = logging.getLogger(__name__)

SERVICE_NAME = "noc-relay-service"


def get_store(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_settings(request: Request) -> RelaySettings:
    return request.app.state.settings


def get_udp_port(request: Request) -> int:
    # Actual bound port; differs from settings when configured as 0
    return request.app.state.udp_port or request.app.state.settings.udp_port


def create_app(settings: Optional[RelaySettings] = None, clock: Clock = now_ms) -> FastAPI:
    """Build a relay control plane; the UDP forwarder lives for the app's lifespan"""
    settings = settings or RelaySettings()
    store = SessionStore(settings.session_ttl_ms, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        logger.info("Starting relay service...")
        transport, protocol = await start_forwarder(store, settings.host, settings.udp_port)
        app.state.udp_port = transport.get_extra_info("sockname")[1]
        app.state.forwarder = protocol

        sweep_task = asyncio.create_task(
            periodic_sweep("sessions", store.sweep, settings.cleanup_interval)
        )
        logger.info(f"Session TTL: {settings.session_ttl_ms}ms")
        if not settings.require_tokens:
            logger.info("Bind tokens are optional (RELAY_REQUIRE_TOKENS=false)")

        yield

        logger.info("Shutting down relay service...")
        await stop_task(sweep_task)
        transport.close()
        app.state.forwarder = None

    app = FastAPI(
        title="Noc Relay Service",
        description="Session rendezvous and UDP relay between a host and a player",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.sessions = store
    app.state.udp_port = None
    app.state.forwarder = None
    install_api_support(app, settings.allowed_origins, settings.max_body_bytes)
    register_routes(app)
    return app


def register_routes(app: FastAPI):

    @app.get("/health", response_model=RelayHealthResponse)
    async def health_check(
        store: SessionStore = Depends(get_store),
        udp_port: int = Depends(get_udp_port)
    ):
        """Health check endpoint"""
        return RelayHealthResponse(
            service=SERVICE_NAME,
            sessions=len(store),
            udp_port=udp_port
        )

    @app.post("/session/create", response_model=SessionCreateResponse)
    async def create_session(
        body: SessionCreateRequest = Depends(json_body(SessionCreateRequest)),
        store: SessionStore = Depends(get_store),
        settings: RelaySettings = Depends(get_settings),
        udp_port: int = Depends(get_udp_port)
    ):
        """Open a rendezvous session for one room"""
        session = store.create(body.room_id)
        logger.info(f"Created session {session.session_id} for room {body.room_id}")
        return SessionCreateResponse(
            session_id=session.session_id,
            relay=RelayAddress(
                host=body.public_relay_host or settings.public_host,
                udp_port=udp_port
            ),
            host_token=session.host_token,
            player_token=session.player_token
        )

    @app.post("/session/bind", response_model=SessionBindResponse)
    async def bind_session(
        body: SessionBindRequest = Depends(json_body(SessionBindRequest)),
        store: SessionStore = Depends(get_store),
        settings: RelaySettings = Depends(get_settings)
    ):
        """Register the observed address of one side of a session"""
        session = store.get(body.session_id)
        if not session:
            raise HTTPException(status_code=404, detail="session_not_found")
        if body.role not in ROLES:
            raise HTTPException(status_code=400, detail="invalid_role")

        if body.token is not None or settings.require_tokens:
            if not secrets.compare_digest(body.token or "", session.token(body.role)):
                logger.warning(f"Rejected {body.role} bind with bad token for {session.session_id}")
                raise HTTPException(status_code=403, detail="invalid_token")

        address = str(body.address)
        ready = store.bind(session, body.role, address, body.port)
        logger.info(
            f"Bound {body.role} of {session.session_id} to {address}:{body.port} (ready={ready})"
        )
        return SessionBindResponse(ready=ready)

    @app.get("/session/status", response_model=SessionStatusResponse)
    async def session_status(
        session_id: str = Query("", alias="sessionId"),
        store: SessionStore = Depends(get_store)
    ):
        """Readiness and timestamps of a live session"""
        session_id = session_id.strip()
        if not session_id:
            raise HTTPException(status_code=400, detail="sessionId_required")
        session = store.get(session_id)
        if not session:
            raise HTTPException(status_code=404, detail="session_not_found")
        return SessionStatusResponse(session=SessionInfo(
            session_id=session.session_id,
            room_id=session.room_id,
            ready=session.ready,
            last_seen=session.last_seen,
            created_at=session.created_at
        ))


app = create_app()


def run():
    import uvicorn
    settings = app.state.settings
    configure_logging(settings.log_level)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.api_port,
        log_level=settings.log_level
    )


if __name__ == "__main__":
    run()
