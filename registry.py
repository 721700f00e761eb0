from fastapi import FastAPI, HTTPException, Request, Depends, Query
import asyncio
from contextlib import asynccontextmanager
from typing import Optional
import logging

from models import (
    RoomOpenRequest, RoomOpenResponse,
    HostScopedRequest, HeartbeatResponse, CloseResponse,
    JoinByCodeRequest, JoinByCodeResponse,
    RoomListResponse, RegistryHealthResponse
)
from rooms import RoomStore
from config import RegistrySettings
from clock import Clock, now_ms
from common import install_api_support, json_body, periodic_sweep, stop_task, configure_logging

logger = logging.getLogger(__name__)

SERVICE_NAME = "noc-local-servers-registry"


def get_store(request: Request) -> RoomStore:
    return request.app.state.rooms


def get_settings(request: Request) -> RegistrySettings:
    return request.app.state.settings


def create_app(settings: Optional[RegistrySettings] = None, clock: Clock = now_ms) -> FastAPI:
    """Build a room directory with its own, empty room store"""
    settings = settings or RegistrySettings()
    store = RoomStore(settings.room_ttl_ms, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        logger.info("Starting room registry...")
        sweep_task = asyncio.create_task(
            periodic_sweep("rooms", store.sweep, settings.cleanup_interval)
        )
        logger.info(f"Room TTL: {settings.room_ttl_ms}ms")
        logger.info(f"Cleanup interval: {settings.cleanup_interval}s")
        logger.info(f"Max rooms per host: {settings.max_rooms_per_host}")

        yield

        logger.info("Shutting down room registry...")
        await stop_task(sweep_task)

    app = FastAPI(
        title="Noc Room Registry",
        description="Directory of live game worlds with heartbeat liveness",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.rooms = store
    install_api_support(app, settings.allowed_origins, settings.max_body_bytes)
    register_routes(app)
    return app


def register_routes(app: FastAPI):

    @app.get("/health", response_model=RegistryHealthResponse)
    async def health_check(
        store: RoomStore = Depends(get_store),
        settings: RegistrySettings = Depends(get_settings)
    ):
        """Health check endpoint"""
        return RegistryHealthResponse(
            service=SERVICE_NAME,
            rooms=store.count_live(),
            ttl_ms=settings.room_ttl_ms
        )

    @app.get("/world/list", response_model=RoomListResponse)
    async def list_rooms(
        game_version: Optional[str] = Query(None, alias="gameVersion"),
        store: RoomStore = Depends(get_store),
        settings: RegistrySettings = Depends(get_settings)
    ):
        """Get list of live rooms"""
        servers = []
        for room in store.live_rooms(game_version):
            hide_address = settings.redact_private_addresses and room.is_private
            servers.append(room.info(hide_address=hide_address))
        return RoomListResponse(servers=servers)

    @app.post("/world/open", response_model=RoomOpenResponse)
    async def open_room(
        room: RoomOpenRequest = Depends(json_body(RoomOpenRequest)),
        store: RoomStore = Depends(get_store),
        settings: RegistrySettings = Depends(get_settings)
    ):
        """Advertise a new room"""
        # Stale rooms not yet swept still count against the host
        if store.count_for_host(room.host_id) >= settings.max_rooms_per_host:
            logger.warning(f"Host {room.host_id} hit the limit of {settings.max_rooms_per_host} rooms")
            raise HTTPException(status_code=429, detail="rooms_limit_reached")

        created = store.open(room)
        logger.info(
            f"Opened room: {created.world_name} ({created.room_id}) for host {created.host_id}"
        )
        return RoomOpenResponse(room_id=created.room_id)

    @app.post("/world/heartbeat", response_model=HeartbeatResponse)
    async def heartbeat(
        body: HostScopedRequest = Depends(json_body(HostScopedRequest)),
        store: RoomStore = Depends(get_store)
    ):
        """Refresh one room or all rooms of a host"""
        updated = store.heartbeat(body.host_id, body.room_id)
        return HeartbeatResponse(updated=updated)

    @app.post("/world/close", response_model=CloseResponse)
    async def close_room(
        body: HostScopedRequest = Depends(json_body(HostScopedRequest)),
        store: RoomStore = Depends(get_store)
    ):
        """Remove one room or all rooms of a host"""
        removed = store.close(body.host_id, body.room_id)
        if removed:
            logger.info(f"Closed {removed} room(s) for host {body.host_id}")
        return CloseResponse(removed=removed)

    @app.post("/world/join-by-code", response_model=JoinByCodeResponse)
    async def join_by_code(
        body: JoinByCodeRequest = Depends(json_body(JoinByCodeRequest)),
        store: RoomStore = Depends(get_store)
    ):
        """Resolve a join code to a live room"""
        room = store.find_by_join_code(body.join_code)
        if not room:
            raise HTTPException(status_code=404, detail="not_found")
        return JoinByCodeResponse(room=room.public_info())


app = create_app()


def run():
    import uvicorn
    settings = app.state.settings
    configure_logging(settings.log_level)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level
    )


if __name__ == "__main__":
    run()
