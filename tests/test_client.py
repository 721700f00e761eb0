import asyncio
import contextlib
import socket

import pytest
import uvicorn
from fastapi import FastAPI, Response

import registry
import relay
from client import ClientConfig, RegistryClient, RelayClient, external_server_uri


@contextlib.asynccontextmanager
async def serve(app):
    """Run an app under uvicorn on an ephemeral loopback port"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]

    server = uvicorn.Server(uvicorn.Config(app, log_level="warning", lifespan="on"))
    task = asyncio.create_task(server.serve(sockets=[sock]))
    while not server.started:
        if task.done():
            task.result()
        await asyncio.sleep(0.01)
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        server.should_exit = True
        await task
        sock.close()


def config(url):
    return ClientConfig(url=url, heartbeat_interval=0.05, timeout=5, retry_attempts=1, retry_delay=0)


@pytest.mark.asyncio
async def test_registry_client_round_trip(registry_settings, clock):
    app = registry.create_app(registry_settings, clock=clock)
    async with serve(app) as url:
        async with RegistryClient(config(url), host_id="h1") as client:
            assert await client.check_health()

            room_id = await client.open_room("Valley", ip="10.0.0.5", port=19133, join_code="J1")
            assert room_id
            assert client.room_ids == [room_id]

            rooms = await client.fetch_room_list()
            assert [r["roomId"] for r in rooms] == [room_id]
            assert external_server_uri(rooms[0]) == "minecraft://?addExternalServer=Noc%20Global|10.0.0.5:19133"

            joined = await client.join_by_code("J1")
            assert joined["worldName"] == "Valley"
            assert await client.join_by_code("nope") is None

            assert await client.send_heartbeat(room_id) == 1
            assert await client.close_room() == 1
            assert client.room_ids == []
            assert await client.fetch_room_list() == []


@pytest.mark.asyncio
async def test_registry_client_reports_rejections(registry_settings, clock):
    app = registry.create_app(registry_settings, clock=clock)
    async with serve(app) as url:
        async with RegistryClient(config(url), host_id="h1") as client:
            for _ in range(registry_settings.max_rooms_per_host):
                assert await client.open_room("World")
            assert await client.open_room("One too many") is None

        async with RegistryClient(config(url)) as anonymous:
            assert await anonymous.open_room("No host") is None


@pytest.mark.asyncio
async def test_heartbeat_loop_refreshes_rooms(registry_settings, clock):
    app = registry.create_app(registry_settings, clock=clock)
    store = app.state.rooms
    async with serve(app) as url:
        async with RegistryClient(config(url), host_id="h1") as client:
            room_id = await client.open_room("Valley")
            clock.advance(1000)

            await client.start_heartbeat()
            for _ in range(100):
                if store.get(room_id).last_heartbeat_at == clock.now:
                    break
                await asyncio.sleep(0.02)
            await client.stop_heartbeat()

            assert store.get(room_id).last_heartbeat_at == clock.now
            assert client.heartbeat_task is None


@pytest.mark.asyncio
async def test_heartbeat_survives_malformed_responses():
    broken = FastAPI()
    calls = []

    @broken.post("/world/heartbeat")
    async def heartbeat():
        calls.append(1)
        return Response("not json", media_type="application/json")

    async with serve(broken) as url:
        async with RegistryClient(config(url), host_id="h1") as client:
            assert await client.send_heartbeat() is None

            await client.start_heartbeat()
            for _ in range(100):
                if len(calls) >= 3:
                    break
                await asyncio.sleep(0.02)

            assert len(calls) >= 3
            assert not client.heartbeat_task.done()
            await client.stop_heartbeat()
            assert client.heartbeat_task is None


@pytest.mark.asyncio
async def test_relay_client_session_flow(relay_settings, clock):
    app = relay.create_app(relay_settings, clock=clock)
    async with serve(app) as url:
        async with RelayClient(config(url)) as client:
            assert await client.check_health()

            session = await client.create_session("room-1", public_relay_host="relay.example.net")
            assert session["relay"]["host"] == "relay.example.net"
            session_id = session["sessionId"]

            assert await client.bind(session_id, "host", "127.0.0.1", 40001, token=session["hostToken"]) is False
            assert await client.bind(session_id, "player", "127.0.0.1", 40002) is True
            assert await client.bind(session_id, "host", "127.0.0.1", 40001, token="WRONG") is None

            status = await client.session_status(session_id)
            assert status["ready"] is True
            assert await client.session_status("missing") is None


@pytest.mark.asyncio
async def test_unreachable_service():
    async with RegistryClient(config("http://127.0.0.1:9"), host_id="h1") as client:
        assert await client.check_health() is False
        assert await client.fetch_room_list() == []


def test_external_server_uri_needs_address():
    assert external_server_uri({"connect": {"ip": "", "port": 19132}}) is None
    assert external_server_uri({}) is None
