import aiohttp
import asyncio
import logging
from typing import Optional, List, Dict, Any
from dataclasses import dataclass
from urllib.parse import quote

logger = logging.getLogger(__name__)

@dataclass
class ClientConfig:
    """Configuration for a registry or relay connection"""
    url: str = "http://localhost:8787"  # Service base URL
    heartbeat_interval: float = 20  # Keep well below the registry room TTL
    timeout: int = 10  # Request timeout
    retry_attempts: int = 3  # Number of retry attempts
    retry_delay: float = 2  # Seconds between retries

class ServiceClient:
    """JSON-over-HTTP plumbing shared by the registry and relay clients"""

    def __init__(self, config: ClientConfig):
        self.config = config
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry"""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.disconnect()

    async def connect(self):
        """Initialize HTTP session"""
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)
            logger.info(f"Connected to {self.config.url}")

    async def disconnect(self):
        """Close HTTP session"""
        if self.session:
            await self.session.close()
            self.session = None
            logger.info(f"Disconnected from {self.config.url}")

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        retry: bool = True
    ) -> Optional[Dict[str, Any]]:
        """Make HTTP request; retries only timeouts, connection errors and 5xx"""
        if not self.session:
            await self.connect()

        url = f"{self.config.url}{endpoint}"
        attempts = self.config.retry_attempts if retry else 1

        for attempt in range(attempts):
            try:
                async with self.session.request(method, url, json=data, params=params) as response:
                    if response.status == 200:
                        try:
                            return await response.json()
                        except (aiohttp.ContentTypeError, ValueError) as e:
                            logger.error(f"Malformed response from {endpoint}: {e}")
                            return None
                    elif response.status < 500:
                        # The services answer every client error with {ok: false, error}
                        try:
                            payload = await response.json()
                            error = payload.get("error")
                        except (aiohttp.ContentTypeError, ValueError):
                            error = await response.text()
                        logger.warning(f"{method} {endpoint} rejected: {response.status} {error}")
                        return None
                    else:
                        error_text = await response.text()
                        logger.error(f"Request failed: {response.status} - {error_text}")

                        if attempt < attempts - 1:
                            await asyncio.sleep(self.config.retry_delay)
                            continue
                        return None

            except asyncio.TimeoutError:
                logger.error(f"Request timeout: {endpoint}")
                if attempt < attempts - 1:
                    await asyncio.sleep(self.config.retry_delay)
                    continue
                return None
            except aiohttp.ClientError as e:
                logger.error(f"Request error: {e}")
                if attempt < attempts - 1:
                    await asyncio.sleep(self.config.retry_delay)
                    continue
                return None

        return None

    async def check_health(self) -> bool:
        """
        Check if the service is accessible

        Returns:
            True if the service reports ok
        """
        response = await self._make_request("GET", "/health", retry=False)
        return response is not None and response.get("ok") is True


class RegistryClient(ServiceClient):
    """Host and browser side of the room registry"""

    def __init__(self, config: ClientConfig, host_id: Optional[str] = None):
        super().__init__(config)
        self.host_id = host_id
        self.room_ids: List[str] = []
        self.heartbeat_task: Optional[asyncio.Task] = None
        self._running = False

    async def disconnect(self):
        """Stop heartbeats and close HTTP session"""
        if self.heartbeat_task:
            await self.stop_heartbeat()
        await super().disconnect()

    async def open_room(
        self,
        world_name: str,
        host_name: str = "Host",
        ip: str = "",
        port: int = 19132,
        game_version: str = "",
        mode: str = "survival",
        max_players: int = 10,
        is_private: bool = False,
        join_code: Optional[str] = None,
        connect_type: str = "direct"
    ) -> Optional[str]:
        """
        Advertise a world in the registry

        Returns:
            room_id if successful, None otherwise
        """
        if not self.host_id:
            logger.error("Cannot open a room without a host id")
            return None

        data = {
            "hostId": self.host_id,
            "hostName": host_name,
            "worldName": world_name,
            "gameVersion": game_version,
            "mode": mode,
            "connect": {"type": connect_type, "ip": ip, "port": port},
            "isPrivate": is_private,
            "maxPlayers": max_players
        }
        if join_code:
            data["joinCode"] = join_code

        logger.info(f"Opening room: {world_name} ({ip or 'hidden'}:{port})")
        response = await self._make_request("POST", "/world/open", data, retry=False)

        if response and "roomId" in response:
            room_id = response["roomId"]
            self.room_ids.append(room_id)
            logger.info(f"Room opened with ID: {room_id}")
            return room_id

        logger.error("Failed to open room")
        return None

    async def close_room(self, room_id: Optional[str] = None) -> Optional[int]:
        """
        Close one room, or every room of this host when room_id is omitted

        Returns:
            Number of rooms removed, None on failure
        """
        data = {"hostId": self.host_id}
        if room_id:
            data["roomId"] = room_id

        response = await self._make_request("POST", "/world/close", data, retry=False)
        if response is None:
            return None

        if room_id:
            if room_id in self.room_ids:
                self.room_ids.remove(room_id)
        else:
            self.room_ids.clear()
        return response.get("removed", 0)

    async def send_heartbeat(self, room_id: Optional[str] = None) -> Optional[int]:
        """
        Refresh one room, or every room of this host when room_id is omitted

        Returns:
            Number of rooms refreshed, None on failure
        """
        data = {"hostId": self.host_id}
        if room_id:
            data["roomId"] = room_id

        response = await self._make_request("POST", "/world/heartbeat", data, retry=False)
        if response is None:
            return None
        return response.get("updated", 0)

    async def heartbeat_loop(self):
        """Background task that refreshes all rooms of this host"""
        self._running = True
        logger.info(f"Starting heartbeat loop (interval: {self.config.heartbeat_interval}s)")

        while self._running:
            try:
                updated = await self.send_heartbeat()
                if updated is None:
                    logger.warning("Heartbeat failed")
                elif updated == 0 and self.room_ids:
                    # Rooms were swept or closed elsewhere
                    logger.warning("Heartbeat matched no rooms")

                await asyncio.sleep(self.config.heartbeat_interval)

            except asyncio.CancelledError:
                logger.info("Heartbeat loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in heartbeat loop: {e}")
                await asyncio.sleep(self.config.heartbeat_interval)

        logger.info("Heartbeat loop stopped")

    async def start_heartbeat(self):
        """Start background heartbeat task"""
        if self.heartbeat_task and not self.heartbeat_task.done():
            logger.warning("Heartbeat already running")
            return

        self.heartbeat_task = asyncio.create_task(self.heartbeat_loop())

    async def stop_heartbeat(self):
        """Stop background heartbeat task"""
        if self.heartbeat_task:
            self._running = False
            self.heartbeat_task.cancel()
            try:
                await self.heartbeat_task
            except asyncio.CancelledError:
                pass
            self.heartbeat_task = None
            logger.info("Heartbeat stopped")

    async def fetch_room_list(self, game_version: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Fetch live rooms from the registry

        Args:
            game_version: Only rooms advertising this exact version

        Returns:
            List of room dictionaries
        """
        params = {"gameVersion": game_version} if game_version else None
        response = await self._make_request("GET", "/world/list", params=params)

        if response and "servers" in response:
            logger.info(f"Fetched {len(response['servers'])} room(s)")
            return response["servers"]

        logger.warning("Failed to fetch room list")
        return []

    async def join_by_code(self, join_code: str) -> Optional[Dict[str, Any]]:
        """
        Resolve a join code

        Returns:
            Room dictionary (without owner or code) or None
        """
        response = await self._make_request(
            "POST", "/world/join-by-code", {"joinCode": join_code}, retry=False
        )
        return response.get("room") if response else None


class RelayClient(ServiceClient):
    """Either side of a relay session"""

    async def create_session(
        self,
        room_id: str,
        public_relay_host: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Open a relay session for a room

        Returns:
            Dictionary with sessionId, relay {host, udpPort}, hostToken and playerToken
        """
        data = {"roomId": room_id}
        if public_relay_host:
            data["publicRelayHost"] = public_relay_host

        response = await self._make_request("POST", "/session/create", data, retry=False)
        if response and "sessionId" in response:
            logger.info(f"Relay session created: {response['sessionId']}")
            return response
        return None

    async def bind(
        self,
        session_id: str,
        role: str,
        address: str,
        port: int,
        token: Optional[str] = None
    ) -> Optional[bool]:
        """
        Register this side's observed UDP endpoint

        Returns:
            Whether both sides are now bound, None on failure
        """
        data = {"sessionId": session_id, "role": role, "address": address, "port": port}
        if token:
            data["token"] = token

        response = await self._make_request("POST", "/session/bind", data, retry=False)
        if response is None:
            return None
        return bool(response.get("ready"))

    async def session_status(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Readiness and timestamps of a session, None if unknown or expired"""
        response = await self._make_request(
            "GET", "/session/status", params={"sessionId": session_id}
        )
        return response.get("session") if response else None


def external_server_uri(room: Dict[str, Any], label: str = "Noc Global") -> Optional[str]:
    """
    Game URI that adds a room as an external server

    Returns None for rooms whose address is hidden.
    """
    connect = room.get("connect") or {}
    ip = str(connect.get("ip") or "")
    if not ip:
        return None
    port = int(connect.get("port") or 19132)
    return f"minecraft://?addExternalServer={quote(label)}|{ip}:{port}"
