import uuid
from dataclasses import dataclass
from typing import Optional, List

from clock import Clock, now_ms, is_fresh
from models import ConnectInfo, RoomInfo, RoomOpenRequest, RoomPublicInfo


@dataclass
class Room:
    room_id: str
    host_id: str
    host_name: str
    world_name: str
    game_version: str
    mode: str
    connect: ConnectInfo
    is_private: bool
    join_code: Optional[str]
    max_players: int
    created_at: int
    last_heartbeat_at: int

    def info(self, hide_address: bool = False) -> RoomInfo:
        connect = self.connect
        if hide_address:
            connect = connect.model_copy(update={"ip": ""})
        return RoomInfo(
            room_id=self.room_id,
            host_id=self.host_id,
            host_name=self.host_name,
            world_name=self.world_name,
            game_version=self.game_version,
            mode=self.mode,
            connect=connect,
            is_private=self.is_private,
            max_players=self.max_players,
            created_at=self.created_at,
            last_heartbeat_at=self.last_heartbeat_at
        )

    def public_info(self) -> RoomPublicInfo:
        return RoomPublicInfo(
            room_id=self.room_id,
            host_name=self.host_name,
            world_name=self.world_name,
            game_version=self.game_version,
            mode=self.mode,
            connect=self.connect,
            is_private=self.is_private
        )


class RoomStore:
    """In-memory room directory.

    Every method runs to completion without awaiting, so on a single event
    loop each call is atomic with respect to the rooms it touches.
    """

    def __init__(self, ttl_ms: int, clock: Clock = now_ms):
        self.ttl_ms = ttl_ms
        self.clock = clock
        self._rooms: dict[str, Room] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def is_live(self, room: Room, now: Optional[int] = None) -> bool:
        if now is None:
            now = self.clock()
        return is_fresh(room.last_heartbeat_at, now, self.ttl_ms)

    def count_for_host(self, host_id: str) -> int:
        """Rooms tracked for a host, including stale ones not yet swept"""
        return sum(1 for room in self._rooms.values() if room.host_id == host_id)

    def open(self, request: RoomOpenRequest) -> Room:
        """Store a new room under a server generated id"""
        room_id = str(uuid.uuid4())
        while room_id in self._rooms:
            room_id = str(uuid.uuid4())

        current_time = self.clock()
        room = Room(
            room_id=room_id,
            host_id=request.host_id,
            host_name=request.host_name,
            world_name=request.world_name,
            game_version=request.game_version,
            mode=request.mode,
            connect=request.connect.model_copy(),
            is_private=request.is_private,
            join_code=request.join_code,
            max_players=request.max_players,
            created_at=current_time,
            last_heartbeat_at=current_time
        )
        self._rooms[room_id] = room
        return room

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def live_rooms(self, game_version: Optional[str] = None) -> List[Room]:
        """Live rooms, newest first"""
        now = self.clock()
        rooms = [
            room for room in self._rooms.values()
            if self.is_live(room, now)
            and (not game_version or room.game_version == game_version)
        ]
        return sorted(rooms, key=lambda r: r.created_at, reverse=True)

    def count_live(self) -> int:
        now = self.clock()
        return sum(1 for room in self._rooms.values() if self.is_live(room, now))

    def _owned(self, host_id: str, room_id: Optional[str]) -> List[Room]:
        if room_id:
            room = self._rooms.get(room_id)
            return [room] if room and room.host_id == host_id else []
        return [room for room in self._rooms.values() if room.host_id == host_id]

    def heartbeat(self, host_id: str, room_id: Optional[str] = None) -> int:
        """Refresh one owned room, or every room of the host; returns count"""
        rooms = self._owned(host_id, room_id)
        current_time = self.clock()
        for room in rooms:
            room.last_heartbeat_at = current_time
        return len(rooms)

    def close(self, host_id: str, room_id: Optional[str] = None) -> int:
        """Remove one owned room, or every room of the host; returns count"""
        rooms = self._owned(host_id, room_id)
        for room in rooms:
            del self._rooms[room.room_id]
        return len(rooms)

    def find_by_join_code(self, join_code: str) -> Optional[Room]:
        now = self.clock()
        for room in self._rooms.values():
            if room.join_code == join_code and self.is_live(room, now):
                return room
        return None

    def sweep(self) -> int:
        """Drop rooms that have missed their heartbeat window"""
        now = self.clock()
        expired = [
            room_id for room_id, room in self._rooms.items()
            if not self.is_live(room, now)
        ]
        for room_id in expired:
            del self._rooms[room_id]
        return len(expired)
