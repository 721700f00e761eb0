from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress, field_validator, model_validator
from pydantic.alias_generators import to_camel
from typing import Optional

DEFAULT_GAME_PORT = 19132


def _text(value, default: str = "", limit: Optional[int] = None) -> str:
    """Coerce a loosely typed JSON value to a trimmed, length-capped string"""
    if value is None or value == "":
        value = default
    text = str(value).strip()
    return text[:limit] if limit else text


def _port(value, default: Optional[int], error: str) -> Optional[int]:
    if value is None or value == "" or value == 0:
        return default
    if isinstance(value, bool):
        raise ValueError(error)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(error)
    if not number.is_integer() or number < 1 or number > 65535:
        raise ValueError(error)
    return int(number)


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Room directory

class ConnectInfo(ApiModel):
    type: str = "direct"
    ip: str = ""
    port: int = DEFAULT_GAME_PORT

    @field_validator('type', mode='before')
    @classmethod
    def validate_type(cls, v):
        return _text(v, "direct")

    @field_validator('ip', mode='before')
    @classmethod
    def validate_ip(cls, v):
        # Empty means "address hidden"
        return _text(v, "", 128)

    @field_validator('port', mode='before')
    @classmethod
    def validate_port(cls, v):
        return _port(v, DEFAULT_GAME_PORT, "invalid_port")


class RoomOpenRequest(ApiModel):
    host_id: str = ""
    host_name: str = "Host"
    world_name: str = "Bedrock world"
    game_version: str = ""
    mode: str = "survival"
    connect: ConnectInfo = Field(default_factory=ConnectInfo)
    is_private: bool = False
    join_code: Optional[str] = None
    max_players: int = 10

    @field_validator('host_id', mode='before')
    @classmethod
    def validate_host_id(cls, v):
        return _text(v)

    @field_validator('host_name', mode='before')
    @classmethod
    def validate_host_name(cls, v):
        return _text(v, "Host", 40)

    @field_validator('world_name', mode='before')
    @classmethod
    def validate_world_name(cls, v):
        return _text(v, "Bedrock world", 80)

    @field_validator('game_version', 'mode', mode='before')
    @classmethod
    def validate_short_fields(cls, v, info):
        return _text(v, "survival" if info.field_name == "mode" else "", 24)

    @field_validator('connect', mode='before')
    @classmethod
    def validate_connect(cls, v):
        return {} if v is None else v

    @field_validator('is_private', mode='before')
    @classmethod
    def validate_is_private(cls, v):
        return bool(v)

    @field_validator('join_code', mode='before')
    @classmethod
    def validate_join_code(cls, v):
        code = _text(v, "", 64)
        return code or None

    @field_validator('max_players', mode='before')
    @classmethod
    def validate_max_players(cls, v):
        if v is None or v == "" or v == 0:
            return 10
        try:
            number = float(v)
        except (TypeError, ValueError):
            raise ValueError("invalid_maxPlayers")
        if number != number:
            raise ValueError("invalid_maxPlayers")
        return int(max(1, min(100, number)))

    @model_validator(mode='after')
    def require_host_id(self):
        if not self.host_id:
            raise ValueError("hostId_required")
        return self


class HostScopedRequest(ApiModel):
    """Body of heartbeat and close: a host, optionally narrowed to one room"""
    host_id: str = ""
    room_id: Optional[str] = None

    @field_validator('host_id', mode='before')
    @classmethod
    def validate_host_id(cls, v):
        return _text(v)

    @field_validator('room_id', mode='before')
    @classmethod
    def validate_room_id(cls, v):
        return _text(v) or None

    @model_validator(mode='after')
    def require_host_id(self):
        if not self.host_id:
            raise ValueError("hostId_required")
        return self


class JoinByCodeRequest(ApiModel):
    join_code: str = ""

    @field_validator('join_code', mode='before')
    @classmethod
    def validate_join_code(cls, v):
        return _text(v)

    @model_validator(mode='after')
    def require_join_code(self):
        if not self.join_code:
            raise ValueError("joinCode_required")
        return self


class RoomInfo(ApiModel):
    room_id: str
    host_id: str
    host_name: str
    world_name: str
    game_version: str
    mode: str
    connect: ConnectInfo
    is_private: bool
    max_players: int
    created_at: int
    last_heartbeat_at: int


class RoomPublicInfo(ApiModel):
    """What a join code reveals; no owner, code or timestamps"""
    room_id: str
    host_name: str
    world_name: str
    game_version: str
    mode: str
    connect: ConnectInfo
    is_private: bool


class RoomOpenResponse(ApiModel):
    ok: bool = True
    room_id: str


class RoomListResponse(ApiModel):
    ok: bool = True
    servers: list[RoomInfo]


class HeartbeatResponse(ApiModel):
    ok: bool = True
    updated: int


class CloseResponse(ApiModel):
    ok: bool = True
    removed: int


class JoinByCodeResponse(ApiModel):
    ok: bool = True
    room: RoomPublicInfo


class RegistryHealthResponse(ApiModel):
    ok: bool = True
    service: str
    rooms: int
    ttl_ms: int


# Session relay

class SessionCreateRequest(ApiModel):
    room_id: str = ""
    public_relay_host: Optional[str] = None

    @field_validator('room_id', mode='before')
    @classmethod
    def validate_room_id(cls, v):
        return _text(v)

    @field_validator('public_relay_host', mode='before')
    @classmethod
    def validate_public_relay_host(cls, v):
        return _text(v, "", 255) or None

    @model_validator(mode='after')
    def require_room_id(self):
        if not self.room_id:
            raise ValueError("roomId_required")
        return self


class SessionBindRequest(ApiModel):
    session_id: str = ""
    role: str = ""
    address: Optional[IPvAnyAddress] = None
    port: Optional[int] = None
    token: Optional[str] = None

    @field_validator('session_id', 'role', mode='before')
    @classmethod
    def validate_text_fields(cls, v):
        return _text(v)

    @field_validator('address', mode='before')
    @classmethod
    def validate_address(cls, v):
        # Routed against datagram source addresses, so only literal IPs
        return _text(v, "", 255) or None

    @field_validator('port', mode='before')
    @classmethod
    def validate_port(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        try:
            float(v)
        except (TypeError, ValueError):
            raise ValueError("session_bind_fields_required")
        return _port(v, None, "invalid_port")

    @field_validator('token', mode='before')
    @classmethod
    def validate_token(cls, v):
        return None if v is None else _text(v)

    @model_validator(mode='after')
    def require_fields(self):
        if not (self.session_id and self.role and self.address and self.port):
            raise ValueError("session_bind_fields_required")
        return self


class RelayAddress(ApiModel):
    host: Optional[str] = None
    udp_port: int


class SessionCreateResponse(ApiModel):
    ok: bool = True
    session_id: str
    relay: RelayAddress
    host_token: str
    player_token: str


class SessionBindResponse(ApiModel):
    ok: bool = True
    ready: bool


class SessionInfo(ApiModel):
    session_id: str
    room_id: str
    ready: bool
    last_seen: int
    created_at: int


class SessionStatusResponse(ApiModel):
    ok: bool = True
    session: SessionInfo


class RelayHealthResponse(ApiModel):
    ok: bool = True
    service: str
    sessions: int
    udp_port: int
