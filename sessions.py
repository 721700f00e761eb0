import logging
import secrets
import string
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple, Dict

from clock import Clock, now_ms, is_fresh

logger = logging.getLogger(__name__)

ROLES = ("host", "player")
TOKEN_ALPHABET = string.ascii_uppercase + string.digits
TOKEN_LENGTH = 10

Address = Tuple[str, int]


def mint_token() -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


def peer_role(role: str) -> str:
    return "player" if role == "host" else "host"


@dataclass(frozen=True)
class Route:
    """Routing index value: which session and role owns an address"""
    session_id: str
    role: str


@dataclass
class Session:
    session_id: str
    room_id: str
    host_token: str
    player_token: str
    created_at: int
    last_seen: int
    host_endpoint: Optional[Address] = None
    player_endpoint: Optional[Address] = None

    @property
    def ready(self) -> bool:
        return self.host_endpoint is not None and self.player_endpoint is not None

    def endpoint(self, role: str) -> Optional[Address]:
        return self.host_endpoint if role == "host" else self.player_endpoint

    def set_endpoint(self, role: str, endpoint: Optional[Address]):
        if role == "host":
            self.host_endpoint = endpoint
        else:
            self.player_endpoint = endpoint

    def token(self, role: str) -> str:
        return self.host_token if role == "host" else self.player_token


class SessionStore:
    """Relay sessions plus the address -> (session, role) routing index.

    The index is only written by bind and sweep, so an entry always matches
    the endpoint its session currently records for that role.
    """

    def __init__(self, ttl_ms: int, clock: Clock = now_ms):
        self.ttl_ms = ttl_ms
        self.clock = clock
        self._sessions: Dict[str, Session] = {}
        self._routes: Dict[Address, Route] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def routes(self) -> Dict[Address, Route]:
        return dict(self._routes)

    def is_live(self, session: Session, now: Optional[int] = None) -> bool:
        if now is None:
            now = self.clock()
        return is_fresh(session.last_seen, now, self.ttl_ms)

    def create(self, room_id: str) -> Session:
        session_id = str(uuid.uuid4())
        while session_id in self._sessions:
            session_id = str(uuid.uuid4())

        host_token = mint_token()
        player_token = mint_token()
        while player_token == host_token:
            player_token = mint_token()

        current_time = self.clock()
        session = Session(
            session_id=session_id,
            room_id=room_id,
            host_token=host_token,
            player_token=player_token,
            created_at=current_time,
            last_seen=current_time
        )
        self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Optional[Session]:
        """Live session by id; expired-but-unswept sessions are not returned"""
        session = self._sessions.get(session_id)
        if session is None or not self.is_live(session):
            return None
        return session

    def bind(self, session: Session, role: str, address: str, port: int) -> bool:
        """Record the endpoint for one role and return whether both are bound"""
        if role not in ROLES:
            raise ValueError(f"invalid_role: {role}")

        endpoint = (address, port)
        previous = session.endpoint(role)
        if previous is not None and previous != endpoint:
            self._retire(previous, session.session_id, role)

        owner = self._routes.get(endpoint)
        if owner is not None and owner != Route(session.session_id, role):
            displaced = self._sessions.get(owner.session_id)
            if displaced is not None and displaced.endpoint(owner.role) == endpoint:
                displaced.set_endpoint(owner.role, None)
            logger.info(
                f"{address}:{port} rebound from {owner.session_id}/{owner.role} "
                f"to {session.session_id}/{role}"
            )

        session.set_endpoint(role, endpoint)
        self._routes[endpoint] = Route(session.session_id, role)
        session.last_seen = self.clock()
        return session.ready

    def _retire(self, endpoint: Address, session_id: str, role: str):
        if self._routes.get(endpoint) == Route(session_id, role):
            del self._routes[endpoint]

    def forward_target(self, source: Address) -> Optional[Address]:
        """Resolve where a datagram from `source` should go.

        Returns None when the sender is unknown, its session has expired or
        the other side has not bound yet. A resolved sender refreshes its
        session's lastSeen even when the peer is still missing.
        """
        route = self._routes.get(source)
        if route is None:
            return None

        session = self._sessions.get(route.session_id)
        now = self.clock()
        if session is None or not self.is_live(session, now):
            return None

        session.last_seen = now
        return session.endpoint(peer_role(route.role))

    def sweep(self) -> int:
        """Drop sessions idle past the TTL together with their routes"""
        now = self.clock()
        expired = [s for s in self._sessions.values() if not self.is_live(s, now)]
        for session in expired:
            for role in ROLES:
                endpoint = session.endpoint(role)
                if endpoint is not None:
                    self._retire(endpoint, session.session_id, role)
            del self._sessions[session.session_id]
        return len(expired)
