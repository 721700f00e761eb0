from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class RegistrySettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Registry configuration
    host: str = "0.0.0.0"
    port: int = 8787
    
    # Room liveness
    room_ttl_ms: int = 60000  # Silence before a room is considered dead
    cleanup_interval: float = 10  # Seconds between sweeps
    
    # Limits
    max_rooms_per_host: int = 3
    max_body_bytes: int = 2_000_000
    
    # Hide connect.ip of private rooms in the public list
    redact_private_addresses: bool = True
    
    # CORS
    allowed_origins: list[str] = ["*"]
    
    log_level: str = "info"


class RelaySettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="RELAY_", extra="ignore")

    # Control plane (HTTP) and data plane (UDP)
    host: str = "0.0.0.0"
    api_port: int = 8790
    udp_port: int = 19140
    
    # Address advertised to clients when create() does not name one
    public_host: Optional[str] = None
    
    # Session liveness
    session_ttl_ms: int = 120000
    cleanup_interval: float = 10
    
    # Reject binds that do not present the role token
    require_tokens: bool = False
    
    max_body_bytes: int = 2_000_000
    allowed_origins: list[str] = ["*"]
    
    log_level: str = "info"
