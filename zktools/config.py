"""
Runtime settings, read from ZK_* environment variables.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .const import DEFAULT_LISTEN_PORT, DEFAULT_PORT

NO_TIMEOUT = ("none", "off")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ZK_", env_ignore_empty=True)

    device_ip: Optional[str] = None
    device_port: int = DEFAULT_PORT
    timeout: Optional[float] = Field(10.0, gt=0)
    bulk_timeout: Optional[float] = Field(None, gt=0)   # None = no timeout, TCP keepalive
    listen_port: int = DEFAULT_LISTEN_PORT
    password: Optional[int] = None
    force_udp: bool = False
    settle_delay: float = Field(1.5, ge=0)
    max_template_size: int = 2000
    max_uid: int = 3000
    log_batch_size: int = Field(500, gt=0)
    log_dir: Optional[str] = None

    @field_validator("timeout", "bulk_timeout", mode="before")
    @classmethod
    def no_timeout(cls, v):
        """ZK_TIMEOUT=none (or off) disables the socket timeout"""
        if isinstance(v, str) and v.strip().lower() in NO_TIMEOUT:
            return None
        return v

    @classmethod
    def from_env(cls):
        return cls()
