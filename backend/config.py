"""
Client settings: defaults, environment overrides, websocket connect options.
"""

from __future__ import annotations

import os
import ssl
from functools import partial
from typing import List, Mapping, Optional

import websockets
from pydantic import BaseModel, field_validator

ENV_PREFIX = "NETVIEW_"
DEFAULT_SERVER_URL = "wss://127.0.0.1:7200/rest"
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class Settings(BaseModel):
    server_url: str = DEFAULT_SERVER_URL
    verify_tls: bool = False  # the capture server ships a self-signed cert
    poll_interval: float = 1.0
    reconnect_delay: float = 1.0
    open_timeout: float = 10.0
    host: str = "127.0.0.1"
    port: int = 8000
    pause_when_idle: bool = True
    listen: List[str] = []
    log_level: str = "INFO"

    @field_validator("server_url")
    @classmethod
    def _check_scheme(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("server_url must be a ws:// or wss:// URL")
        return v

    @field_validator("poll_interval", "reconnect_delay", "open_timeout")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("listen", mode="before")
    @classmethod
    def _split_listen(cls, v):
        if isinstance(v, str):
            return [name.strip() for name in v.split(",") if name.strip()]
        return v

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> Settings:
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)

    def ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.server_url.startswith("wss://"):
            return None
        context = ssl.create_default_context()
        if not self.verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def connector(self):
        """Zero-argument coroutine factory opening the server websocket."""
        return partial(
            websockets.connect,
            self.server_url,
            ssl=self.ssl_context(),
            open_timeout=self.open_timeout,
        )
