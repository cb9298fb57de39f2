from __future__ import annotations

import os
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field


class FlowsConfig(BaseModel):
    """Flow manager housekeeping settings."""

    sweep_interval: Optional[float] = None
    poll_interval: float = 1.0


class AuthConfig(BaseModel):
    """Bearer token verification settings.

    Either ``secret`` (shared-secret HMAC tokens) or ``jwks_url`` (asymmetric
    tokens verified against a JWKS document) should be set.
    """

    secret: Optional[str] = None
    jwks_url: str = ""
    audience: str = ""
    issuer: str = ""
    leeway: int = 30
    algorithms: List[str] = Field(default_factory=lambda: ["HS256"])
    user_id_claim: str = "id"


class ServerConfig(BaseModel):
    """HTTP server bind settings."""

    host: str = "127.0.0.1"
    port: int = 8000


class FlowStateConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    flows: FlowsConfig = FlowsConfig()
    auth: AuthConfig = AuthConfig()
    server: ServerConfig = ServerConfig()


def load_config(path: Optional[str] = None) -> FlowStateConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWSTATE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWSTATE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowStateConfig(**data)
    else:
        config = FlowStateConfig()

    env_db_url = os.getenv("FLOWSTATE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
