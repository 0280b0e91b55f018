"""
Runtime configuration read from the environment.

Integration credentials are not here: they live in the
integration_settings table and are loaded by each integration.
"""

import os
from dataclasses import dataclass


@dataclass
class Settings:
    environment: str = "dev"
    database_url: str = "sqlite:///crm.db"
    log_level: str = "INFO"
    graph_api_url: str = "https://graph.facebook.com/v20.0"
    http_timeout: float = 15.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            environment=os.environ.get("ENVIRONMENT", "dev"),
            database_url=os.environ.get("DATABASE_URL", "sqlite:///crm.db"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            graph_api_url=os.environ.get("GRAPH_API_URL", "https://graph.facebook.com/v20.0").rstrip("/"),
            http_timeout=float(os.environ.get("HTTP_TIMEOUT", 15)),
        )
