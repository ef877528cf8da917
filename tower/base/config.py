"""
Pydantic configuration model for the CloudTower connection.

Validates the connection config at initialization time instead of
silently passing bad values to the HTTP client.
"""

from __future__ import annotations

import os
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TowerConfig(BaseModel):
    """Configuration for a CloudTower control plane.

    Values are resolved in order:
    1. Explicit values passed in the config dict.
    2. Environment variables (CLOUDTOWER_SERVER, CLOUDTOWER_TOKEN,
       CLOUDTOWER_SCHEME).
    3. Defaults below; ``server`` and ``token`` have none.
    """

    model_config = ConfigDict(extra="forbid")

    server: str = Field(description="CloudTower host, e.g. 'tower.example.com'")
    token: str = Field(description="Bearer token sent with every request")
    scheme: Literal["http", "https"] = Field(default="http", description="URL scheme")
    verify_tls: bool = Field(default=True, description="Verify the server certificate")
    timeout_s: float = Field(default=30.0, gt=0, description="Per-request timeout")
    poll_interval: float = Field(
        default=5.0, ge=0, description="Seconds between two task status polls"
    )
    vm_tools_timeout: float = Field(
        default=600.0, gt=0, description="Hard deadline for the guest agent to come up"
    )

    @model_validator(mode="before")
    @classmethod
    def resolve_from_env(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Fall back to environment variables for missing connection settings."""
        env_map = {
            "server": "CLOUDTOWER_SERVER",
            "token": "CLOUDTOWER_TOKEN",
            "scheme": "CLOUDTOWER_SCHEME",
        }
        values = dict(values)
        for field, env_var in env_map.items():
            if not values.get(field) and os.environ.get(env_var):
                values[field] = os.environ[env_var]
        return values

    @property
    def rest_base_url(self) -> str:
        return f"{self.scheme}://{self.server}/v2/api"

    @property
    def graphql_url(self) -> str:
        return f"{self.scheme}://{self.server}/api"


def validate_config(config: dict | TowerConfig) -> TowerConfig:
    """Validate and return a typed connection config.

    Args:
        config: Raw configuration dictionary (or an already validated model).

    Returns:
        A validated :class:`TowerConfig`.

    Raises:
        pydantic.ValidationError: If the config is invalid.
    """
    if isinstance(config, TowerConfig):
        return config
    return TowerConfig(**config)


__all__ = [
    "TowerConfig",
    "validate_config",
]
