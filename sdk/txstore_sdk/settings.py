"""
Client settings for TxStore SDK.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    """Client configuration, read from TXSTORE_* environment variables."""

    host: str = Field(default="localhost")
    port: int = Field(default=50051)
    project_id: str = Field(default="default")
    namespace: str = Field(default="")
    secure: bool = Field(default=False)
    timeout_seconds: float = Field(default=30.0, description="Per-RPC deadline")

    model_config = {"env_prefix": "TXSTORE_"}

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"
