"""DevicePair Client Configuration."""

from pathlib import Path

from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    # Endpoints
    api_base_url: str = "http://127.0.0.1:8080/api/v1"
    web_base_url: str = "http://127.0.0.1:3000"

    # Local persistence
    storage_path: Path = Path.home() / ".devicepair" / "client.json"

    # Coarse client signal for the fingerprint
    client_name: str = "devicepair-cli"
    client_version: str = "0.1.0"

    # Pairing poll
    poll_interval_seconds: float = 2.5
    max_wait_seconds: float = 300.0  # 5 minutes
    max_backoff_seconds: float = 30.0

    # Tokens
    refresh_margin_seconds: float = 300.0  # refresh 5 minutes before expiry
    request_timeout_seconds: float = 10.0

    model_config = {"env_prefix": "DEVICEPAIR_CLIENT_"}


client_settings = ClientSettings()
