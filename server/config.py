"""DevicePair Server Configuration."""

import secrets
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Server
    server_name: str = "DevicePair Server"
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False

    # Paths
    data_dir: Path = Path.home() / "devicepair" / "data"

    # Database
    db_path: Path = Path.home() / "devicepair" / "data" / "devicepair.db"

    # Web session (signed by the identity provider)
    session_secret: str = ""
    session_algorithm: str = "HS256"

    # Pairing
    code_length: int = 10
    registration_ttl_seconds: int = 300  # 5 minutes
    link_max_attempts: int = 10
    link_lockout_seconds: int = 600  # 10 minutes

    # Device tokens
    token_bytes: int = 32  # 256 bits
    token_ttl_seconds: int = 86400  # 24 hours

    # Maintenance
    admin_key: str = ""  # empty disables the admin endpoints
    cleanup_interval_seconds: int = 300

    model_config = {"env_prefix": "DEVICEPAIR_"}

    def ensure_dirs(self) -> None:
        """Create all required directories."""
        for d in [self.data_dir, self.db_path.parent]:
            d.mkdir(parents=True, exist_ok=True)

    def ensure_secrets(self) -> None:
        """Generate the session secret if not set, persist it so it survives restarts."""
        secrets_file = self.data_dir / ".secrets"
        saved = {}
        if secrets_file.exists():
            for line in secrets_file.read_text().strip().splitlines():
                if "=" in line:
                    k, v = line.split("=", 1)
                    saved[k.strip()] = v.strip()

        if not self.session_secret:
            self.session_secret = saved.get("session_secret", "") or secrets.token_urlsafe(32)

        secrets_file.write_text(f"session_secret={self.session_secret}\n")


settings = Settings()
settings.ensure_dirs()
settings.ensure_secrets()
