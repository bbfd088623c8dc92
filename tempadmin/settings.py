from __future__ import annotations

"""Application-level configuration helpers (env → constants / Settings).

``ALLOWED_ORIGINS`` stays a plain module constant because CORS is wired once
at import time. Everything the lifecycle services need is gathered into a
:class:`Settings` instance that ``create_app`` builds and hands down, so tests
can construct their own without touching ``os.environ``.
"""

# Standard library
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from tempadmin import APP_ENV
from tempadmin.errors import ConfigError
from tempadmin.utils.utils import get_env_bool, get_env_int, parse_int_list

__all__ = ["ALLOWED_ORIGINS", "APPROVAL_RATE_LIMIT", "DEFAULT_DURATIONS", "Settings"]

DEFAULT_DURATIONS: list[int] = [2, 5, 10, 20, 60, 120]
MIN_SECRET_LENGTH = 32
KNOWN_BACKENDS = {"dseditgroup", "gpasswd", "memory"}


def _collect_origins() -> list[str]:
    """Collect allowed CORS origins from the environment.

    Falls back to the local dashboard dev-server so hot-reload keeps working
    when no explicit env vars are set.
    """
    origins: list[str] = []
    for name in ("FRONTEND_ORIGIN", "DASHBOARD_ORIGIN", "EXTRA_ORIGIN"):
        if (val := os.getenv(name)):
            origins.append(val)

    if not origins:
        origins.extend(["http://localhost:3001", "http://127.0.0.1:3001"])
    return origins


ALLOWED_ORIGINS: list[str] = _collect_origins()

# slowapi limit strings are bound when routes are decorated, so this one is
# read once at import rather than carried on Settings.
APPROVAL_RATE_LIMIT: str = os.getenv("APPROVAL_RATE_LIMIT", "10 per 15 minutes")


def _default_data_dir() -> Path:
    return Path.home() / ".tempadmin"


def _default_backend(app_env: str) -> str:
    if app_env == "development":
        return "memory"
    return "dseditgroup" if sys.platform == "darwin" else "gpasswd"


@dataclass
class Settings:
    """Runtime configuration for one service process."""

    token_secret: str
    app_env: str = "production"
    token_expiration_minutes: int = 15
    token_sweep_interval_seconds: int = 300
    data_dir: Path = field(default_factory=_default_data_dir)
    allowed_durations: list[int] = field(default_factory=lambda: list(DEFAULT_DURATIONS))
    expiry_warning_minutes: int = 5
    app_server_url: str = "http://localhost:3000"
    webhook_url: str | None = None
    webhook_timeout_seconds: float = 10.0
    admin_key_hash: str | None = None
    privilege_backend: str = "memory"
    privilege_group: str = "admin"
    privilege_use_sudo: bool = False
    host: str = "127.0.0.1"
    port: int = 3000

    @property
    def requests_file(self) -> Path:
        return self.data_dir / "requests.json"

    @classmethod
    def from_env(cls) -> "Settings":
        app_env = os.getenv("APP_ENV", APP_ENV)
        data_dir = os.getenv("TEMPADMIN_DATA_DIR")
        return cls(
            token_secret=os.getenv("TOKEN_SECRET", ""),
            app_env=app_env,
            token_expiration_minutes=get_env_int("TOKEN_EXPIRATION_MINUTES", 15),
            token_sweep_interval_seconds=get_env_int("TOKEN_SWEEP_INTERVAL_SECONDS", 300),
            data_dir=Path(data_dir).expanduser() if data_dir else _default_data_dir(),
            allowed_durations=parse_int_list(os.getenv("ALLOWED_DURATIONS"), DEFAULT_DURATIONS),
            expiry_warning_minutes=get_env_int("EXPIRY_WARNING_MINUTES", 5),
            app_server_url=os.getenv("APP_SERVER_URL", f"http://localhost:{get_env_int('PORT', 3000)}"),
            webhook_url=os.getenv("WEBHOOK_URL") or None,
            webhook_timeout_seconds=float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10")),
            admin_key_hash=os.getenv("ADMIN_KEY_HASH") or None,
            privilege_backend=os.getenv("PRIVILEGE_BACKEND") or _default_backend(app_env),
            privilege_group=os.getenv("PRIVILEGE_GROUP", "admin"),
            privilege_use_sudo=get_env_bool("PRIVILEGE_USE_SUDO", False),
            host=os.getenv("HOST", "127.0.0.1"),
            port=get_env_int("PORT", 3000),
        )

    def validate(self) -> "Settings":
        """Raise :class:`ConfigError` listing every problem, or return ``self``."""
        problems: list[str] = []

        if not self.token_secret:
            problems.append("TOKEN_SECRET is required")
        elif len(self.token_secret) < MIN_SECRET_LENGTH:
            problems.append(f"TOKEN_SECRET must be at least {MIN_SECRET_LENGTH} characters")

        if self.token_expiration_minutes <= 0:
            problems.append("TOKEN_EXPIRATION_MINUTES must be positive")
        if self.token_sweep_interval_seconds <= 0:
            problems.append("TOKEN_SWEEP_INTERVAL_SECONDS must be positive")
        if not self.allowed_durations or any(d <= 0 for d in self.allowed_durations):
            problems.append("ALLOWED_DURATIONS must be a non-empty list of positive minutes")
        if self.expiry_warning_minutes < 0:
            problems.append("EXPIRY_WARNING_MINUTES must not be negative")
        if self.privilege_backend not in KNOWN_BACKENDS:
            problems.append(f"PRIVILEGE_BACKEND must be one of {sorted(KNOWN_BACKENDS)}")
        if self.app_env == "production" and not self.admin_key_hash:
            problems.append("ADMIN_KEY_HASH is required in production")
        if self.app_env == "production" and self.privilege_backend == "memory":
            problems.append("PRIVILEGE_BACKEND=memory is only allowed in development")

        if problems:
            raise ConfigError(problems)
        return self
