"""Service configuration loaded from GRAPHSHEET_* environment variables."""

from __future__ import annotations

import sys
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class GraphsheetSettings(BaseSettings):
    """Graphsheet Execution Runtime settings.

    All fields are read from environment variables with the ``GRAPHSHEET_``
    prefix.  For example, ``GRAPHSHEET_LOG_LEVEL=DEBUG`` maps to ``log_level``.

    Credentials present in the service environment are **not** forwarded to
    sandboxed processes; only names listed in ``env_allowlist`` are.
    """

    model_config = SettingsConfigDict(
        env_prefix="GRAPHSHEET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"

    # -- Infrastructure --------------------------------------------------------
    database_url: str | None = None
    """PostgreSQL connection string (psycopg).  Required for sheet records."""

    # -- Data storage ----------------------------------------------------------
    data_root: str = "./data"
    """Unified root directory for managed data (workspaces, graphs)."""

    data_prefix: str | None = None
    """Optional namespace prefix inserted into all data paths.

    When set, all paths become ``{data_root}/{data_prefix}/...``.
    """

    graph_store: Literal["local", "s3"] = "local"

    # S3 (only when graph_store = "s3")
    s3_endpoint: str | None = None
    s3_bucket: str | None = None
    s3_region: str | None = None
    s3_access_key: str | None = None
    s3_secret_key: SecretStr | None = None
    s3_path_style: bool = False
    """Use path-style addressing (required by MinIO and some S3-compatible services)."""

    # -- Server ----------------------------------------------------------------
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3001
    graceful_shutdown_timeout: int = 60
    """Seconds to wait for running sheets to finish during shutdown.

    After this timeout, remaining processes are terminated.
    """

    # -- Sandbox ---------------------------------------------------------------
    python_executable: str = Field(default_factory=lambda: sys.executable)
    """Interpreter used to run sheet code."""

    execution_timeout: float = 300.0
    """Wall-clock limit per run in seconds.  ``0`` disables the limit."""

    max_output_bytes: int = 1024 * 1024
    """Output budget per run.  Exceeding it kills the process."""

    terminate_grace: float = 2.0
    """Seconds between SIGTERM and SIGKILL on explicit termination."""

    env_allowlist: list[str] = Field(default_factory=lambda: ["PATH", "LANG", "LC_ALL", "TZ"])
    """Environment variables copied from the service into sandboxed processes."""

    checkpoint_marker: str = "::graphsheet:checkpoint::"
    """Marker printed by sheet code to request graph extraction."""

    # -- Sessions / transport --------------------------------------------------
    reattach_grace_period: float = 30.0
    """Seconds a session survives with no attached connection."""

    outbound_queue_size: int = 1024
    """Pending events per connection before it is dropped as too slow."""


def get_settings() -> GraphsheetSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``get_settings.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> GraphsheetSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return GraphsheetSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
