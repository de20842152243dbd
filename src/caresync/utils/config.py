"""Configuration for caresync.

Configuration is stored in ~/.caresync/config.toml
Store databases live in ~/.caresync/stores/<name>.db (SQLite)
"""

from __future__ import annotations

import logging
import os
import platform
import re
import tomllib
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from caresync.storage.base import VersionStore

logger = logging.getLogger(__name__)

# Valid store name: alphanumeric, hyphens, underscores, dots (no path separators)
_STORE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_\-\.]+$")

# Valid user id: same as store names plus @ (for emails)
_USER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-\.@]*$")

# Device ids are uuid4 hex strings
_DEVICE_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")

VALID_POLICIES = ("keep-remote", "keep-device")


def get_caresync_dir() -> Path:
    """Get the data directory.

    Priority:
    1. CARESYNC_DIR environment variable
    2. ~/.caresync/
    """
    env_dir = os.environ.get("CARESYNC_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".caresync"


def is_valid_store_name(name: str) -> bool:
    return bool(_STORE_NAME_PATTERN.match(name))


def is_valid_user_id(user_id: str) -> bool:
    return len(user_id) <= 128 and bool(_USER_ID_PATTERN.match(user_id))


def _toml_str(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@dataclass
class RemoteConfig:
    """Where and how the device synchronizes."""

    url: str = ""
    user_id: str = ""
    timeout: float = 30.0
    conflict_policy: str = "keep-remote"
    ca_file: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "user_id": self.user_id,
            "timeout": self.timeout,
            "conflict_policy": self.conflict_policy,
            "ca_file": self.ca_file,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteConfig:
        policy = str(data.get("conflict_policy", "keep-remote"))
        return cls(
            url=str(data.get("url", "")),
            user_id=str(data.get("user_id", "")),
            timeout=float(data.get("timeout", 30.0)),
            conflict_policy=policy if policy in VALID_POLICIES else "keep-remote",
            ca_file=str(data.get("ca_file", "")),
        )


@dataclass
class ServerConfig:
    """Settings for ``caresync serve``."""

    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:*", "http://127.0.0.1:*"]
    )

    def to_dict(self) -> dict[str, Any]:
        return {"host": self.host, "port": self.port, "cors_origins": list(self.cors_origins)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerConfig:
        return cls(
            host=str(data.get("host", "127.0.0.1")),
            port=int(data.get("port", 8000)),
            cors_origins=list(
                data.get("cors_origins", ["http://localhost:*", "http://127.0.0.1:*"])
            ),
        )


@dataclass
class DeviceConfig:
    """Identity this installation syncs under.

    The id names the device's dirty flags on a document-store remote, so it
    is generated once and kept in the config file from then on.
    """

    id: str = ""
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeviceConfig:
        device_id = str(data.get("id", ""))
        return cls(
            id=device_id if _DEVICE_ID_PATTERN.match(device_id) else "",
            name=str(data.get("name", "")),
        )

    @classmethod
    def generate(cls, name: str = "") -> DeviceConfig:
        return cls(id=uuid.uuid4().hex, name=name or platform.node() or "unknown")


@dataclass
class SchedulerConfig:
    interval: float = 5.0
    sync_on_change: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"interval": self.interval, "sync_on_change": self.sync_on_change}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchedulerConfig:
        return cls(
            interval=float(data.get("interval", 5.0)),
            sync_on_change=bool(data.get("sync_on_change", False)),
        )


@dataclass
class CareSyncConfig:
    """Configuration shared by the CLI and the server."""

    data_dir: Path = field(default_factory=get_caresync_dir)
    current_store: str = "default"
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig.generate)
    server: ServerConfig = field(default_factory=ServerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    json_output: bool = False
    version: str = "1.0"

    @classmethod
    def load(cls, config_path: Path | None = None) -> CareSyncConfig:
        """Load configuration from file, or create default if doesn't exist."""
        if config_path is None:
            data_dir = get_caresync_dir()
            config_path = data_dir / "config.toml"
        else:
            data_dir = config_path.parent

        if not config_path.exists():
            config = cls(data_dir=data_dir)
            config.save()
        else:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
            current = str(data.get("current_store", "default"))
            config = cls(
                data_dir=data_dir,
                current_store=current if is_valid_store_name(current) else "default",
                remote=RemoteConfig.from_dict(data.get("remote", {})),
                device=DeviceConfig.from_dict(data.get("device", {})),
                server=ServerConfig.from_dict(data.get("server", {})),
                scheduler=SchedulerConfig.from_dict(data.get("scheduler", {})),
                json_output=data.get("cli", {}).get("json_output", False),
                version=data.get("version", "1.0"),
            )
            if not config.device.id:
                config.device = DeviceConfig.generate(config.device.name)
                logger.info("Registered device %s", config.device.id)
                config.save()
        config._apply_env()
        return config

    def _apply_env(self) -> None:
        """Environment variables override the file."""
        url = os.environ.get("CARESYNC_REMOTE_URL")
        if url:
            self.remote.url = url
        user_id = os.environ.get("CARESYNC_USER_ID")
        if user_id is not None and is_valid_user_id(user_id):
            self.remote.user_id = user_id
        host = os.environ.get("CARESYNC_HOST")
        if host:
            self.server.host = host
        port = os.environ.get("CARESYNC_PORT")
        if port:
            try:
                self.server.port = int(port)
            except ValueError:
                logger.warning("Ignoring invalid CARESYNC_PORT=%s", port)

    def save(self) -> None:
        """Save configuration to TOML file (atomic write via temp+rename)."""
        import tempfile

        self.data_dir.mkdir(parents=True, exist_ok=True)
        config_path = self.data_dir / "config.toml"

        if not is_valid_store_name(self.current_store):
            raise ValueError("Invalid store name for config save")
        if not is_valid_user_id(self.remote.user_id):
            raise ValueError("Invalid user id for config save")

        origins = ", ".join(_toml_str(o) for o in self.server.cors_origins)
        lines = [
            "# caresync configuration",
            "",
            f"version = {_toml_str(self.version)}",
            f"current_store = {_toml_str(self.current_store)}",
            "",
            "[remote]",
            f"url = {_toml_str(self.remote.url)}",
            f"user_id = {_toml_str(self.remote.user_id)}",
            f"timeout = {float(self.remote.timeout)}",
            f"conflict_policy = {_toml_str(self.remote.conflict_policy)}",
            f"ca_file = {_toml_str(self.remote.ca_file)}",
            "",
            "[device]",
            f"id = {_toml_str(self.device.id)}",
            f"name = {_toml_str(self.device.name)}",
            "",
            "[server]",
            f"host = {_toml_str(self.server.host)}",
            f"port = {int(self.server.port)}",
            f"cors_origins = [{origins}]",
            "",
            "[scheduler]",
            f"interval = {float(self.scheduler.interval)}",
            f"sync_on_change = {'true' if self.scheduler.sync_on_change else 'false'}",
            "",
            "[cli]",
            f"json_output = {'true' if self.json_output else 'false'}",
        ]

        content = "\n".join(lines) + "\n"
        fd, tmp_path = tempfile.mkstemp(dir=str(self.data_dir), suffix=".toml.tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            Path(tmp_path).replace(config_path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    @property
    def stores_dir(self) -> Path:
        return self.data_dir / "stores"

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.toml"

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_dir": str(self.data_dir),
            "current_store": self.current_store,
            "remote": self.remote.to_dict(),
            "device": self.device.to_dict(),
            "server": self.server.to_dict(),
            "scheduler": self.scheduler.to_dict(),
            "json_output": self.json_output,
            "version": self.version,
        }

    def get_store_db_path(self, store_name: str | None = None) -> Path:
        """Get path to a store's SQLite database.

        Raises:
            ValueError: If the name contains invalid characters
        """
        name = store_name or self.current_store
        if not is_valid_store_name(name):
            raise ValueError(
                "Invalid store name: must contain only "
                "alphanumeric characters, hyphens, underscores, or dots"
            )
        db_path = (self.stores_dir / f"{name}.db").resolve()
        if not db_path.is_relative_to(self.stores_dir.resolve()):
            raise ValueError("Invalid store name: path traversal detected")
        return db_path

    def set_remote(self, url: str, user_id: str | None = None) -> None:
        """Point the device at a remote and save config."""
        if url and not url.startswith(("http://", "https://")):
            raise ValueError("Remote URL must start with http:// or https://")
        if user_id is not None:
            if not is_valid_user_id(user_id):
                raise ValueError("Invalid user id")
            self.remote.user_id = user_id
        self.remote.url = url
        self.save()


# Singleton instance for easy access
_config: CareSyncConfig | None = None

# Cached store instances keyed by db path string
_store_cache: dict[str, VersionStore] = {}


def get_config(reload: bool = False) -> CareSyncConfig:
    """Get the configuration (singleton).

    Args:
        reload: Force reload from disk
    """
    global _config
    if _config is None or reload:
        _config = CareSyncConfig.load()
    return _config


async def get_shared_store(store_name: str | None = None) -> VersionStore:
    """Get the SQLite store for a name, opening it on first use.

    Store instances are cached per database path so the CLI, the server
    and a background scheduler in one process share a single connection.
    """
    from caresync.storage.factory import create_store

    config = get_config()
    db_path = config.get_store_db_path(store_name)
    cache_key = str(db_path)

    cached = _store_cache.get(cache_key)
    if cached is not None:
        return cached

    store = await create_store(db_path)
    _store_cache[cache_key] = store
    logger.debug("Opened shared store %s at %s", store.clock_id, db_path)
    return store


async def close_shared_stores() -> None:
    """Close and forget every cached store."""
    stores = list(_store_cache.values())
    _store_cache.clear()
    for store in stores:
        try:
            await store.close()
        except Exception:
            logger.warning("Failed to close store %s", store.clock_id, exc_info=True)
