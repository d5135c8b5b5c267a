"""
Configuration management for the Render Agent.

Loads from environment variables, .env file, or JSON config.
"""
import os
import json
import sys
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


def get_agent_home() -> Path:
    """Resolve agent runtime home directory."""
    env_home = os.getenv("AGENT_HOME", "").strip()
    if env_home:
        return Path(env_home)

    if getattr(sys, "frozen", False):
        # Packaged exe runtime
        return Path(sys.executable).resolve().parent

    # Source runtime: repository root
    return Path(__file__).resolve().parents[2]


def default_data_root() -> str:
    return str(get_agent_home() / "data")


def default_log_root() -> str:
    return str(get_agent_home() / "logs")


def _load_env_file(env_file: Optional[str]) -> None:
    if env_file:
        load_dotenv(env_file)
        return

    # Try to find .env in common locations
    for path in [".env", "../.env", "config/.env"]:
        if Path(path).exists():
            load_dotenv(path)
            break


@dataclass
class ServiceConfig:
    """Local HTTP service configuration"""
    host: str = "127.0.0.1"
    port: int = 9200

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            host=os.getenv("RENDER_AGENT_HOST", "127.0.0.1"),
            port=int(os.getenv("RENDER_AGENT_PORT", "9200")),
        )


@dataclass
class EngineConfig:
    """Render engine executable configuration"""
    engine_path: str = ""
    version_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            engine_path=os.getenv("BLENDER_PATH", ""),
            version_timeout=float(os.getenv("ENGINE_VERSION_TIMEOUT", "10")),
        )


@dataclass
class QueueConfig:
    """Queue scheduler configuration"""

    # Dispatch loop tick (seconds)
    poll_interval: float = 1.0

    # Graceful termination window before force kill (seconds)
    terminate_timeout: float = 1.0

    # Upper bound on the delay between a mutation and its write to disk
    flush_delay: float = 1.0

    # Retained history records / buffered UI events
    history_limit: int = 500
    event_buffer_size: int = 1000

    @classmethod
    def from_env(cls) -> "QueueConfig":
        return cls(
            poll_interval=float(os.getenv("QUEUE_POLL_INTERVAL", "1.0")),
            terminate_timeout=float(os.getenv("TERMINATE_TIMEOUT", "1.0")),
            flush_delay=float(os.getenv("FLUSH_DELAY", "1.0")),
            history_limit=int(os.getenv("HISTORY_LIMIT", "500")),
            event_buffer_size=int(os.getenv("EVENT_BUFFER_SIZE", "1000")),
        )


@dataclass
class AgentConfig:
    """Combined configuration for the agent runtime."""
    service: ServiceConfig = field(default_factory=ServiceConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)

    # Paths
    data_root: str = field(default_factory=default_data_root)
    log_root: str = field(default_factory=default_log_root)

    @property
    def store_path(self) -> Path:
        return Path(self.data_root) / "render_agent.json"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "AgentConfig":
        """Load config from environment variables"""
        _load_env_file(env_file)

        return cls(
            service=ServiceConfig.from_env(),
            engine=EngineConfig.from_env(),
            queue=QueueConfig.from_env(),
            data_root=os.getenv("DATA_ROOT", default_data_root()),
            log_root=os.getenv("LOG_ROOT", default_log_root()),
        )

    @classmethod
    def from_json(cls, json_path: str) -> "AgentConfig":
        """Load config from JSON file"""
        with open(json_path, "r") as f:
            data = json.load(f)

        return cls(
            service=ServiceConfig(**data.get("service", {})),
            engine=EngineConfig(**data.get("engine", {})),
            queue=QueueConfig(**data.get("queue", {})),
            data_root=data.get("data_root", default_data_root()),
            log_root=data.get("log_root", default_log_root()),
        )

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "AgentConfig":
        """
        Load configuration from file or environment.
        Priority: config_path > env vars > defaults
        """
        if config_path and Path(config_path).exists():
            return cls.from_json(config_path)

        # Fall back to environment variables
        return cls.from_env()
