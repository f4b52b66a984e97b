"""Configuration loading: TOML file + environment variable overlay."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "turnstream"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.toml"


DEFAULT_CONFIG_TOML = """\
[general]
workspace_root = "~/turnstream-workspaces"

[agent]
provider = "droid_cli"
model = ""
reasoning_effort = ""

[agents.anthropic_sdk]
api_key_env = "ANTHROPIC_API_KEY"
base_url = ""
default_model = "claude-sonnet-4-20250514"
max_tokens = 8192

[agents.droid_cli]
binary_path = ""
terminate_grace = 3.0

[stream]
event_timeout = 300.0
post_response_timeout = 5.0
debug_log = false

[mongodb]
uri = "mongodb://localhost:27017"
database = "turnstream"

[server]
host = "127.0.0.1"
port = 8787
pid_file = ""
"""


@dataclass
class MongoConfig:
    uri: str = "mongodb://localhost:27017"
    database: str = "turnstream"


@dataclass
class AgentDefaults:
    provider: str = "droid_cli"
    model: str = ""
    reasoning_effort: str = ""


@dataclass
class AnthropicSdkConfig:
    api_key_env: str = "ANTHROPIC_API_KEY"
    api_key: str = ""
    base_url: str = ""
    default_model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 8192


@dataclass
class DroidCliConfig:
    binary_path: str = ""
    terminate_grace: float = 3.0


@dataclass
class StreamConfig:
    event_timeout: float = 300.0
    post_response_timeout: float = 5.0
    debug_log: bool = False

    @property
    def resolved_post_response_timeout(self) -> float:
        return min(self.event_timeout, self.post_response_timeout)


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8787
    pid_file: str = ""

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def resolved_pid_file(self) -> str:
        return self.pid_file or str(DEFAULT_CONFIG_DIR / "server.pid")


@dataclass
class AppConfig:
    workspace_root: str = "~/turnstream-workspaces"
    agent: AgentDefaults = field(default_factory=AgentDefaults)
    anthropic_sdk: AnthropicSdkConfig = field(default_factory=AnthropicSdkConfig)
    droid_cli: DroidCliConfig = field(default_factory=DroidCliConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    mongodb: MongoConfig = field(default_factory=MongoConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    config_path: Path = DEFAULT_CONFIG_PATH

    @property
    def resolved_workspace_root(self) -> Path:
        return Path(self.workspace_root).expanduser()


def _env_overlay(config: AppConfig) -> None:
    """Override config values with environment variables where applicable."""
    # MongoDB
    if uri := os.environ.get("MONGODB_URI"):
        config.mongodb.uri = uri
    if db := os.environ.get("TURNSTREAM_DB"):
        config.mongodb.database = db

    if droid_path := os.environ.get("DROID_PATH", "").strip():
        config.droid_cli.binary_path = droid_path

    if timeout := os.environ.get("TURNSTREAM_STREAM_TIMEOUT"):
        try:
            config.stream.event_timeout = float(timeout)
        except ValueError:
            pass

    # Resolve API key from env var
    sdk = config.anthropic_sdk
    if sdk.api_key_env:
        sdk.api_key = os.environ.get(sdk.api_key_env, "")


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from TOML file with env var overlay."""
    path = config_path or DEFAULT_CONFIG_PATH

    if path.exists():
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    else:
        raw = tomllib.loads(DEFAULT_CONFIG_TOML)

    general = raw.get("general", {})
    agent_raw = raw.get("agent", {})
    agents_raw = raw.get("agents", {})
    sdk_raw = agents_raw.get("anthropic_sdk", {})
    cli_raw = agents_raw.get("droid_cli", {})
    stream_raw = raw.get("stream", {})
    mongo_raw = raw.get("mongodb", {})
    server_raw = raw.get("server", {})

    config = AppConfig(
        workspace_root=general.get("workspace_root", "~/turnstream-workspaces"),
        agent=AgentDefaults(
            provider=agent_raw.get("provider", "droid_cli"),
            model=agent_raw.get("model", ""),
            reasoning_effort=agent_raw.get("reasoning_effort", ""),
        ),
        anthropic_sdk=AnthropicSdkConfig(
            api_key_env=sdk_raw.get("api_key_env", "ANTHROPIC_API_KEY"),
            base_url=sdk_raw.get("base_url", ""),
            default_model=sdk_raw.get("default_model", "claude-sonnet-4-20250514"),
            max_tokens=sdk_raw.get("max_tokens", 8192),
        ),
        droid_cli=DroidCliConfig(
            binary_path=cli_raw.get("binary_path", ""),
            terminate_grace=cli_raw.get("terminate_grace", 3.0),
        ),
        stream=StreamConfig(
            event_timeout=stream_raw.get("event_timeout", 300.0),
            post_response_timeout=stream_raw.get("post_response_timeout", 5.0),
            debug_log=stream_raw.get("debug_log", False),
        ),
        mongodb=MongoConfig(
            uri=mongo_raw.get("uri", "mongodb://localhost:27017"),
            database=mongo_raw.get("database", "turnstream"),
        ),
        server=ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 8787),
            pid_file=server_raw.get("pid_file", ""),
        ),
        config_path=path,
    )

    _env_overlay(config)
    return config


def init_config(config_path: Path | None = None) -> Path:
    """Create default config file."""
    path = config_path or DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_TOML)
    return path
