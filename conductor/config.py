"""
Configuration Management for conductor.

WHAT THIS FILE DOES:
-------------------
Loads configuration from YAML files with sensible defaults. Every section
is optional; a missing file means "all defaults".

CONFIG FILE LOCATION:
--------------------
First match wins:
    1. ~/.conductor/config.yaml
    2. ./conductor.yaml
    3. ./conductor.yml

CONFIG FORMAT:
-------------
```yaml
model:
  provider: "openai"
  model: "gpt-4o"
  fast_model: "gpt-4o-mini"
  api_key_env: "OPENAI_API_KEY"

engine:
  token_limit: 64000
  stream: true          # false: one plain request per round trip

sessions:
  directory: "~/.conductor/sessions"
  max_age_days: 30

memory:
  project_file: "AGENTS.md"
  user_file: "~/.conductor/AGENTS.md"

tasks:
  max_completed: 50     # omit to keep every finished task

logging:
  level: "INFO"
  file: "~/.conductor/conductor.log"

hooks:                  # see conductor/hooks.py
  PreToolUse:
    - matcher: "bash"
      command: "./scripts/guard.sh"
```
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .hooks import HookConfig, parse_hooks


# =============================================================================
# CONFIGURATION DATA CLASSES
# =============================================================================

@dataclass
class ModelConfig:
    """Configuration for the model provider."""
    provider: str = "openai"
    model: str = "gpt-4o"
    fast_model: Optional[str] = None
    api_key_env: Optional[str] = "OPENAI_API_KEY"
    base_url: Optional[str] = None

    def get_api_key(self, default_env: Optional[str] = None) -> Optional[str]:
        """Get API key from environment variable."""
        env_name = self.api_key_env or default_env
        if env_name:
            return os.environ.get(env_name)
        return None

    def to_dict(self) -> dict:
        result = {
            "provider": self.provider,
            "model": self.model,
        }
        if self.fast_model:
            result["fast_model"] = self.fast_model
        if self.api_key_env:
            result["api_key_env"] = self.api_key_env
        if self.base_url:
            result["base_url"] = self.base_url
        return result


@dataclass
class EngineConfig:
    """Conversation loop settings."""
    token_limit: int = 64000
    system_prompt: Optional[str] = None
    stream: bool = True


@dataclass
class SessionConfig:
    directory: str = "~/.conductor/sessions"
    max_age_days: int = 30

    @property
    def directory_path(self) -> Path:
        """Get directory path, expanding ~ if present."""
        return Path(self.directory).expanduser()


@dataclass
class MemoryConfig:
    project_file: str = "AGENTS.md"
    user_file: str = "~/.conductor/AGENTS.md"

    @property
    def user_file_path(self) -> Path:
        return Path(self.user_file).expanduser()


@dataclass
class TaskConfig:
    """Background task settings. max_completed=None keeps every finished task."""
    max_completed: Optional[int] = None


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class Config:
    """
    Complete configuration for conductor.

    This is the main configuration object that holds all settings.
    It can be loaded from a YAML file or created with defaults.
    """
    model: ModelConfig = field(default_factory=ModelConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    tasks: TaskConfig = field(default_factory=TaskConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    hooks: list[HookConfig] = field(default_factory=list)


def get_default_config() -> Config:
    """Defaults that work out of the box (given OPENAI_API_KEY)."""
    return Config()


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================

def _parse_config(data: dict) -> Config:
    """Parse a complete configuration from dict."""
    config = get_default_config()

    if "model" in data:
        model_data = data["model"] or {}
        provider = model_data.get("provider", "openai")
        config.model = ModelConfig(
            provider=provider,
            model=model_data.get("model", "gpt-4o"),
            fast_model=model_data.get("fast_model"),
            api_key_env=model_data.get(
                "api_key_env", "OPENAI_API_KEY" if provider == "openai" else None
            ),
            base_url=model_data.get("base_url"),
        )

    if "engine" in data:
        engine_data = data["engine"] or {}
        config.engine = EngineConfig(
            token_limit=int(engine_data.get("token_limit", 64000)),
            system_prompt=engine_data.get("system_prompt"),
            stream=bool(engine_data.get("stream", True)),
        )

    if "sessions" in data:
        sessions_data = data["sessions"] or {}
        config.sessions = SessionConfig(
            directory=sessions_data.get("directory", "~/.conductor/sessions"),
            max_age_days=int(sessions_data.get("max_age_days", 30)),
        )

    if "memory" in data:
        memory_data = data["memory"] or {}
        config.memory = MemoryConfig(
            project_file=memory_data.get("project_file", "AGENTS.md"),
            user_file=memory_data.get("user_file", "~/.conductor/AGENTS.md"),
        )

    if "tasks" in data:
        tasks_data = data["tasks"] or {}
        max_completed = tasks_data.get("max_completed")
        config.tasks = TaskConfig(
            max_completed=int(max_completed) if max_completed is not None else None,
        )

    if "logging" in data:
        logging_data = data["logging"] or {}
        config.logging = LoggingConfig(
            level=str(logging_data.get("level", "INFO")).upper(),
            file=logging_data.get("file"),
        )

    if "hooks" in data:
        config.hooks = parse_hooks(data["hooks"])

    return config


def _default_paths() -> list[Path]:
    return [
        Path.home() / ".conductor" / "config.yaml",
        Path("./conductor.yaml"),
        Path("./conductor.yml"),
    ]


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to config file. If None, tries the default locations
              and falls back to defaults

    Returns:
        Loaded configuration (or defaults if no file found)

    Raises:
        FileNotFoundError: If an explicit path does not exist
    """
    if path:
        path = Path(path).expanduser()
        if path.exists():
            return load_config_from_file(path)
        raise FileNotFoundError(f"Config file not found: {path}")

    config_path = get_config_path()
    if config_path:
        return load_config_from_file(config_path)

    return get_default_config()


def load_config_from_file(path: Path) -> Config:
    """
    Load configuration from a specific file.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is invalid
    """
    path = Path(path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    return _parse_config(data)


def save_config(config: Config, path: Path) -> None:
    """
    Save configuration to a YAML file.

    Args:
        config: Configuration to save
        path: Output path
    """
    data = {
        "model": config.model.to_dict(),
        "engine": {
            "token_limit": config.engine.token_limit,
            "stream": config.engine.stream,
        },
        "sessions": {
            "directory": config.sessions.directory,
            "max_age_days": config.sessions.max_age_days,
        },
        "memory": {
            "project_file": config.memory.project_file,
            "user_file": config.memory.user_file,
        },
        "tasks": {},
        "logging": {
            "level": config.logging.level,
        },
    }

    if config.engine.system_prompt:
        data["engine"]["system_prompt"] = config.engine.system_prompt
    if config.tasks.max_completed is not None:
        data["tasks"]["max_completed"] = config.tasks.max_completed
    if config.logging.file:
        data["logging"]["file"] = config.logging.file
    if config.hooks:
        data["hooks"] = {}
        for hook in config.hooks:
            data["hooks"].setdefault(hook.event, []).append(hook.to_dict())

    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def get_config_path() -> Optional[Path]:
    """
    Get the path to the active config file, if any exists.

    Returns:
        Path to config file or None if using defaults
    """
    for path in _default_paths():
        if path.exists():
            return path
    return None
