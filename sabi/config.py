import os
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List

import toml

from .exceptions import ConfigurationInvalid

DEFAULT_DANGEROUS_PATTERNS = [
    r"rm\s+-rf\s+/",
    r"mkfs",
    r"dd\s+if=",
    r":\(\)\s*\{",
    r">\s*/dev/sd",
]

DEFAULT_INTERACTIVE_PROGRAMS = [
    "vi",
    "vim",
    "nvim",
    "nano",
    "emacs",
    "pico",
    "joe",
    "ssh",
    "telnet",
    "ftp",
    "sftp",
    "top",
    "htop",
    "btop",
    "watch",
    "less",
    "more",
    "man",
    "mysql",
    "psql",
    "sqlite3",
    "mongo",
]

ENV_OVERRIDES = {
    "SABI_API_KEY": ("api_key", str),
    "SABI_MODEL": ("model", str),
    "SABI_BASE_URL": ("base_url", str),
    "SABI_MAX_HISTORY": ("max_history_messages", int),
    "SABI_MAX_OUTPUT_BYTES": ("max_output_bytes", int),
    "SABI_MAX_OUTPUT_LINES": ("max_output_lines", int),
}


@dataclass
class Config:
    """Declarative configuration class."""

    api_key: str = ""
    proxy: str = ""
    model: str = ""
    debug: bool = False
    base_url: str = ""
    temperature: float = 0.4
    system_prompt: str = ""
    safe_mode: bool = False
    max_history_messages: int = 20
    max_output_bytes: int = 50 * 1024
    max_output_lines: int = 500
    dangerous_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_DANGEROUS_PATTERNS))
    interactive_programs: List[str] = field(default_factory=lambda: list(DEFAULT_INTERACTIVE_PROGRAMS))

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Create Config instance from dictionary."""
        return cls(**{key: value for key, value in data.items() if key in cls.__annotations__})

    def to_dict(self) -> dict:
        """Convert Config to dictionary."""
        return {key: value for key, value in asdict(self).items()}

    def apply_env_overrides(self, environ=None) -> None:
        """Override file values with SABI_* environment variables. Bad integers are ignored."""
        environ = os.environ if environ is None else environ
        for env_key, (attr, caster) in ENV_OVERRIDES.items():
            raw = environ.get(env_key)
            if raw is None:
                continue
            try:
                setattr(self, attr, caster(raw))
            except ValueError:
                continue

    def validate(self) -> None:
        """Raise ConfigurationInvalid when the session cannot start with these values."""
        for key in ("api_key", "model", "base_url"):
            if not str(getattr(self, key) or "").strip():
                raise ConfigurationInvalid(f"Missing required setting: {key}")

        for key in ("max_history_messages", "max_output_bytes", "max_output_lines"):
            value = getattr(self, key)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigurationInvalid(f"{key} must be a positive integer, got {value!r}")

        if not isinstance(self.dangerous_patterns, list):
            raise ConfigurationInvalid("dangerous_patterns must be a list of regular expressions")
        for pattern in self.dangerous_patterns:
            try:
                re.compile(pattern)
            except (re.error, TypeError) as exc:
                raise ConfigurationInvalid(f"Invalid dangerous pattern {pattern!r}: {exc}") from exc

        if not isinstance(self.interactive_programs, list) or not all(
            isinstance(name, str) and name.strip() for name in self.interactive_programs
        ):
            raise ConfigurationInvalid("interactive_programs must be a list of program names")


class ConfigManager:
    """Manages configuration storage and retrieval (TOML version)."""

    def __init__(self, config_file: Path = None):
        self.config_file = config_file or Path.home() / ".sabi_config.toml"
        self.default_config = Config()

    def save_config(self, **kwargs) -> None:
        """Save configuration to hidden TOML file in user's home directory."""
        try:
            config = self._load_file()
            config_dict = config.to_dict()

            for key, value in kwargs.items():
                if value is not None and key in config_dict:
                    config_dict[key] = value

            with open(self.config_file, "w", encoding="utf-8") as file_obj:
                toml.dump(config_dict, file_obj)

            self.config_file.chmod(0o600)
        except OSError as exc:
            raise ConfigurationInvalid(f"Failed to save config: {exc}") from exc

    def load_config(self) -> Config:
        """Load configuration from the TOML file, then apply environment overrides."""
        config = self._load_file()
        config.apply_env_overrides()
        return config

    def _load_file(self) -> Config:
        try:
            if self.config_file.exists():
                with open(self.config_file, "r", encoding="utf-8") as file_obj:
                    config_dict = toml.load(file_obj)
                combined_config = {**self.default_config.to_dict(), **config_dict}
                return Config.from_dict(combined_config)
            return Config()
        except (OSError, toml.TomlDecodeError) as exc:
            raise ConfigurationInvalid(f"Failed to load config: {exc}") from exc
