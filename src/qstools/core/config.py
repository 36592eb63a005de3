"""Configuration management for qs-tools.

Configuration is layered, later layers winning:

1. ``DEFAULT_CONFIG`` below
2. an optional YAML file (``--config``, ``$QS_TOOLS_CONFIG`` or
   ``~/.config/qs-tools/config.yaml``)
3. ``QS_TOOLS_*`` environment variables for the remote endpoint

Example config file:
    ```yaml
    remote:
      host: backup.example.com
      port: 2222
      user: me
      key_filename: ~/.ssh/id_ed25519
      base_path: /srv/qs-tools
    components:
      yazi:
        name: Yazi
        paths:
          posix: ~/.config/yazi
          windows: "%APPDATA%/yazi/config"
    ```
"""

from __future__ import annotations

import copy
import os
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml

CONFIG_ENV_VAR = "QS_TOOLS_CONFIG"
DEFAULT_CONFIG_FILE = "~/.config/qs-tools/config.yaml"
PLATFORM_FAMILIES = ("posix", "windows")

DEFAULT_CONFIG: Dict[str, Any] = {
    "remote": {
        "host": "127.0.0.1",
        "port": 22,
        "user": "root",
        "password": None,
        "key_filename": None,
        "base_path": "/root/upload",
        "timeout": 10.0,
        "strict_host_keys": False,
    },
    "components": {
        "fish": {
            "name": "Fish Shell",
            "aliases": ["shell"],
            "paths": {"posix": "~/.config/fish"},
        },
        "nvim": {
            "name": "Neovim",
            "aliases": ["editor", "neovim"],
            "paths": {"posix": "~/.config/nvim", "windows": "%LOCALAPPDATA%/nvim"},
        },
        "scoop": {
            "name": "Scoop",
            "aliases": ["package-manager"],
            "paths": {"windows": "~/scoop/config"},
        },
    },
}


def _to_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


# Environment variable -> (remote key, converter)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "QS_TOOLS_HOST": ("host", str),
    "QS_TOOLS_PORT": ("port", int),
    "QS_TOOLS_USER": ("user", str),
    "QS_TOOLS_PASSWORD": ("password", str),
    "QS_TOOLS_KEY_FILE": ("key_filename", str),
    "QS_TOOLS_BASE_PATH": ("base_path", str),
    "QS_TOOLS_TIMEOUT": ("timeout", float),
    "QS_TOOLS_STRICT_HOST_KEYS": ("strict_host_keys", _to_bool),
}

# Remote key -> accepted types
REMOTE_TYPES: Dict[str, Tuple[type, ...]] = {
    "host": (str,),
    "port": (int,),
    "user": (str,),
    "password": (str, type(None)),
    "key_filename": (str, type(None)),
    "base_path": (str,),
    "timeout": (int, float),
    "strict_host_keys": (bool,),
}


@dataclass(frozen=True)
class RemoteConfig:
    """Connection settings for the backup server.

    Built once by :meth:`Config.remote_config` and handed to the transport;
    nothing changes it afterwards.
    """

    host: str
    port: int = 22
    user: str = "root"
    password: Optional[str] = None
    key_filename: Optional[str] = None
    base_path: str = "/root/upload"
    timeout: float = 10.0
    strict_host_keys: bool = False

    @property
    def address(self) -> str:
        """``user@host:port`` for messages."""
        return f"{self.user}@{self.host}:{self.port}"

    def masked(self) -> Dict[str, Any]:
        """Settings as a dict with the password hidden."""
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": "********" if self.password else None,
            "key_filename": self.key_filename,
            "base_path": self.base_path,
            "timeout": self.timeout,
            "strict_host_keys": self.strict_host_keys,
        }


def find_config_file(env: Optional[Mapping[str, str]] = None) -> Optional[Path]:
    """Locate the user's config file.

    ``$QS_TOOLS_CONFIG`` wins if set; otherwise ``~/.config/qs-tools/config.yaml``
    is used when it exists.
    """
    env = os.environ if env is None else env
    if env.get(CONFIG_ENV_VAR):
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    default = Path(DEFAULT_CONFIG_FILE).expanduser()
    if default.is_file():
        return default
    return None


class Config:
    """Configuration class for qs-tools."""

    def __init__(
        self,
        config_file: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Initialize configuration.

        Args:
            config_file: Optional YAML file merged over the defaults.
            env: Environment used for ``QS_TOOLS_*`` overrides. Defaults to
                ``os.environ``.
        """
        self.config: Dict[str, Any] = {}
        self.remote: Dict[str, Any] = {}
        self.components: Dict[str, Dict[str, Any]] = {}
        self.config_file: Optional[Path] = None
        self.load_config(config_file)
        self.apply_env(os.environ if env is None else env)

    def load_config(self, config_file: Optional[Path] = None) -> None:
        """Load configuration from file.

        Raises:
            ValueError: If the file cannot be read or parsed, or holds
                invalid values.
        """
        # Start with default configuration
        self._merge_config(copy.deepcopy(DEFAULT_CONFIG))

        if config_file is None:
            return

        config_path = Path(config_file).expanduser()
        try:
            with open(config_path, "r") as f:
                user_config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ValueError(f"Error loading config file {config_path}: {e}") from e

        if user_config:
            self._merge_config(user_config)
        self.config_file = config_path

    def apply_env(self, env: Mapping[str, str]) -> None:
        """Apply ``QS_TOOLS_*`` overrides for the remote settings."""
        overrides: Dict[str, Any] = {}
        for var, (key, convert) in ENV_OVERRIDES.items():
            if var not in env:
                continue
            try:
                overrides[key] = convert(env[var])
            except ValueError as e:
                raise ValueError(f"Invalid value for {var}: {e}") from e
        if overrides:
            self._merge_config({"remote": overrides})

    def _merge_config(self, config: Dict[str, Any]) -> None:
        """Merge configuration with current configuration."""
        if not isinstance(config, dict):
            raise ValueError("Configuration must be a dictionary")

        unknown = set(config) - {"remote", "components"}
        if unknown:
            raise ValueError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

        # Update remote settings
        if "remote" in config:
            remote = config["remote"]
            if not isinstance(remote, dict):
                raise ValueError("remote must be a dictionary")
            for key, value in remote.items():
                if key not in REMOTE_TYPES:
                    raise ValueError(f"Unknown remote setting: {key}")
                expected = REMOTE_TYPES[key]
                # bool is an int subclass; only strict_host_keys accepts it
                if not isinstance(value, expected) or (
                    isinstance(value, bool) and bool not in expected
                ):
                    raise ValueError(f"remote.{key} has invalid type {type(value).__name__}")
                self.remote[key] = value

        # Update components
        if "components" in config:
            if not isinstance(config["components"], dict):
                raise ValueError("components must be a dictionary")
            for key, component_config in config["components"].items():
                # Names are stored lowercased and must be usable in a file name
                component = str(key).strip().lower()
                if not component or any(bad in component for bad in ("/", "\\", "..")):
                    raise ValueError(f"Invalid component name: {key!r}")
                if not isinstance(component_config, dict):
                    raise ValueError(
                        f"Component configuration for {component} must be a dictionary"
                    )

                # Create a copy to avoid modifying the input
                component_config = copy.deepcopy(component_config)
                merged = copy.deepcopy(self.components.get(component, {}))
                merged.update(component_config)

                if "name" not in merged:
                    raise ValueError(f"Component configuration for {component} must have a name")
                paths = merged.get("paths")
                if not isinstance(paths, dict) or not paths:
                    raise ValueError(f"Component configuration for {component} must have paths")
                for family, template in paths.items():
                    if family not in PLATFORM_FAMILIES:
                        raise ValueError(
                            f"Component {component} has unknown platform '{family}' "
                            f"(expected one of: {', '.join(PLATFORM_FAMILIES)})"
                        )
                    if not isinstance(template, str):
                        raise ValueError(
                            f"Component {component} path for {family} must be a string"
                        )
                aliases = merged.setdefault("aliases", [])
                if not isinstance(aliases, list) or not all(isinstance(a, str) for a in aliases):
                    raise ValueError(f"Component {component} aliases must be a list of strings")
                merged["aliases"] = [alias.strip().lower() for alias in aliases]

                self.components[component] = merged

        # Update the raw config
        self.config = {"remote": self.remote, "components": self.components}

    def validate(self) -> List[str]:
        """Validate configuration."""
        errors = []

        if not self.remote.get("host"):
            errors.append("remote.host must not be empty")
        if not 0 < self.remote.get("port", 0) < 65536:
            errors.append("remote.port must be between 1 and 65535")
        if not self.remote.get("user"):
            errors.append("remote.user must not be empty")
        if not posixpath.isabs(self.remote.get("base_path", "")):
            errors.append("remote.base_path must be an absolute POSIX path")
        if self.remote.get("timeout", 0) <= 0:
            errors.append("remote.timeout must be positive")
        key_filename = self.remote.get("key_filename")
        if key_filename and not Path(key_filename).expanduser().is_file():
            errors.append(f"remote.key_filename {key_filename} does not exist")

        # Aliases must not shadow component names or each other
        seen: Dict[str, str] = {name: name for name in self.components}
        for component, config in self.components.items():
            for alias in config.get("aliases", []):
                owner = seen.get(alias)
                if owner is not None and owner != component:
                    errors.append(f"alias '{alias}' of {component} is already used by {owner}")
                seen[alias] = component

        return errors

    def remote_config(self) -> RemoteConfig:
        """Build the immutable remote settings handed to the transport."""
        settings = dict(self.remote)
        if settings.get("key_filename"):
            settings["key_filename"] = str(Path(settings["key_filename"]).expanduser())
        settings["timeout"] = float(settings["timeout"])
        return RemoteConfig(**settings)

    def get_component_configs(self) -> Dict[str, Dict[str, Any]]:
        """Get all component configurations."""
        return self.components

    def get_component_config(self, component: str) -> Optional[Dict[str, Any]]:
        """Get configuration for a specific component."""
        return self.components.get(component)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: The configuration key to get.
            default: The default value to return if the key is not found.

        Returns:
            The configuration value, or the default if not found.
        """
        return self.config.get(key, default)
