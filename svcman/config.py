"""
Configuration management for svcman.
Loads the service definitions produced by an external evaluator as JSON.
"""

import json
import os
import subprocess
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any

from svcman.errors import ConfigError


DEFAULT_CONFIG_PATH = "/etc/svcman/services.nix"
DEFAULT_RECONCILE_INTERVAL = 60

_SERVICE_KEYS = {"base_dir", "git_uri", "ssh_key_file", "enabled", "run_command", "env"}
_CONFIG_KEYS = {
    "root", "debug", "services", "log_dir",
    "listen_host", "listen_port", "reconcile_interval",
}


def default_config_path() -> str:
    """Return the config path from SVCMAN_CONFIG, falling back to the system default."""
    return os.environ.get("SVCMAN_CONFIG", DEFAULT_CONFIG_PATH)


@dataclass(frozen=True)
class ServiceSpec:
    """Definition of one supervised service."""

    run_command: str
    enabled: bool = False
    base_dir: Optional[str] = None
    git_uri: Optional[str] = None
    ssh_key_file: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def is_git(self) -> bool:
        return self.git_uri is not None

    def validate(self, name: str) -> None:
        """
        Check that exactly one source is declared.

        Raises:
            ConfigError: If both or neither of base_dir and git_uri are set
        """
        if self.base_dir is not None and self.git_uri is not None:
            raise ConfigError("both base_dir and git_uri are set, expected exactly one", name)
        if self.base_dir is None and self.git_uri is None:
            raise ConfigError("neither base_dir nor git_uri is set, expected exactly one", name)

    def working_dir(self, root: str, name: str) -> str:
        """
        Resolve the directory the run command is started in.

        Args:
            root: Configuration root for git-backed sources
            name: Service name

        Returns:
            base_dir for local services, root/<name> for git-backed ones

        Raises:
            ConfigError: If the service does not declare exactly one source
        """
        self.validate(name)
        if self.base_dir is not None:
            return self.base_dir
        return os.path.join(root, name)

    @classmethod
    def from_dict(cls, name: str, data: Any) -> "ServiceSpec":
        if not isinstance(data, dict):
            raise ConfigError("service definition must be an object", name)

        unknown = set(data) - _SERVICE_KEYS
        if unknown:
            raise ConfigError(f"unknown keys: {', '.join(sorted(unknown))}", name)

        run_command = data.get("run_command")
        if not isinstance(run_command, str) or not run_command.strip():
            raise ConfigError("run_command is required", name)

        env = data.get("env") or {}
        if not isinstance(env, dict):
            raise ConfigError("env must be an object", name)

        return cls(
            run_command=run_command,
            enabled=bool(data.get("enabled", False)),
            base_dir=data.get("base_dir"),
            git_uri=data.get("git_uri"),
            ssh_key_file=data.get("ssh_key_file"),
            env={str(k): str(v) for k, v in env.items()},
        )


@dataclass
class Config:
    """Configuration for the svcman daemon and its services."""

    root: str
    debug: Optional[bool] = None
    services: Dict[str, ServiceSpec] = field(default_factory=dict)
    log_dir: Optional[str] = None
    listen_host: str = "127.0.0.1"
    listen_port: Optional[int] = None
    reconcile_interval: int = DEFAULT_RECONCILE_INTERVAL

    @classmethod
    def from_dict(cls, data: Any) -> "Config":
        """
        Build a Config from the evaluated document.

        Raises:
            ConfigError: If the document is structurally invalid
        """
        if not isinstance(data, dict):
            raise ConfigError("configuration must be an object")

        unknown = set(data) - _CONFIG_KEYS
        if unknown:
            raise ConfigError(f"unknown configuration keys: {', '.join(sorted(unknown))}")

        root = data.get("root")
        if not isinstance(root, str) or not root:
            raise ConfigError("root is required")

        services = data.get("services") or {}
        if not isinstance(services, dict):
            raise ConfigError("services must be an object")

        interval = data.get("reconcile_interval", DEFAULT_RECONCILE_INTERVAL)
        if not isinstance(interval, int) or interval <= 0:
            raise ConfigError("reconcile_interval must be a positive integer")

        return cls(
            root=root,
            debug=data.get("debug"),
            services={
                name: ServiceSpec.from_dict(name, spec)
                for name, spec in services.items()
            },
            log_dir=data.get("log_dir"),
            listen_host=data.get("listen_host", "127.0.0.1"),
            listen_port=data.get("listen_port"),
            reconcile_interval=interval,
        )

    @classmethod
    def load(cls, config_path: str) -> "Config":
        """
        Load configuration from a JSON file or a Nix expression.

        Files ending in .json are parsed directly; anything else is handed to
        `nix eval --json --file` and its output parsed.

        Args:
            config_path: Path to the configuration file

        Returns:
            Config object with loaded settings

        Raises:
            ConfigError: If the file is missing, cannot be evaluated or is invalid
        """
        if not os.path.exists(config_path):
            raise ConfigError(f"Configuration file not found: {config_path}")

        if config_path.endswith(".json"):
            try:
                with open(config_path, 'r') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"Failed to read {config_path}: {e}") from e
        else:
            data = _evaluate_nix(config_path)

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _evaluate_nix(config_path: str) -> Any:
    try:
        result = subprocess.run(
            ["nix", "eval", "--json", "--file", config_path],
            capture_output=True,
            text=True
        )
    except OSError as e:
        raise ConfigError(f"Failed to run nix eval: {e}") from e

    if result.returncode != 0:
        raise ConfigError(
            f"nix eval failed for {config_path}: {result.stderr.strip()}"
        )

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ConfigError(f"nix eval produced invalid JSON: {e}") from e


def load_config(config_path: str) -> Config:
    """Load configuration, expanding a leading ~ in the path."""
    return Config.load(os.path.expanduser(config_path))
