"""
Controller settings.

Settings come from an optional YAML file, then ``K3SFNCTL_*`` environment
variables, then command-line flags (applied by the CLI).
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .exceptions import ConfigParseError

ENV_PREFIX = "K3SFNCTL_"


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ControllerSettings:
    """Runtime configuration for the controller."""
    namespace: Optional[str] = None  # None watches all namespaces
    config_namespace: str = "k3sfn"
    config_name: str = "k3sfn-config"
    max_retries: int = 5
    request_timeout: float = 30.0
    gc_interval: float = 0.0  # 0 sweeps at startup only
    health_port: int = 8080  # 0 disables the health server
    service_monitors: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ControllerSettings":
        if not data:
            return cls()
        try:
            return cls(
                namespace=data.get("namespace") or None,
                config_namespace=data.get("config_namespace", "k3sfn"),
                config_name=data.get("config_name", "k3sfn-config"),
                max_retries=int(data.get("max_retries", 5)),
                request_timeout=float(data.get("request_timeout", 30.0)),
                gc_interval=float(data.get("gc_interval", 0.0)),
                health_port=int(data.get("health_port", 8080)),
                service_monitors=_parse_bool(data.get("service_monitors", False)),
                log_level=str(data.get("log_level", "INFO")).upper(),
            )
        except (TypeError, ValueError) as e:
            raise ConfigParseError(f"Invalid controller settings: {e}")

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def with_overrides(self, **overrides: Any) -> "ControllerSettings":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ControllerSettings:
    """
    Load controller settings.

    Args:
        path: Optional YAML settings file
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Merged ControllerSettings

    Raises:
        FileNotFoundError: If ``path`` is given but does not exist
        ConfigParseError: If the file or an environment value is malformed
    """
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    if path:
        settings_path = Path(path)
        if not settings_path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
        try:
            with open(settings_path) as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigParseError(f"Unable to parse {path}: {e}")
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigParseError(f"{path} must contain a mapping")
        data.update(loaded or {})

    for f in fields(ControllerSettings):
        value = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
        if value is not None:
            data[f.name] = value

    return ControllerSettings.from_dict(data)
