"""
Runtime image resolution.

Maps a function runtime such as ``python3.12`` to the container images and
commands used to build and run it. The table is read from the ``runtime-images``
key of the controller ConfigMap when the controller starts.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from .exceptions import ConfigParseError, InvalidFunctionError

logger = logging.getLogger(__name__)

RUNTIME_IMAGES_KEY = "runtime-images"

DEFAULT_RUNTIME_IMAGES: List[Dict[str, Any]] = [
    {
        "ID": "python",
        "depName": "requirements.txt",
        "fileNameSuffix": ".py",
        "buildCommand": "pip install --prefix=/function/.deps -r /function/requirements.txt",
        "versions": [
            {"name": "python311", "version": "3.11", "runtimeImage": "k3sfn/python:3.11", "initImage": "python:3.11-slim"},
            {"name": "python312", "version": "3.12", "runtimeImage": "k3sfn/python:3.12", "initImage": "python:3.12-slim"},
        ],
    },
    {
        "ID": "nodejs",
        "depName": "package.json",
        "fileNameSuffix": ".js",
        "buildCommand": "npm install --prefix=/function",
        "versions": [
            {"name": "node20", "version": "20", "runtimeImage": "k3sfn/nodejs:20", "initImage": "node:20-slim"},
            {"name": "node22", "version": "22", "runtimeImage": "k3sfn/nodejs:22", "initImage": "node:22-slim"},
        ],
    },
]


@dataclass
class RuntimeInfo:
    """Resolved images and commands for one runtime version."""
    runtime: str
    image: str
    init_image: str
    deps_file: str = ""
    file_suffix: str = ""
    build_command: str = ""
    run_command: List[str] = field(default_factory=list)


class LangRuntimes:
    """Lookup table of supported runtimes."""

    def __init__(self, entries: Optional[List[Dict[str, Any]]] = None):
        self._runtimes: Dict[str, RuntimeInfo] = {}
        for entry in entries if entries is not None else DEFAULT_RUNTIME_IMAGES:
            self._load_entry(entry)

    def _load_entry(self, entry: Dict[str, Any]) -> None:
        if not isinstance(entry, dict) or not entry.get("ID"):
            raise ConfigParseError(f"Invalid runtime entry: {entry!r}")
        runtime_id = entry["ID"]
        run_command = entry.get("runCommand") or []
        if isinstance(run_command, str):
            run_command = run_command.split()
        for version in entry.get("versions") or []:
            if not isinstance(version, dict) or "version" not in version:
                raise ConfigParseError(f"Invalid version entry for runtime {runtime_id}: {version!r}")
            runtime = f"{runtime_id}{version['version']}"
            image = version.get("runtimeImage")
            if not image:
                raise ConfigParseError(f"Runtime {runtime} has no runtimeImage")
            self._runtimes[runtime] = RuntimeInfo(
                runtime=runtime,
                image=image,
                init_image=version.get("initImage") or image,
                deps_file=entry.get("depName", ""),
                file_suffix=entry.get("fileNameSuffix", ""),
                build_command=entry.get("buildCommand", ""),
                run_command=list(run_command),
            )

    @classmethod
    def from_config_map_data(cls, data: Optional[Dict[str, str]]) -> "LangRuntimes":
        """
        Build the table from controller ConfigMap data.

        Args:
            data: ConfigMap ``data`` (may be None)

        Returns:
            LangRuntimes using the ``runtime-images`` key, or the built-in
            defaults when the key is absent

        Raises:
            ConfigParseError: If ``runtime-images`` is not a YAML list
        """
        raw = (data or {}).get(RUNTIME_IMAGES_KEY)
        if not raw:
            logger.info("No runtime-images configured, using built-in runtimes")
            return cls()
        try:
            entries = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ConfigParseError(f"Unable to parse {RUNTIME_IMAGES_KEY}: {e}")
        if not isinstance(entries, list):
            raise ConfigParseError(f"{RUNTIME_IMAGES_KEY} must be a list")
        return cls(entries)

    def get(self, runtime: str) -> RuntimeInfo:
        """Resolve a runtime string such as ``python3.12``."""
        info = self._runtimes.get(runtime)
        if info is None:
            raise InvalidFunctionError(
                f"Runtime {runtime!r} is not supported. Available: {', '.join(self.names())}"
            )
        return info

    def names(self) -> List[str]:
        return sorted(self._runtimes)

    def list(self) -> List[RuntimeInfo]:
        return [self._runtimes[name] for name in self.names()]
