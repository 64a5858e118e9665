"""Settings file parsing and the desired registry configuration.

This module has ZERO side effects.  It reads YAML and the environment
and returns frozen dataclasses.  It does not run the container engine.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

# Default hostname under which clusters reach the registry.
DEFAULT_REGISTRY_NAME = "registry.localhost"

# The registry listens on this port inside its container.  It doubles as
# the default external port and is never configurable.
INTERNAL_PORT = 5000

DEFAULT_IMAGE = "registry:2"
DEFAULT_ENGINE = "podman"

_SETTINGS_PATHS = [
    Path(".sharedreg.yaml"),
    Path("~/.sharedreg/config.yaml"),
]

_ENGINES = ("podman", "docker")


# ── Dataclasses ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class RegistrySpec:
    """Desired configuration of the shared registry."""

    name: str = DEFAULT_REGISTRY_NAME
    port: int = INTERNAL_PORT
    volume: str | None = None
    cache: bool = False
    auto_restart: bool = False
    registries_file: str | None = None
    host_config: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("registry name must not be empty")
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ValueError(f"registry port must be an integer, got {self.port!r}")
        if not 1 <= self.port <= 65535:
            raise ValueError(f"registry port out of range: {self.port}")
        if not isinstance(self.host_config, dict):
            raise ValueError("host_config must be a mapping")

    @property
    def external_address(self) -> str:
        """``<name>:<port>`` as seen by image references in the clusters."""
        return f"{self.name}:{self.port}"

    @property
    def internal_endpoint(self) -> str:
        """URL of the registry inside the cluster networks."""
        return f"http://{self.name}:{INTERNAL_PORT}"


@dataclass
class Settings:
    """Top-level tool settings."""

    engine: str = DEFAULT_ENGINE
    image: str = DEFAULT_IMAGE
    registry: RegistrySpec = field(default_factory=RegistrySpec)
    source: Path | None = None


# ── Paths ────────────────────────────────────────────────────────────

def global_registries_file() -> Path:
    """Return the home-scoped mirror template (``~/.k3d/registries.yaml``).

    Raises ``RuntimeError`` when the home directory cannot be determined.
    """
    return Path.home() / ".k3d" / "registries.yaml"


def resolve_registries_file(explicit: str | None) -> str | None:
    """Pick the base mirror document for a cluster.

    An explicitly named file always wins (and must exist later on).
    Otherwise the global template is used when present.
    """
    if explicit:
        return explicit
    candidate = global_registries_file()
    if candidate.is_file():
        return str(candidate)
    return None


def _find_settings_file(base: Path | None = None) -> Path | None:
    """Return the first settings file that exists, or None."""
    for candidate in _SETTINGS_PATHS:
        path = candidate.expanduser()
        if base is not None and not path.is_absolute():
            path = base / path
        if path.is_file():
            return path
    return None


# ── Parsing ──────────────────────────────────────────────────────────

def _parse_port(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"registry port must be an integer, got {value!r}") from None


def parse_registry(data: dict[str, Any]) -> RegistrySpec:
    """Parse the ``registry:`` section of a settings file."""
    return RegistrySpec(
        name=str(data.get("name", DEFAULT_REGISTRY_NAME)),
        port=_parse_port(data.get("port", INTERNAL_PORT)),
        volume=data.get("volume") or None,
        cache=bool(data.get("cache", False)),
        auto_restart=bool(data.get("auto_restart", False)),
        registries_file=data.get("registries_file") or None,
        host_config=dict(data.get("host_config") or {}),
        enabled=bool(data.get("enabled", True)),
    )


def _parse_engine(data: dict[str, Any]) -> tuple[str, str]:
    engine = data.get("binary", DEFAULT_ENGINE)
    image = data.get("image", DEFAULT_IMAGE)
    return str(engine), str(image)


def load(path: Path | None = None, base: Path | None = None) -> Settings:
    """Load settings from *path* or the first default location.

    Environment overrides (``SHAREDREG_ENGINE``, ``SHAREDREG_IMAGE``)
    are applied on top of the file.

    Parameters
    ----------
    path:
        Explicit settings file.  Must exist when given.
    base:
        Directory that relative default locations are resolved against.
        Defaults to the current working directory.
    """
    if path is None:
        path = _find_settings_file(base)
    elif not Path(path).is_file():
        raise FileNotFoundError(f"settings file not found: {path}")

    data: dict[str, Any] = {}
    if path is not None:
        with open(path) as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")

    engine, image = _parse_engine(data.get("engine") or {})
    engine = os.environ.get("SHAREDREG_ENGINE") or engine
    image = os.environ.get("SHAREDREG_IMAGE") or image
    if engine not in _ENGINES:
        raise ValueError(
            f"unsupported engine {engine!r} (supported: {', '.join(_ENGINES)})"
        )

    return Settings(
        engine=engine,
        image=image,
        registry=parse_registry(data.get("registry") or {}),
        source=Path(path) if path is not None else None,
    )


def with_overrides(spec: RegistrySpec, **changes: Any) -> RegistrySpec:
    """Return a copy of *spec* with every non-None keyword applied."""
    changes = {k: v for k, v in changes.items() if v is not None}
    return replace(spec, **changes) if changes else spec
