"""Mirror configuration for cluster nodes.

Builds the ``registries.yaml`` document that redirects a node's image
pulls to the shared registry, optionally on top of a user supplied base
document, and copies it into the node.

The document has three top-level keys::

    mirrors:
      registry.localhost:5000:
        endpoint:
          - http://registry.localhost:5000
    configs: {}
    auths: {}

``configs`` and ``auths`` are passed through untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from sharedreg import log, podman
from sharedreg.config import RegistrySpec

# Where k3s reads its mirror configuration inside every node.
NODE_CONFIG_PATH = "/etc/rancher/k3s/registries.yaml"

# Namespace of the public image hub, redirected when the cache is on.
DOCKER_HUB_ADDRESS = "docker.io"


class MirrorConfigError(Exception):
    """Raised when a base mirror document cannot be read or parsed."""


@dataclass
class Mirror:
    """Endpoints tried in order for one registry namespace."""

    endpoints: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data["endpoint"] = list(self.endpoints)
        return data


@dataclass
class MirrorConfig:
    mirrors: dict[str, Mirror] = field(default_factory=dict)
    configs: dict[str, Any] = field(default_factory=dict)
    auths: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mirrors": {host: m.to_dict() for host, m in self.mirrors.items()},
            "configs": self.configs,
            "auths": self.auths,
        }


# ── Parsing ──────────────────────────────────────────────────────────

def _parse_mirror(host: str, raw: Any, source: str) -> Mirror:
    if raw is None:
        return Mirror()
    if not isinstance(raw, dict):
        raise MirrorConfigError(f"{source}: mirror {host!r} must be a mapping")
    extra = {k: v for k, v in raw.items() if k != "endpoint"}
    endpoints = raw.get("endpoint") or []
    if isinstance(endpoints, str):
        endpoints = [endpoints]
    if not isinstance(endpoints, list):
        raise MirrorConfigError(
            f"{source}: endpoint of mirror {host!r} must be a list"
        )
    return Mirror(endpoints=[str(e) for e in endpoints], extra=extra)


def parse_mirror_config(text: str, source: str = "<string>") -> MirrorConfig:
    """Parse a ``registries.yaml`` document."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise MirrorConfigError(f"{source}: invalid YAML: {exc}") from exc
    if data is None:
        return MirrorConfig()
    if not isinstance(data, dict):
        raise MirrorConfigError(f"{source}: expected a mapping at the top level")

    def _section(key: str) -> dict[str, Any]:
        value = data.get(key) or {}
        if not isinstance(value, dict):
            raise MirrorConfigError(f"{source}: {key!r} must be a mapping")
        return value

    mirrors = {
        str(host): _parse_mirror(str(host), raw, source)
        for host, raw in _section("mirrors").items()
    }
    return MirrorConfig(
        mirrors=mirrors,
        configs=_section("configs"),
        auths=_section("auths"),
    )


def load_mirror_config(path: str | Path) -> MirrorConfig:
    """Read and parse a base document.  The file must exist."""
    try:
        text = Path(path).read_text()
    except OSError as exc:
        raise MirrorConfigError(f"cannot read {path}: {exc}") from exc
    return parse_mirror_config(text, source=str(path))


# ── Building ─────────────────────────────────────────────────────────

def build_mirror_config(spec: RegistrySpec) -> MirrorConfig:
    """Return the mirror document for *spec*.

    Base mirrors are kept; at most the registry's own entry and the
    Docker Hub entry are added or replaced.
    """
    cfg = MirrorConfig()
    if spec.registries_file:
        log.info(f"Using registries definitions from {spec.registries_file}")
        cfg = load_mirror_config(spec.registries_file)

    if spec.enabled:
        endpoint = spec.internal_endpoint
        cfg.mirrors[spec.external_address] = Mirror(endpoints=[endpoint])

        # with the cache, every Docker Hub pull goes through the registry
        if spec.cache:
            cfg.mirrors[DOCKER_HUB_ADDRESS] = Mirror(endpoints=[endpoint])

    return cfg


def render(cfg: MirrorConfig) -> str:
    return yaml.safe_dump(cfg.to_dict(), default_flow_style=False, sort_keys=False)


def write_mirror_config(spec: RegistrySpec, node: str) -> None:
    """Build the mirror document for *spec* and copy it into *node*."""
    data = render(build_mirror_config(spec)).encode()
    log.info(f"Writing {NODE_CONFIG_PATH} into {node}")
    podman.copy_into(node, NODE_CONFIG_PATH, data)
