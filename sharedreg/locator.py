"""Find the shared registry container on this host.

The registry is addressed by a fixed container name plus the fixed
label set; every label must match.  At most one registry is expected
to exist, so the first match wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sharedreg import labels, podman

# Fixed name of the registry container.
REGISTRY_CONTAINER_NAME = "k3d-registry"


@dataclass
class RegistryResource:
    """The engine's view of an existing registry."""

    id: str
    labels: dict[str, str] = field(default_factory=dict)
    networks: list[str] = field(default_factory=list)
    state: str | None = None

    @property
    def hostname(self) -> str | None:
        return self.labels.get("hostname")


def find_registry() -> str | None:
    """Return the ID of the registry container, or None if there is none.

    Engine connectivity errors propagate.
    """
    ids = podman.list_containers(
        name=REGISTRY_CONTAINER_NAME,
        labels=labels.CONTAINER_LABELS,
    )
    if not ids:
        return None
    return ids[0]


def describe_registry() -> RegistryResource | None:
    """Return the registry with its labels, networks and state."""
    cid = find_registry()
    if cid is None:
        return None
    return RegistryResource(
        id=cid,
        labels=podman.container_labels(cid),
        networks=podman.container_networks(cid),
        state=podman.container_state(cid),
    )
