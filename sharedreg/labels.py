"""Label sets that identify and claim the shared registry's resources.

Labels double as the lookup index (the locator filters on them) and as
the ownership marker for the registry volume.  The keys and values must
stay bit-exact so deployments created by earlier tools keep working.
"""

from __future__ import annotations

import datetime

# Labels every registry container carries.
CONTAINER_LABELS: dict[str, str] = {
    "app": "k3d",
    "component": "registry",
}

# Labels every volume created for the registry carries.
VOLUME_LABELS: dict[str, str] = {
    "app": "k3d",
    "component": "registry",
    "managed": "true",
}


def container_labels(
    hostname: str,
    now: datetime.datetime | None = None,
) -> dict[str, str]:
    """Return the full label set for a new registry container.

    Adds ``created`` (local time, ``YYYY-MM-DD HH:MM:SS``) and
    ``hostname`` to :data:`CONTAINER_LABELS`.
    """
    if now is None:
        now = datetime.datetime.now()
    labels = dict(CONTAINER_LABELS)
    labels["created"] = now.strftime("%Y-%m-%d %H:%M:%S")
    labels["hostname"] = hostname
    return labels


def volume_labels(registry_name: str, registry_port: int) -> dict[str, str]:
    """Return the full label set for a volume created for the registry."""
    labels = {
        "registry-name": registry_name,
        "registry-port": str(registry_port),
    }
    labels.update(VOLUME_LABELS)
    return labels


def matches(labels: dict[str, str] | None, required: dict[str, str]) -> bool:
    """Return True if *labels* contains every key/value of *required*."""
    if not labels:
        return False
    return all(labels.get(k) == v for k, v in required.items())
