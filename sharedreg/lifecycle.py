"""Create, share and tear down the registry.

One registry container serves every cluster on the host.  Clusters
attach to it by connecting it to their network and detach by
disconnecting it.  The registry is removed once its last network is
gone; the live attachment list reported by the engine is the only
reference count.

Each sub-step is either *fatal* (wrapped in :func:`_fatal`, aborts the
operation with :class:`RegistryError`) or *recoverable* (wrapped in
:func:`_recoverable`, logged as a warning).  Engine connectivity errors
are never recoverable and propagate unchanged.
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from typing import Any

from sharedreg import labels, locator, log, podman
from sharedreg.config import DEFAULT_IMAGE, INTERNAL_PORT, RegistrySpec
from sharedreg.locator import REGISTRY_CONTAINER_NAME

# Storage location inside the registry container.
MOUNT_PATH = "/var/lib/registry"

# Upstream the pull-through cache proxies to.
DOCKER_HUB_UPSTREAM = "registry-1.docker.io"
CACHE_ENV_VAR = "REGISTRY_PROXY_REMOTEURL"


class RegistryError(Exception):
    """A fatal registry lifecycle step failed."""

    def __init__(self, step: str, cause: BaseException | None = None) -> None:
        self.step = step
        self.cause = cause
        msg = f"Couldn't {step}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


@contextlib.contextmanager
def _fatal(step: str) -> Iterator[None]:
    try:
        yield
    except podman.EngineUnavailable:
        raise
    except (podman.EngineError, ValueError) as exc:
        raise RegistryError(step, exc) from exc


@contextlib.contextmanager
def _recoverable(warning: str) -> Iterator[None]:
    try:
        yield
    except podman.EngineUnavailable:
        raise
    except podman.EngineError as exc:
        log.warn(f"{warning} ({exc.stderr or exc})")


# ── Helpers ──────────────────────────────────────────────────────────

def network_name(cluster: str) -> str:
    """Return the name of the network created for *cluster*."""
    return f"k3d-{cluster}"


def published_ports(external: int, internal: int = INTERNAL_PORT) -> dict[str, Any]:
    """Bind *external* on all host interfaces to *internal*/tcp."""
    for port in (external, internal):
        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
            raise ValueError(f"invalid port in spec 0.0.0.0:{external}:{internal}/tcp")
    return {
        f"{internal}/tcp": [{"HostIp": "0.0.0.0", "HostPort": str(external)}],
    }


def merge_host_config(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge *override* on top of *base* and return a new mapping.

    Override values win; keys only present in *base* are kept.  Nested
    mappings are merged recursively.  A mapping in one and a scalar in
    the other is an error.
    """
    merged = dict(base)
    for key, value in (override or {}).items():
        current = merged.get(key)
        if isinstance(current, dict) or (key in merged and isinstance(value, dict)):
            if not (isinstance(current, dict) and isinstance(value, dict)):
                raise ValueError(f"cannot merge host config field {key!r}: type mismatch")
            merged[key] = merge_host_config(current, value)
        else:
            merged[key] = value
    return merged


def _build_host_config(spec: RegistrySpec) -> dict[str, Any]:
    with _fatal(f"parse port spec 0.0.0.0:{spec.port}:{INTERNAL_PORT}/tcp"):
        ports = published_ports(spec.port)

    baseline: dict[str, Any] = {
        "PortBindings": ports,
        "Privileged": True,
        "Init": True,
    }
    with _fatal("merge host config overrides"):
        host_config = merge_host_config(baseline, spec.host_config)
        # surfaces fields the engine CLI cannot express
        podman.host_config_args(host_config)
        if spec.auto_restart:
            policy = dict(host_config.get("RestartPolicy") or {})
            policy["Name"] = "unless-stopped"
            host_config["RestartPolicy"] = policy
    return host_config


def _ensure_volume(spec: RegistrySpec) -> str | None:
    """Make sure the registry volume exists.  Returns its name if created here."""
    name = spec.volume
    with _fatal(f"check if volume {name} exists"):
        exists = podman.volume_exists(name)
    if exists:
        log.info(f"Using existing volume {name} for the registry")
        return None

    log.info(f"Creating registry volume {name}")
    with _fatal(f"create volume {name} for registry"):
        podman.volume_create(name, labels.volume_labels(spec.name, spec.port))
    return name


def _rollback(container: str | None, volume: str | None) -> None:
    """Remove what a failed creation left behind."""
    if container:
        with _recoverable(f"could not remove partially created container {container}"):
            podman.rm(container)
    if volume:
        with _recoverable(f"could not remove volume {volume} created for the registry"):
            podman.volume_rm(volume)


def _drop_unclaimed_volume(winner: str, volume: str | None) -> None:
    """Remove *volume* unless the registry *winner* already mounts it."""
    if not volume:
        return
    mounted = None
    with _recoverable(f"could not inspect the mounts of registry {winner}"):
        mounted = podman.volume_mounted_at(winner, MOUNT_PATH)
    if mounted == volume:
        log.debug(f"volume {volume} is in use by registry {winner}; keeping it")
        return
    _rollback(None, volume)


# ── Create / attach ──────────────────────────────────────────────────

def _reuse(cid: str, spec: RegistrySpec, network: str) -> str:
    log.info(
        f"Registry already present: ensuring that it's running and "
        f"connecting it to the '{network}' network"
    )
    with _recoverable(
        f"Failed to start registry container. Try starting it manually "
        f"via `{podman.engine()} start {cid}`"
    ):
        podman.start(cid)

    hostname = None
    with _recoverable("could not read the registry labels"):
        hostname = podman.container_labels(cid).get("hostname")
    if hostname and hostname != spec.name:
        log.warn(
            f"Existing registry is named {hostname!r}, not {spec.name!r}; "
            f"it stays reachable as {spec.name!r} on {network}"
        )

    with _fatal(f"connect registry to network {network}"):
        podman.network_connect(network, cid, [spec.name])
    return cid


def ensure_registry(
    spec: RegistrySpec,
    cluster: str,
    *,
    image: str = DEFAULT_IMAGE,
) -> str:
    """Return the registry's container ID, creating the registry if needed.

    An existing registry is started (best effort) and connected to the
    cluster's network.  Otherwise a new one is created on that network.
    Raises :class:`RegistryError` naming the step that failed; anything
    created by this call is removed again before raising.
    """
    net = network_name(cluster)

    cid = locator.find_registry()
    if cid is not None:
        return _reuse(cid, spec, net)

    log.step(f"Creating registry as {spec.external_address}")
    host_config = _build_host_config(spec)

    created_volume = None
    if spec.volume:
        created_volume = _ensure_volume(spec)
        host_config["Binds"] = [f"{spec.volume}:{MOUNT_PATH}"]

    env: dict[str, str] = {}
    if spec.cache:
        log.info("Activating pull-through cache to Docker Hub")
        env[CACHE_ENV_VAR] = f"https://{DOCKER_HUB_UPSTREAM}"

    try:
        cid = podman.create(
            image,
            name=REGISTRY_CONTAINER_NAME,
            hostname=spec.name,
            labels=labels.container_labels(spec.name),
            env=env,
            host_config=host_config,
            network=net,
            aliases=[spec.name],
        )
    except podman.EngineUnavailable:
        raise
    except podman.EngineError as exc:
        if exc.name_in_use:
            # another process won the race to create it
            existing = locator.find_registry()
            if existing is not None:
                log.warn("Registry was created concurrently; reusing it")
                _drop_unclaimed_volume(existing, created_volume)
                return _reuse(existing, spec, net)
        _rollback(None, created_volume)
        raise RegistryError(
            f"create registry container {REGISTRY_CONTAINER_NAME}", exc,
        ) from exc

    try:
        with _fatal(f"start registry container {REGISTRY_CONTAINER_NAME}"):
            podman.start(cid)
    except RegistryError:
        _rollback(cid, created_volume)
        raise

    log.success(f"Registry {spec.external_address} is running ({cid[:12]})")
    return cid


# ── Detach / teardown ────────────────────────────────────────────────

def _remove_registry(cid: str, keep_volume: bool) -> None:
    log.step("Removing the registry")
    volume = None
    with _recoverable("could not detect the registry volume"):
        volume = podman.volume_mounted_at(cid, MOUNT_PATH)

    with _recoverable(f"could not remove registry container {cid}"):
        podman.rm(cid)

    if volume is None:
        return

    # only volumes carrying our labels are ours to delete
    with _fatal(f"inspect volume {volume} for registry"):
        vol_labels = podman.volume_labels(volume)
    if not labels.matches(vol_labels, labels.VOLUME_LABELS):
        log.info(f"Volume {volume} is not managed by us; leaving it untouched")
        return

    if keep_volume:
        log.info(f"Keeping the registry volume {volume}")
        return
    log.info(f"Removing the registry volume {volume}")
    with _fatal(f"remove volume {volume} for registry"):
        podman.volume_rm(volume)


def release_registry(cluster: str, keep_volume: bool = False) -> bool:
    """Detach the registry from *cluster*'s network.

    The registry (and its managed volume, unless *keep_volume*) is
    removed when no other network remains attached.  Returns True if
    the registry was removed.  Detaching from a cluster that was never
    attached, or when no registry exists, is a no-op.
    """
    net = network_name(cluster)
    cid = locator.find_registry()
    if cid is None:
        log.debug("No registry present, nothing to detach")
        return False

    log.info(f"Disconnecting registry from the {net} network")
    with _fatal(f"disconnect registry from network {net}"):
        podman.network_disconnect(net, cid)

    # always ask the engine; there is no local counter
    networks = None
    with _recoverable("could not list the registry networks; leaving it in place"):
        networks = podman.container_networks(cid)
    if networks is None:
        return False
    if networks:
        log.info(f"Registry still attached to: {', '.join(networks)}")
        return False

    _remove_registry(cid, keep_volume)
    return True
