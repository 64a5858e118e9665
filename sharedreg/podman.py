"""Thin wrapper around the container engine CLI.

This module has ZERO business logic.  It does not know about the shared
registry, clusters, or label ownership.  It runs ``podman`` (or a
docker-compatible binary selected with :func:`set_engine`) and returns
parsed output.
"""

from __future__ import annotations

import io
import json
import os
import re
import shutil
import subprocess
import tarfile
import time
from typing import Any

from sharedreg import log

_engine = "podman"

_NOT_FOUND_RE = re.compile(
    r"no such (container|volume|network|object)"
    r"|no (container|volume|network) with (name|id)"
    r"|is not connected to"
    r"|not connected to network"
    r"|network \S+ not found",
    re.IGNORECASE,
)
_ALREADY_CONNECTED_RE = re.compile(
    r"already exists in network|already connected", re.IGNORECASE,
)
_NAME_IN_USE_RE = re.compile(r"name \S+ is already in use", re.IGNORECASE)
_UNREACHABLE_RE = re.compile(
    r"cannot connect to"
    r"|unable to connect to"
    r"|connection refused"
    r"|is the docker daemon running",
    re.IGNORECASE,
)


class EngineError(Exception):
    """Raised when an engine command fails."""

    def __init__(self, cmd: list[str], returncode: int, stderr: str) -> None:
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command failed (rc={returncode}): {' '.join(cmd)}\n{stderr}"
        )

    @property
    def not_found(self) -> bool:
        """True when the engine reported a missing object or attachment."""
        return bool(_NOT_FOUND_RE.search(self.stderr))

    @property
    def already_connected(self) -> bool:
        return bool(_ALREADY_CONNECTED_RE.search(self.stderr))

    @property
    def name_in_use(self) -> bool:
        return bool(_NAME_IN_USE_RE.search(self.stderr))


class EngineUnavailable(EngineError):
    """The engine binary is missing or its daemon/socket is unreachable."""


# ── Engine selection ──────────────────────────────────────────────────

def set_engine(binary: str) -> None:
    """Select the engine binary (``podman`` or ``docker``)."""
    global _engine
    _engine = binary


def engine() -> str:
    return _engine


def _needs_privilege() -> bool:
    """Return True if podman must be escalated (not root)."""
    return _engine == "podman" and os.getuid() != 0


def _priv_prefix() -> list[str]:
    """Return ``["doas"]`` or ``["sudo"]`` when needed, else ``[]``."""
    if not _needs_privilege():
        return []
    if shutil.which("doas"):
        return ["doas"]
    if shutil.which("sudo"):
        return ["sudo"]
    return []


# ── Internal helpers ──────────────────────────────────────────────────

def _run(
    args: list[str],
    *,
    check: bool = True,
    quiet: bool = False,
    input: bytes | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run ``<engine> *args``, log it, and raise on failure.

    *input* is fed to the command's stdin as raw bytes; the captured
    output is still returned as text.  Connectivity problems always
    raise :class:`EngineUnavailable`, even with ``check=False``.
    """
    cmd = _priv_prefix() + [_engine, *args]
    log.command(cmd, quiet=quiet)
    try:
        if input is None:
            result = subprocess.run(cmd, capture_output=True, text=True)
        else:
            result = subprocess.run(cmd, capture_output=True, input=input)
            result.stdout = (result.stdout or b"").decode(errors="replace")
            result.stderr = (result.stderr or b"").decode(errors="replace")
    except FileNotFoundError as exc:
        raise EngineUnavailable(cmd, 127, str(exc)) from exc
    if result.returncode != 0:
        stderr = result.stderr.strip() if result.stderr else ""
        if _UNREACHABLE_RE.search(stderr):
            raise EngineUnavailable(cmd, result.returncode, stderr)
        if check:
            raise EngineError(cmd, result.returncode, stderr)
    return result


_MISSING = object()


def _inspect_json(ref: str, template: str, *, kind: str = "container") -> Any:
    """Run ``inspect --format '{{json <template>}}'`` and decode it.

    Returns ``_MISSING`` when the object does not exist and None when
    the output is empty or not JSON.
    """
    args = ["volume", "inspect"] if kind == "volume" else ["inspect", "--type", kind]
    args += ["--format", f"{{{{json {template}}}}}", ref]
    try:
        result = _run(args, quiet=True)
    except EngineError as exc:
        if exc.not_found and not isinstance(exc, EngineUnavailable):
            return _MISSING
        raise
    out = result.stdout.strip()
    if not out:
        return None
    try:
        return json.loads(out)
    except json.JSONDecodeError:
        log.warn(f"Could not parse inspect output for {ref}: {out!r}")
        return None


_LIST_FLAGS = {
    "Binds": "-v",
    "ExtraHosts": "--add-host",
    "Dns": "--dns",
    "CapAdd": "--cap-add",
    "SecurityOpt": "--security-opt",
}


def _mapping(key: str, value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Host config field {key} must be a mapping, got {value!r}")
    return value


def _string_list(key: str, value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"Host config field {key} must be a list, got {value!r}")
    return [str(item) for item in value]


def _bindings(container_port: str, value: Any) -> list[dict[str, Any]]:
    key = f"PortBindings[{container_port}]"
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(b, dict) for b in value):
        raise ValueError(f"Host config field {key} must be a list of mappings, got {value!r}")
    return value


def host_config_args(host_config: dict[str, Any]) -> list[str]:
    """Translate a docker-style HostConfig mapping into CLI flags.

    Raises ``ValueError`` for keys the engine CLI cannot express and for
    values of the wrong shape (a string where a list or mapping belongs).
    """
    args: list[str] = []
    for key, value in host_config.items():
        if key == "PortBindings":
            for container_port, bindings in _mapping(key, value).items():
                for b in _bindings(container_port, bindings):
                    host_ip = b.get("HostIp") or "0.0.0.0"
                    # an empty host port lets the engine pick one
                    args += ["-p", f"{host_ip}:{b.get('HostPort', '')}:{container_port}"]
        elif key == "Privileged":
            if value:
                args.append("--privileged")
        elif key == "Init":
            if value:
                args.append("--init")
        elif key == "RestartPolicy":
            policy = _mapping(key, value)
            name = policy.get("Name", "")
            retries = policy.get("MaximumRetryCount", 0)
            if name:
                if name == "on-failure" and retries:
                    name = f"{name}:{retries}"
                args += ["--restart", name]
        elif key in _LIST_FLAGS:
            for item in _string_list(key, value):
                args += [_LIST_FLAGS[key], item]
        elif key == "Memory":
            if value:
                args += ["--memory", str(value)]
        elif key == "ShmSize":
            if value:
                args += ["--shm-size", str(value)]
        elif key == "LogConfig":
            log_config = _mapping(key, value)
            driver = log_config.get("Type", "")
            if driver:
                args += ["--log-driver", driver]
            for k, v in _mapping("LogConfig.Config", log_config.get("Config")).items():
                args += ["--log-opt", f"{k}={v}"]
        else:
            raise ValueError(f"Unsupported host config field: {key}")
    return args


# ── Containers ────────────────────────────────────────────────────────

def list_containers(
    *,
    name: str | None = None,
    labels: dict[str, str] | None = None,
) -> list[str]:
    """Return IDs of all containers (running or not) matching every filter."""
    args = ["ps", "-a", "--no-trunc", "--format", "{{.ID}}"]
    if name:
        args += ["--filter", f"name={name}"]
    for key, val in (labels or {}).items():
        args += ["--filter", f"label={key}={val}"]
    result = _run(args, quiet=True)
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def create(
    image: str,
    *,
    name: str,
    hostname: str | None = None,
    labels: dict[str, str] | None = None,
    env: dict[str, str] | None = None,
    host_config: dict[str, Any] | None = None,
    network: str | None = None,
    aliases: list[str] | None = None,
) -> str:
    """Create (but do not start) a container.  Returns its ID."""
    args = ["create", "--name", name]
    if hostname:
        args += ["--hostname", hostname]
    for key, val in (labels or {}).items():
        args += ["--label", f"{key}={val}"]
    for key, val in (env or {}).items():
        args += ["-e", f"{key}={val}"]
    args += host_config_args(host_config or {})
    if network:
        args += ["--network", network]
        for alias in aliases or []:
            args += ["--network-alias", alias]
    args.append(image)
    result = _run(args)
    out = result.stdout.strip()
    if not out:
        raise EngineError([_engine, *args], 0, "engine printed no container ID")
    # pull progress may precede the ID
    return out.splitlines()[-1]


def start(container: str) -> None:
    _run(["start", container])


def rm(container: str, *, force: bool = True) -> None:
    """Remove a container.  A container that is already gone is not an error."""
    args = ["rm"]
    if force:
        args.append("-f")
    args.append(container)
    try:
        _run(args)
    except EngineError as exc:
        if isinstance(exc, EngineUnavailable) or not exc.not_found:
            raise
        log.debug(f"container {container} already removed")


def container_labels(container: str) -> dict[str, str]:
    """Return the labels of a container ({} when it does not exist)."""
    labels = _inspect_json(container, ".Config.Labels")
    return labels if isinstance(labels, dict) else {}


def container_state(container: str) -> str | None:
    """Return the container status string (``running``, ``exited``...)."""
    state = _inspect_json(container, ".State.Status")
    return state if isinstance(state, str) else None


def container_networks(container: str) -> list[str]:
    """Return the names of the networks *container* is attached to."""
    networks = _inspect_json(container, ".NetworkSettings.Networks")
    if not isinstance(networks, dict):
        return []
    return sorted(networks)


def volume_mounted_at(container: str, path: str) -> str | None:
    """Return the name of the named volume mounted at *path*, if any."""
    mounts = _inspect_json(container, ".Mounts")
    if not isinstance(mounts, list):
        return None
    for mount in mounts:
        if mount.get("Destination") == path and mount.get("Name"):
            return mount["Name"]
    return None


def _single_file_tar(path: str, data: bytes, mode: int = 0o644) -> bytes:
    """Return a tar archive holding *data* at *path* (relative to ``/``)."""
    buf = io.BytesIO()
    info = tarfile.TarInfo(name=path.lstrip("/"))
    info.size = len(data)
    info.mode = mode
    info.mtime = int(time.time())
    with tarfile.open(fileobj=buf, mode="w") as tar:
        tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def copy_into(container: str, dest: str, data: bytes) -> None:
    """Write *data* to *dest* inside *container*.

    The file travels as a tar stream extracted at ``/``, so missing
    parent directories of *dest* are created on the way in.
    """
    _run(["cp", "-", f"{container}:/"], input=_single_file_tar(dest, data))


# ── Networks ──────────────────────────────────────────────────────────

def network_connect(network: str, container: str, aliases: list[str] | None = None) -> None:
    """Attach *container* to *network*.  Already attached is not an error."""
    args = ["network", "connect"]
    for alias in aliases or []:
        args += ["--alias", alias]
    args += [network, container]
    try:
        _run(args)
    except EngineError as exc:
        if isinstance(exc, EngineUnavailable) or not exc.already_connected:
            raise
        log.debug(f"{container} already connected to {network}")


def network_disconnect(network: str, container: str) -> None:
    """Detach *container* from *network*.  Not attached is not an error."""
    try:
        _run(["network", "disconnect", network, container])
    except EngineError as exc:
        if isinstance(exc, EngineUnavailable) or not exc.not_found:
            raise
        log.debug(f"{container} was not connected to {network}")


# ── Volumes ───────────────────────────────────────────────────────────

def volume_labels(name: str) -> dict[str, str] | None:
    """Return the labels of volume *name*, or None when it does not exist."""
    labels = _inspect_json(name, ".Labels", kind="volume")
    if labels is _MISSING:
        return None
    return labels if isinstance(labels, dict) else {}


def volume_exists(name: str) -> bool:
    result = _run(["volume", "inspect", name], check=False, quiet=True)
    return result.returncode == 0


def volume_create(name: str, labels: dict[str, str] | None = None) -> str:
    args = ["volume", "create"]
    for key, val in (labels or {}).items():
        args += ["--label", f"{key}={val}"]
    args.append(name)
    result = _run(args)
    return result.stdout.strip() or name


def volume_rm(name: str) -> None:
    """Remove a volume.  A volume that is already gone is not an error."""
    try:
        _run(["volume", "rm", name])
    except EngineError as exc:
        if isinstance(exc, EngineUnavailable) or not exc.not_found:
            raise
        log.debug(f"volume {name} already removed")
