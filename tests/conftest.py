"""Shared fixtures for sharedreg tests."""

from __future__ import annotations

import argparse

import pytest

from sharedreg import podman
from sharedreg.config import RegistrySpec


def make_spec(**kwargs) -> RegistrySpec:
    """Factory for RegistrySpec with sensible defaults."""
    defaults = {
        "name": "registry.localhost",
        "port": 5000,
        "volume": None,
        "cache": False,
        "auto_restart": False,
        "registries_file": None,
        "host_config": {},
        "enabled": True,
    }
    defaults.update(kwargs)
    return RegistrySpec(**defaults)


def make_args(**kwargs) -> argparse.Namespace:
    """Factory for argparse.Namespace with common defaults."""
    defaults = {
        "verbose": False,
        "config": None,
        "engine": None,
        "no_color": True,
        "command": "attach",
        "cluster": "dev",
        "nodes": [],
        "name": None,
        "port": None,
        "volume": None,
        "cache": None,
        "auto_restart": None,
        "registries_file": None,
        "keep_volume": False,
    }
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


def _engine_error(op: str, stderr: str) -> podman.EngineError:
    return podman.EngineError(["podman", op], 125, stderr)


class FakeEngine:
    """In-memory stand-in for the engine functions in :mod:`sharedreg.podman`."""

    PATCHED = (
        "list_containers", "create", "start", "rm",
        "container_labels", "container_state", "container_networks",
        "volume_mounted_at", "copy_into",
        "network_connect", "network_disconnect",
        "volume_exists", "volume_create", "volume_labels", "volume_rm",
    )

    def __init__(self) -> None:
        self.containers: dict[str, dict] = {}
        self.volumes: dict[str, dict[str, str]] = {}
        self.files: dict[tuple[str, str], bytes] = {}
        self.fail: dict[str, podman.EngineError] = {}
        self.calls: list[str] = []
        self._seq = 0

    def _op(self, name: str) -> None:
        self.calls.append(name)
        exc = self.fail.get(name)
        if exc is not None:
            raise exc

    def _get(self, cid: str) -> dict:
        if cid not in self.containers:
            raise _engine_error("inspect", f"Error: No such container: {cid}")
        return self.containers[cid]

    # -- containers --

    def list_containers(self, *, name=None, labels=None):
        self._op("list_containers")
        return [
            cid for cid, c in self.containers.items()
            if (name is None or name in c["name"])
            and all(c["labels"].get(k) == v for k, v in (labels or {}).items())
        ]

    def create(self, image, *, name, hostname=None, labels=None, env=None,
               host_config=None, network=None, aliases=None):
        self._op("create")
        if any(c["name"] == name for c in self.containers.values()):
            raise _engine_error(
                "create", f'Error: the container name "{name}" is already in use',
            )
        self._seq += 1
        cid = f"{self._seq:012x}" * 4
        host_config = host_config or {}
        mounts = {}
        for bind in host_config.get("Binds", []):
            vol, path = bind.split(":", 1)
            # the engine creates unknown named volumes on the fly, unlabeled
            self.volumes.setdefault(vol, {})
            mounts[path] = vol
        self.containers[cid] = {
            "name": name,
            "image": image,
            "hostname": hostname,
            "labels": dict(labels or {}),
            "env": dict(env or {}),
            "host_config": host_config,
            "networks": {network: list(aliases or [])} if network else {},
            "mounts": mounts,
            "running": False,
        }
        return cid

    def start(self, cid):
        self._op("start")
        self._get(cid)["running"] = True

    def rm(self, cid, *, force=True):
        self._op("rm")
        self.containers.pop(cid, None)

    def container_labels(self, cid):
        self._op("container_labels")
        c = self.containers.get(cid)
        return dict(c["labels"]) if c else {}

    def container_state(self, cid):
        c = self.containers.get(cid)
        if c is None:
            return None
        return "running" if c["running"] else "exited"

    def container_networks(self, cid):
        self._op("container_networks")
        c = self.containers.get(cid)
        return sorted(c["networks"]) if c else []

    def volume_mounted_at(self, cid, path):
        self._op("volume_mounted_at")
        c = self.containers.get(cid)
        return c["mounts"].get(path) if c else None

    def copy_into(self, cid, dest, data):
        self._op("copy_into")
        self._get(cid)
        self.files[(cid, dest)] = data

    # -- networks --

    def network_connect(self, network, cid, aliases=None):
        self._op("network_connect")
        self._get(cid)["networks"].setdefault(network, list(aliases or []))

    def network_disconnect(self, network, cid):
        self._op("network_disconnect")
        self._get(cid)["networks"].pop(network, None)

    # -- volumes --

    def volume_exists(self, name):
        self._op("volume_exists")
        return name in self.volumes

    def volume_create(self, name, labels=None):
        self._op("volume_create")
        self.volumes[name] = dict(labels or {})
        return name

    def volume_labels(self, name):
        self._op("volume_labels")
        if name not in self.volumes:
            return None
        return dict(self.volumes[name])

    def volume_rm(self, name):
        self._op("volume_rm")
        self.volumes.pop(name, None)


@pytest.fixture
def engine(monkeypatch) -> FakeEngine:
    """Replace the engine wrapper with an in-memory fake."""
    fake = FakeEngine()
    for name in FakeEngine.PATCHED:
        monkeypatch.setattr(podman, name, getattr(fake, name))
    monkeypatch.setattr(podman, "_engine", "podman")
    return fake


@pytest.fixture
def engine_error():
    """Factory for EngineError instances with a given stderr."""
    return _engine_error
