"""Command-line interface for sharedreg.

Parses arguments, loads settings, and dispatches to the lifecycle and
mirror modules.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import sharedreg
from sharedreg import lifecycle, locator, log, mirrors, podman
from sharedreg.config import RegistrySpec, Settings, resolve_registries_file, with_overrides
from sharedreg.config import load as load_settings

# ── Helpers ───────────────────────────────────────────────────────────

def _registry_options() -> argparse.ArgumentParser:
    """Options describing the registry, shared by several subcommands."""
    parent = argparse.ArgumentParser(add_help=False)
    group = parent.add_argument_group("registry")
    group.add_argument(
        "--name",
        metavar="HOST",
        default=None,
        help="hostname the clusters use for the registry (default: registry.localhost)",
    )
    group.add_argument(
        "--port",
        metavar="PORT",
        type=int,
        default=None,
        help="port published on the host (default: 5000)",
    )
    group.add_argument(
        "--volume",
        metavar="NAME",
        default=None,
        help="store images in this volume (created if missing)",
    )
    group.add_argument(
        "--cache",
        action="store_true",
        default=None,
        help="act as a pull-through cache for Docker Hub",
    )
    group.add_argument(
        "--auto-restart",
        action="store_true",
        default=None,
        dest="auto_restart",
        help="restart the registry unless it was stopped manually",
    )
    group.add_argument(
        "--registries-file",
        metavar="FILE",
        default=None,
        dest="registries_file",
        help="base registries.yaml to merge the mirrors into "
             "(default: ~/.k3d/registries.yaml when present)",
    )
    return parent


def _make_parser() -> argparse.ArgumentParser:
    """Build the top-level argument parser with all subcommands."""

    parser = argparse.ArgumentParser(
        prog="sharedreg",
        description="Shared local container registry for k3d clusters",
        epilog="Run 'sharedreg <command> --help' for subcommand-specific options.",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"sharedreg {sharedreg.VERSION}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        default=False,
        help="enable debug logging",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        default=None,
        help="settings file (default: .sharedreg.yaml or ~/.sharedreg/config.yaml)",
    )
    parser.add_argument(
        "--engine",
        choices=["podman", "docker"],
        default=None,
        help="container engine binary to drive",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        dest="no_color",
        help="disable colored output",
    )

    sub = parser.add_subparsers(dest="command", title="commands")
    registry_opts = _registry_options()

    # -- attach --
    attach_parser = sub.add_parser(
        "attach",
        parents=[registry_opts],
        help="create or reuse the registry and attach it to a cluster",
        description="Ensure the shared registry runs and is reachable from CLUSTER.",
    )
    attach_parser.add_argument("cluster", metavar="CLUSTER")
    attach_parser.add_argument(
        "--node",
        metavar="ID",
        action="append",
        default=[],
        dest="nodes",
        help="write the mirror configuration into this node (repeatable)",
    )

    # -- detach --
    detach_parser = sub.add_parser(
        "detach",
        help="detach the registry from a cluster (removes it when unused)",
        description="Disconnect the registry from CLUSTER and remove it "
                    "once no cluster uses it.",
    )
    detach_parser.add_argument("cluster", metavar="CLUSTER")
    detach_parser.add_argument(
        "--keep-volume",
        action="store_true",
        default=False,
        dest="keep_volume",
        help="keep the registry volume when the registry is removed",
    )

    # -- mirrors --
    mirrors_parser = sub.add_parser(
        "mirrors",
        parents=[registry_opts],
        help="print the registries.yaml written into cluster nodes",
        description="Render the mirror configuration without touching any node.",
    )
    mirrors_parser.add_argument(
        "--disabled",
        action="store_false",
        default=None,
        dest="enabled",
        help="render only the base document, without the registry mirrors",
    )

    # -- status --
    sub.add_parser(
        "status",
        help="show the registry container and its networks",
        description="Display the shared registry, if any.",
    )

    return parser


def _apply_overrides(spec: RegistrySpec, args: argparse.Namespace) -> RegistrySpec:
    """Apply CLI registry options on top of the settings file."""
    spec = with_overrides(
        spec,
        name=getattr(args, "name", None),
        port=getattr(args, "port", None),
        volume=getattr(args, "volume", None),
        cache=getattr(args, "cache", None),
        auto_restart=getattr(args, "auto_restart", None),
        enabled=getattr(args, "enabled", None),
    )
    explicit = getattr(args, "registries_file", None) or spec.registries_file
    return with_overrides(spec, registries_file=resolve_registries_file(explicit))


# ── Subcommands ───────────────────────────────────────────────────────

def _cmd_attach(settings: Settings, args: argparse.Namespace) -> int:
    spec = _apply_overrides(settings.registry, args)
    cid = lifecycle.ensure_registry(spec, args.cluster, image=settings.image)
    for node in args.nodes:
        mirrors.write_mirror_config(spec, node)
    log.success(
        f"Registry {spec.external_address} attached to {args.cluster} ({cid[:12]})"
    )
    return 0


def _cmd_detach(settings: Settings, args: argparse.Namespace) -> int:
    removed = lifecycle.release_registry(args.cluster, keep_volume=args.keep_volume)
    if removed:
        log.success("Registry removed")
    else:
        log.success(f"Registry detached from {args.cluster}")
    return 0


def _cmd_mirrors(settings: Settings, args: argparse.Namespace) -> int:
    spec = _apply_overrides(settings.registry, args)
    sys.stdout.write(mirrors.render(mirrors.build_mirror_config(spec)))
    return 0


def _cmd_status(settings: Settings, args: argparse.Namespace) -> int:
    reg = locator.describe_registry()
    if reg is None:
        log.info("No registry present")
        return 1
    log.step(f"Registry {reg.hostname or '?'}")
    log.info(f"ID:       {reg.id[:12]}")
    log.info(f"State:    {reg.state or 'unknown'}")
    log.info(f"Created:  {reg.labels.get('created', 'unknown')}")
    log.info(f"Networks: {', '.join(reg.networks) or '(none)'}")
    return 0


_DISPATCHERS: dict[str, callable] = {
    "attach": _cmd_attach,
    "detach": _cmd_detach,
    "mirrors": _cmd_mirrors,
    "status": _cmd_status,
}


# ── Entry point ───────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> None:
    """Parse arguments, load settings, dispatch to subcommand.

    Parameters
    ----------
    argv:
        Argument list for testing.  Defaults to ``sys.argv[1:]``.
    """
    parser = _make_parser()
    args = parser.parse_args(argv)

    log.set_verbose(args.verbose)
    if args.no_color:
        log.set_color(False)

    if args.command is None:
        parser.print_help(sys.stderr)
        sys.exit(2)

    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except Exception as exc:
        log.error(f"failed to load settings: {exc}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)

    if args.engine:
        settings.engine = args.engine
    podman.set_engine(settings.engine)
    if settings.source is not None:
        log.debug(f"settings loaded from {settings.source}")

    dispatcher = _DISPATCHERS[args.command]
    try:
        rc = dispatcher(settings, args)
    except KeyboardInterrupt:
        log.warn("interrupted")
        sys.exit(130)
    except Exception as exc:
        log.error(f"{args.command} failed: {exc}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)

    sys.exit(rc)
