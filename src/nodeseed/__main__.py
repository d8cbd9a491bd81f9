"""CLI entry point for nodeseed."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from . import __version__
from .errors import ConflictingArgumentsError, InputError, NodeseedError
from .locations import Locations, default_base_dir


def _resolve_conf_dir(home_dir: str | None, conf_dir: str | None) -> Path:
    if home_dir:
        if conf_dir:
            raise ConflictingArgumentsError("--home must not be used together with --config")
        conf_dir = home_dir
    if not conf_dir:
        return default_base_dir()
    return Path(conf_dir).expanduser()


def _run_generate(args) -> None:
    """Handle `nodeseed generate`."""
    from .cli.generate import generate, render_summary, resolve_password

    try:
        conf_dir = _resolve_conf_dir(args.home_dir, args.conf_dir)
        # Support reading the password from a pipe or similar
        gui_password = resolve_password(args.gui_password)
    except (ConflictingArgumentsError, InputError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        identity = generate(
            conf_dir,
            gui_user=args.gui_user,
            gui_password=gui_password,
            no_default_folder=args.no_default_folder,
            skip_port_probing=args.skip_port_probing,
        )
    except NodeseedError as e:
        print(f"failed to generate config and keys: {e}", file=sys.stderr)
        sys.exit(1)

    render_summary(identity, Locations(conf_dir))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="nodeseed", description="nodeseed - node identity and config bootstrap")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    gen_parser = subparsers.add_parser("generate", help="Generate keys and a default configuration")
    gen_parser.add_argument("--home", dest="home_dir", default=None, help="Set configuration and data directory")
    gen_parser.add_argument("--config", dest="conf_dir", default=None, help="Set configuration directory")
    gen_parser.add_argument("--gui-user", dest="gui_user", default="", help="Specify new GUI authentication user name")
    gen_parser.add_argument(
        "--gui-password",
        dest="gui_password",
        default="",
        help="Specify new GUI authentication password (use - to read from standard input)",
    )
    gen_parser.add_argument(
        "--no-default-folder",
        dest="no_default_folder",
        action="store_true",
        help="Don't create the default folder on first startup",
    )
    gen_parser.add_argument(
        "--skip-port-probing",
        dest="skip_port_probing",
        action="store_true",
        help="Don't try to find free ports for GUI and listen addresses on first startup",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    if args.command == "generate":
        _run_generate(args)
        return

    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
