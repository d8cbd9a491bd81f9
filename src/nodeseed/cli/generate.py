"""The ``nodeseed generate`` subcommand: provision keys and bootstrap config."""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import TextIO

from rich.console import Console
from rich.table import Table

from ..config import Configuration, GUIConfiguration, default_config, load_config
from ..device_id import DeviceID
from ..errors import (
    ActorStoppedError,
    CertificateError,
    ConfigError,
    ConfigNotFoundError,
    GenerateError,
    HashingError,
    InputError,
)
from ..identity import NodeIdentity, ensure_identity
from ..locations import Locations, ensure_dir
from ..services.config_actor import ConfigActor
from ..services.gui_auth import needs_rehash, verify_password

logger = logging.getLogger(__name__)

STDIN_SENTINEL = "-"

# Color palette shared with the rest of the CLI output
GOLD = "#C5A059"
SLATE = "#94A3B8"

STAGE_CONFIG_DIR = "create config directory"
STAGE_CERTIFICATE = "create certificate"
STAGE_CREATE_CONFIG = "create config"
STAGE_LOAD_CONFIG = "load config"
STAGE_MODIFY_CONFIG = "modify config"
STAGE_SAVE_CONFIG = "save config"


def resolve_password(value: str, sentinel: str = STDIN_SENTINEL, stream: TextIO | None = None) -> str:
    """Return ``value``, or one line read from ``stream`` if it is the sentinel."""
    if value != sentinel:
        return value
    stream = stream if stream is not None else sys.stdin
    try:
        line = stream.readline()
    except OSError as e:
        raise InputError(f"failed reading GUI password: {e}") from e
    if not line:
        raise InputError("failed reading GUI password: EOF")
    return line.rstrip("\r\n")


def update_gui_authentication(gui: GUIConfiguration, user: str, password: str) -> bool:
    """Apply new GUI credentials. Returns True if anything changed.

    The password is only rehashed when it is not already what is configured:
    either the stored value is the input verbatim or the stored hash verifies
    it (and was made with current parameters).
    """
    changed = False
    if user and gui.user != user:
        gui.user = user
        logger.info("Updated GUI authentication user name: %s", user)
        changed = True

    if password and gui.password != password:
        already_set = verify_password(password, gui.password) and not needs_rehash(gui.password)
        if not already_set:
            gui.hash_and_set_password(password)
            logger.info("Updated GUI authentication password.")
            changed = True
    return changed


def load_or_default(
    locations: Locations,
    device_id: DeviceID,
    *,
    no_default_folder: bool = False,
    skip_port_probing: bool = False,
) -> Configuration:
    """Load the configuration file, or build a default one if it does not exist."""
    try:
        return load_config(locations.config_file, device_id)
    except ConfigNotFoundError:
        logger.debug("No configuration at %s, creating default", locations.config_file)
    except (ConfigError, HashingError) as e:
        raise GenerateError(STAGE_LOAD_CONFIG, e) from e

    try:
        return default_config(device_id, no_default_folder=no_default_folder, skip_port_probing=skip_port_probing)
    except ConfigError as e:
        raise GenerateError(STAGE_CREATE_CONFIG, e) from e


def generate(
    conf_dir: str | Path,
    gui_user: str = "",
    gui_password: str = "",
    *,
    no_default_folder: bool = False,
    skip_port_probing: bool = False,
) -> NodeIdentity:
    """Ensure keys and a configuration exist in ``conf_dir`` and apply GUI credentials.

    Safe to run repeatedly: an existing certificate is kept and an existing
    configuration is only changed where the credentials differ. Raises
    ``GenerateError`` naming the stage that failed.
    """
    base_dir = Path(conf_dir).expanduser()
    try:
        ensure_dir(base_dir)
    except OSError as e:
        raise GenerateError(STAGE_CONFIG_DIR, e) from e
    locations = Locations(base_dir)

    try:
        identity = ensure_identity(locations)
    except CertificateError as e:
        raise GenerateError(STAGE_CERTIFICATE, e) from e

    cfg = load_or_default(
        locations,
        identity.device_id,
        no_default_folder=no_default_folder,
        skip_port_probing=skip_port_probing,
    )

    cancel = threading.Event()
    actor = ConfigActor(locations.config_file, cfg)
    thread = actor.start(cancel)
    try:
        try:
            waiter = actor.modify(lambda c: update_gui_authentication(c.gui, gui_user, gui_password))
            waiter.wait()
        except (ActorStoppedError, HashingError, ConfigError) as e:
            raise GenerateError(STAGE_MODIFY_CONFIG, e) from e

        try:
            actor.save()
        except (ConfigError, OSError) as e:
            raise GenerateError(STAGE_SAVE_CONFIG, e) from e
    finally:
        cancel.set()
        thread.join()
    return identity


def render_summary(identity: NodeIdentity, locations: Locations, console: Console | None = None) -> None:
    console = console or Console()
    table = Table(title="Node Identity", show_header=False, border_style=GOLD)
    table.add_column("Setting", style=SLATE)
    table.add_column("Value")
    table.add_row("Device ID", str(identity.device_id))
    table.add_row("Certificate", f"{identity.cert_path} ({'generated' if identity.generated else 'existing'})")
    table.add_row("Private key", str(identity.key_path))
    table.add_row("Config file", str(locations.config_file))
    console.print(table)
