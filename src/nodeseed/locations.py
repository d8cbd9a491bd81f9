"""Filesystem locations of the certificate, key and configuration files."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

CERT_FILE_NAME = "cert.pem"
KEY_FILE_NAME = "key.pem"
CONFIG_FILE_NAME = "config.yaml"


@dataclass(frozen=True)
class Locations:
    """Resolved paths below one configuration directory."""

    base_dir: Path

    @property
    def cert_file(self) -> Path:
        return self.base_dir / CERT_FILE_NAME

    @property
    def key_file(self) -> Path:
        return self.base_dir / KEY_FILE_NAME

    @property
    def config_file(self) -> Path:
        return self.base_dir / CONFIG_FILE_NAME


def default_base_dir() -> Path:
    """Resolve the default configuration directory.

    ``$NODESEED_HOME`` wins; otherwise ``$XDG_CONFIG_HOME/nodeseed`` or
    ``~/.config/nodeseed``.
    """
    env_home = os.environ.get("NODESEED_HOME")
    if env_home:
        return Path(env_home).expanduser()
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg).expanduser() / "nodeseed"
    return Path.home() / ".config" / "nodeseed"


def ensure_dir(path: Path, mode: int = stat.S_IRWXU) -> Path:
    """Create ``path`` (and parents) and make sure it carries ``mode``.

    An existing directory with looser permissions is tightened.
    """
    path.mkdir(parents=True, exist_ok=True, mode=mode)
    current = stat.S_IMODE(path.stat().st_mode)
    if current != mode:
        try:
            path.chmod(mode)
        except OSError:
            # Not owned by us, or a filesystem without POSIX modes
            logger.warning("Could not set permissions %o on %s", mode, path)
    return path
