"""Configuration model: YAML file loading, default generation and atomic saving."""

from __future__ import annotations

import logging
import os
import secrets
import socket
import stat
import string
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .device_id import DeviceID
from .errors import ConfigError, ConfigNotFoundError
from .services.gui_auth import hash_password, is_password_hash

logger = logging.getLogger(__name__)

CURRENT_VERSION = 3

DEFAULT_GUI_HOST = "127.0.0.1"
DEFAULT_GUI_PORT = 8384
UNIX_SOCKET_PREFIX = "unix://"
DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 22000
DEFAULT_FOLDER_ID = "default"
DEFAULT_FOLDER_LABEL = "Default Folder"
DEFAULT_FOLDER_PATH = "~/Sync"
API_KEY_LENGTH = 32

_API_KEY_ALPHABET = string.ascii_letters + string.digits
_FOLDER_TYPES = ("sendreceive", "sendonly", "receiveonly")


@dataclass
class DeviceConfiguration:
    device_id: str
    name: str = ""
    addresses: list[str] = field(default_factory=lambda: ["dynamic"])
    compression: str = "metadata"
    introducer: bool = False


@dataclass
class FolderConfiguration:
    id: str
    label: str = ""
    path: str = ""
    type: str = "sendreceive"
    rescan_interval_s: int = 3600
    fs_watcher_enabled: bool = True
    devices: list[str] = field(default_factory=list)


@dataclass
class GUIConfiguration:
    enabled: bool = True
    address: str = f"{DEFAULT_GUI_HOST}:{DEFAULT_GUI_PORT}"
    user: str = ""
    password: str = ""  # argon2 hash, never plaintext
    use_tls: bool = False
    api_key: str = ""

    def hash_and_set_password(self, password: str) -> None:
        self.password = hash_password(password)


@dataclass
class OptionsConfiguration:
    listen_addresses: list[str] = field(default_factory=lambda: ["default"])
    global_announce_enabled: bool = True
    local_announce_enabled: bool = True
    relays_enabled: bool = True
    start_browser: bool = True
    ur_accepted: int = 0


@dataclass
class Configuration:
    version: int = CURRENT_VERSION
    devices: list[DeviceConfiguration] = field(default_factory=list)
    folders: list[FolderConfiguration] = field(default_factory=list)
    gui: GUIConfiguration = field(default_factory=GUIConfiguration)
    options: OptionsConfiguration = field(default_factory=OptionsConfiguration)

    def device(self, device_id: DeviceID | str) -> DeviceConfiguration | None:
        wanted = str(device_id)
        for dev in self.devices:
            if dev.device_id == wanted:
                return dev
        return None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _section(raw: dict[str, Any], key: str, kind: type) -> Any:
    value = raw.get(key)
    if value is None:
        return kind()
    if not isinstance(value, kind):
        raise ConfigError(f"'{key}' must be a {kind.__name__}, got {type(value).__name__}")
    return value


_TRUE_WORDS = ("true", "1", "yes", "on")
_FALSE_WORDS = ("false", "0", "no", "off")


def _as_bool(value: Any, default: bool, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (str, int)):
        word = str(value).strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ConfigError(f"'{key}' must be a boolean, got {value!r}")


def _as_int(value: Any, default: int, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError) as e:
        raise ConfigError(f"'{key}' must be an integer, got {value!r}") from e


def _str_list(value: Any, default: list[str], key: str) -> list[str]:
    if value is None:
        return list(default)
    if not isinstance(value, list):
        raise ConfigError(f"'{key}' must be a list")
    return [str(v) for v in value]


def _parse_device(raw: Any) -> DeviceConfiguration:
    if not isinstance(raw, dict) or not raw.get("device_id"):
        raise ConfigError("each device needs a 'device_id'")
    try:
        device_id = str(DeviceID.from_string(str(raw["device_id"])))
    except ValueError as e:
        raise ConfigError(f"invalid device_id: {e}") from e
    return DeviceConfiguration(
        device_id=device_id,
        name=str(raw.get("name", "")),
        addresses=_str_list(raw.get("addresses"), ["dynamic"], "devices.addresses"),
        compression=str(raw.get("compression", "metadata")),
        introducer=_as_bool(raw.get("introducer"), False, "devices.introducer"),
    )


def _parse_folder(raw: Any) -> FolderConfiguration:
    if not isinstance(raw, dict) or not raw.get("id"):
        raise ConfigError("each folder needs an 'id'")
    return FolderConfiguration(
        id=str(raw["id"]),
        label=str(raw.get("label", "")),
        path=str(raw.get("path", "")),
        type=str(raw.get("type", "sendreceive")),
        rescan_interval_s=_as_int(raw.get("rescan_interval_s"), 3600, "folders.rescan_interval_s"),
        fs_watcher_enabled=_as_bool(raw.get("fs_watcher_enabled"), True, "folders.fs_watcher_enabled"),
        devices=_str_list(raw.get("devices"), [], "folders.devices"),
    )


def config_from_dict(raw: dict[str, Any]) -> Configuration:
    gui_raw = _section(raw, "gui", dict)
    opts_raw = _section(raw, "options", dict)

    gui = GUIConfiguration(
        enabled=_as_bool(gui_raw.get("enabled"), True, "gui.enabled"),
        address=str(gui_raw.get("address", f"{DEFAULT_GUI_HOST}:{DEFAULT_GUI_PORT}")),
        user=str(gui_raw.get("user", "") or ""),
        password=str(gui_raw.get("password", "") or ""),
        use_tls=_as_bool(gui_raw.get("use_tls"), False, "gui.use_tls"),
        api_key=str(gui_raw.get("api_key", "") or ""),
    )
    options = OptionsConfiguration(
        listen_addresses=_str_list(opts_raw.get("listen_addresses"), ["default"], "options.listen_addresses"),
        global_announce_enabled=_as_bool(
            opts_raw.get("global_announce_enabled"), True, "options.global_announce_enabled"
        ),
        local_announce_enabled=_as_bool(opts_raw.get("local_announce_enabled"), True, "options.local_announce_enabled"),
        relays_enabled=_as_bool(opts_raw.get("relays_enabled"), True, "options.relays_enabled"),
        start_browser=_as_bool(opts_raw.get("start_browser"), True, "options.start_browser"),
        ur_accepted=_as_int(opts_raw.get("ur_accepted"), 0, "options.ur_accepted"),
    )
    return Configuration(
        version=_as_int(raw.get("version"), CURRENT_VERSION, "version"),
        devices=[_parse_device(d) for d in _section(raw, "devices", list)],
        folders=[_parse_folder(f) for f in _section(raw, "folders", list)],
        gui=gui,
        options=options,
    )


def validate(cfg: Configuration) -> None:
    """Check the invariants a configuration must hold before it is accepted."""
    seen_devices: set[str] = set()
    for dev in cfg.devices:
        if dev.device_id in seen_devices:
            raise ConfigError(f"duplicate device {dev.device_id}")
        seen_devices.add(dev.device_id)

    seen_folders: set[str] = set()
    for fld in cfg.folders:
        if not fld.id:
            raise ConfigError("folder with empty id")
        if fld.id in seen_folders:
            raise ConfigError(f"duplicate folder id {fld.id!r}")
        if fld.type not in _FOLDER_TYPES:
            raise ConfigError(f"folder {fld.id!r} has unknown type {fld.type!r}")
        seen_folders.add(fld.id)

    if cfg.gui.address.startswith(UNIX_SOCKET_PREFIX):
        if not cfg.gui.address[len(UNIX_SOCKET_PREFIX) :].startswith("/"):
            raise ConfigError(f"GUI address {cfg.gui.address!r} needs an absolute socket path")
    else:
        host, sep, port = cfg.gui.address.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ConfigError(f"GUI address {cfg.gui.address!r} is not host:port or unix:///path")
    if cfg.gui.password and not is_password_hash(cfg.gui.password):
        raise ConfigError("GUI password must be stored hashed")


# ---------------------------------------------------------------------------
# Load / default / save
# ---------------------------------------------------------------------------


def load_config(path: Path, device_id: DeviceID) -> Configuration:
    """Load configuration from ``path`` and bind it to ``device_id``.

    Raises ``ConfigNotFoundError`` when the file is absent and ``ConfigError``
    for anything else that goes wrong. A plaintext GUI password found in the
    file is hashed, and the own device is added if the file lacks it.
    """
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigNotFoundError(f"no configuration at {path}") from e
    except OSError as e:
        raise ConfigError(f"reading {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"parsing {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    cfg = config_from_dict(raw)

    if cfg.gui.password and not is_password_hash(cfg.gui.password):
        logger.info("Hashing plaintext GUI password found in %s", path)
        cfg.gui.hash_and_set_password(cfg.gui.password)

    if cfg.device(device_id) is None:
        logger.info("Adding own device %s to configuration", device_id.short())
        cfg.devices.insert(0, DeviceConfiguration(device_id=str(device_id), name=_host_name()))

    validate(cfg)
    return cfg


def _host_name() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "nodeseed"


def get_free_port(host: str, preferred: int) -> int:
    """Return ``preferred`` if it can be bound on ``host``, else an OS-assigned free port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, preferred))
            return preferred
        except OSError:
            logger.debug("Port %d on %s is taken", preferred, host)
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def generate_api_key() -> str:
    return "".join(secrets.choice(_API_KEY_ALPHABET) for _ in range(API_KEY_LENGTH))


def default_config(
    device_id: DeviceID,
    *,
    no_default_folder: bool = False,
    skip_port_probing: bool = False,
) -> Configuration:
    """Build a fresh configuration for a node that has none yet."""
    own = DeviceConfiguration(device_id=str(device_id), name=_host_name())
    cfg = Configuration(devices=[own])

    if not no_default_folder:
        cfg.folders.append(
            FolderConfiguration(
                id=DEFAULT_FOLDER_ID,
                label=DEFAULT_FOLDER_LABEL,
                path=os.path.expanduser(DEFAULT_FOLDER_PATH),
                devices=[own.device_id],
            )
        )

    gui_address = os.environ.get("NODESEED_GUI_ADDRESS", "")
    if not skip_port_probing:
        try:
            if not gui_address:
                gui_port = get_free_port(DEFAULT_GUI_HOST, DEFAULT_GUI_PORT)
                gui_address = f"{DEFAULT_GUI_HOST}:{gui_port}"
            listen_port = get_free_port(DEFAULT_LISTEN_HOST, DEFAULT_LISTEN_PORT)
        except OSError as e:
            raise ConfigError(f"probing for free ports: {e}") from e
        if listen_port != DEFAULT_LISTEN_PORT:
            cfg.options.listen_addresses = [
                f"tcp://{DEFAULT_LISTEN_HOST}:{listen_port}",
                f"quic://{DEFAULT_LISTEN_HOST}:{listen_port}",
            ]
    if gui_address:
        cfg.gui.address = gui_address

    cfg.gui.api_key = generate_api_key()
    validate(cfg)
    return cfg


def write_config(path: Path, cfg: Configuration) -> None:
    """Atomically replace ``path`` with ``cfg`` serialized as YAML (mode 0600)."""
    tmp_path = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.dump(cfg.to_dict(), f, default_flow_style=False, sort_keys=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    try:
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass  # May fail on Windows or non-owned files
