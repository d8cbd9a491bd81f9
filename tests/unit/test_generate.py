"""Tests for the generate bootstrap sequence."""

from __future__ import annotations

import copy
import io
import logging
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from nodeseed.cli.generate import (
    STAGE_CERTIFICATE,
    STAGE_CREATE_CONFIG,
    STAGE_LOAD_CONFIG,
    STAGE_MODIFY_CONFIG,
    STAGE_SAVE_CONFIG,
    generate,
    load_or_default,
    resolve_password,
    update_gui_authentication,
)
from nodeseed.config import GUIConfiguration, load_config
from nodeseed.device_id import DeviceID
from nodeseed.errors import ConfigError, GenerateError, HashingError, InputError
from nodeseed.locations import Locations
from nodeseed.services.gui_auth import hash_password, verify_password

MY_ID = DeviceID.from_certificate_bytes(b"generate test certificate")


class _BrokenStream(io.StringIO):
    def readline(self, size: int = -1) -> str:  # type: ignore[override]
        raise OSError("stdin closed")


class TestResolvePassword:
    def test_plain_value_passes_through(self) -> None:
        stream = io.StringIO("should not be read\n")
        assert resolve_password("hunter2", stream=stream) == "hunter2"
        assert stream.tell() == 0

    def test_sentinel_reads_one_line(self) -> None:
        stream = io.StringIO("secretpass\nsecond line\n")
        assert resolve_password("-", stream=stream) == "secretpass"
        assert stream.readline() == "second line\n"

    def test_crlf_stripped(self) -> None:
        assert resolve_password("-", stream=io.StringIO("secretpass\r\n")) == "secretpass"

    def test_line_without_newline(self) -> None:
        assert resolve_password("-", stream=io.StringIO("secretpass")) == "secretpass"

    def test_eof_raises_input_error(self) -> None:
        with pytest.raises(InputError, match="EOF"):
            resolve_password("-", stream=io.StringIO(""))

    def test_read_failure_raises_input_error(self) -> None:
        with pytest.raises(InputError, match="stdin closed"):
            resolve_password("-", stream=_BrokenStream())

    def test_reads_sys_stdin_by_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("sys.stdin", io.StringIO("from-stdin\n"))
        assert resolve_password("-") == "from-stdin"


class TestUpdateGuiAuthentication:
    def test_sets_user(self, caplog: pytest.LogCaptureFixture) -> None:
        gui = GUIConfiguration()
        with caplog.at_level(logging.INFO, logger="nodeseed.cli.generate"):
            assert update_gui_authentication(gui, "admin", "") is True
        assert gui.user == "admin"
        assert "Updated GUI authentication user name: admin" in caplog.text

    def test_sets_hashed_password(self, caplog: pytest.LogCaptureFixture) -> None:
        gui = GUIConfiguration()
        with caplog.at_level(logging.INFO, logger="nodeseed.cli.generate"):
            assert update_gui_authentication(gui, "", "abc123") is True
        assert gui.password != "abc123"
        assert verify_password("abc123", gui.password)
        assert not verify_password("abc124", gui.password)
        assert "Updated GUI authentication password." in caplog.text

    def test_noop_for_identical_user_and_no_password(self, caplog: pytest.LogCaptureFixture) -> None:
        gui = GUIConfiguration(user="admin", password=hash_password("old"))
        before = copy.deepcopy(gui)
        with caplog.at_level(logging.DEBUG):
            assert update_gui_authentication(gui, "admin", "") is False
        assert gui == before
        assert caplog.text == ""

    def test_noop_for_empty_values(self) -> None:
        gui = GUIConfiguration(user="admin")
        before = copy.deepcopy(gui)
        assert update_gui_authentication(gui, "", "") is False
        assert gui == before

    def test_same_password_not_rehashed(self) -> None:
        stored = hash_password("abc123")
        gui = GUIConfiguration(password=stored)
        assert update_gui_authentication(gui, "", "abc123") is False
        assert gui.password == stored

    def test_stored_hash_passed_verbatim_is_noop(self) -> None:
        stored = hash_password("abc123")
        gui = GUIConfiguration(password=stored)
        assert update_gui_authentication(gui, "", stored) is False
        assert gui.password == stored

    def test_different_password_rehashed(self) -> None:
        stored = hash_password("abc123")
        gui = GUIConfiguration(password=stored)
        assert update_gui_authentication(gui, "", "newpass") is True
        assert verify_password("newpass", gui.password)

    def test_hashing_failure_propagates(self) -> None:
        gui = GUIConfiguration()
        with patch("nodeseed.config.hash_password", side_effect=HashingError("out of memory")):
            with pytest.raises(HashingError):
                update_gui_authentication(gui, "admin", "abc123")


class TestLoadOrDefault:
    def test_default_when_absent(self, tmp_path: Path) -> None:
        cfg = load_or_default(Locations(tmp_path), MY_ID, skip_port_probing=True)
        assert cfg.devices[0].device_id == str(MY_ID)

    def test_no_default_folder_switch(self, tmp_path: Path) -> None:
        cfg = load_or_default(Locations(tmp_path), MY_ID, no_default_folder=True, skip_port_probing=True)
        assert cfg.folders == []

    def test_load_error_is_not_masked(self, tmp_path: Path) -> None:
        (tmp_path / "config.yaml").write_text("gui: [unclosed")
        with pytest.raises(GenerateError) as exc_info:
            load_or_default(Locations(tmp_path), MY_ID, skip_port_probing=True)
        assert exc_info.value.stage == STAGE_LOAD_CONFIG

    def test_default_failure_is_create_stage(self, tmp_path: Path) -> None:
        with patch("nodeseed.cli.generate.default_config", side_effect=ConfigError("no ports")):
            with pytest.raises(GenerateError) as exc_info:
                load_or_default(Locations(tmp_path), MY_ID)
        assert exc_info.value.stage == STAGE_CREATE_CONFIG

    def test_hashing_failure_on_load_is_load_stage(self, tmp_path: Path) -> None:
        (tmp_path / "config.yaml").write_text("gui:\n  password: plaintext\n")
        with patch("nodeseed.config.hash_password", side_effect=HashingError("out of memory")):
            with pytest.raises(GenerateError) as exc_info:
                load_or_default(Locations(tmp_path), MY_ID, skip_port_probing=True)
        assert exc_info.value.stage == STAGE_LOAD_CONFIG
        assert isinstance(exc_info.value.cause, HashingError)
        assert (tmp_path / "config.yaml").read_text() == "gui:\n  password: plaintext\n"


class TestGenerate:
    def test_creates_everything(self, tmp_path: Path) -> None:
        conf_dir = tmp_path / "conf"
        identity = generate(conf_dir, skip_port_probing=True)
        assert (conf_dir / "cert.pem").exists()
        assert (conf_dir / "key.pem").exists()
        cfg = load_config(conf_dir / "config.yaml", identity.device_id)
        assert cfg.devices[0].device_id == str(identity.device_id)

    def test_directory_is_owner_only(self, tmp_path: Path) -> None:
        conf_dir = tmp_path / "conf"
        generate(conf_dir, skip_port_probing=True)
        assert stat.S_IMODE(conf_dir.stat().st_mode) == 0o700

    def test_expands_tilde(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", str(tmp_path))
        generate("~/nodeconf", skip_port_probing=True)
        assert (tmp_path / "nodeconf" / "cert.pem").exists()

    def test_second_run_keeps_identity(self, tmp_path: Path) -> None:
        first = generate(tmp_path, skip_port_probing=True)
        key_mtime = (tmp_path / "key.pem").stat().st_mtime_ns
        cert_mtime = (tmp_path / "cert.pem").stat().st_mtime_ns

        second = generate(tmp_path, skip_port_probing=True)

        assert second.device_id == first.device_id
        assert second.generated is False
        assert (tmp_path / "key.pem").stat().st_mtime_ns == key_mtime
        assert (tmp_path / "cert.pem").stat().st_mtime_ns == cert_mtime

    def test_sets_credentials(self, tmp_path: Path) -> None:
        identity = generate(tmp_path, "admin", "abc123", skip_port_probing=True)
        cfg = load_config(tmp_path / "config.yaml", identity.device_id)
        assert cfg.gui.user == "admin"
        assert cfg.gui.password != "abc123"
        assert verify_password("abc123", cfg.gui.password)

    def test_password_from_stdin(self, tmp_path: Path) -> None:
        password = resolve_password("-", stream=io.StringIO("secretpass\n"))
        identity = generate(tmp_path, gui_password=password, skip_port_probing=True)
        cfg = load_config(tmp_path / "config.yaml", identity.device_id)
        assert verify_password("secretpass", cfg.gui.password)

    def test_existing_config_is_mutated_not_replaced(self, tmp_path: Path) -> None:
        identity = generate(tmp_path, no_default_folder=True, skip_port_probing=True)
        cfg_before = load_config(tmp_path / "config.yaml", identity.device_id)

        generate(tmp_path, gui_user="admin", skip_port_probing=True)
        cfg_after = load_config(tmp_path / "config.yaml", identity.device_id)

        assert cfg_after.folders == []
        assert cfg_after.gui.api_key == cfg_before.gui.api_key
        assert cfg_after.gui.user == "admin"

    def test_bad_certificate_aborts_before_config(self, tmp_path: Path) -> None:
        (tmp_path / "cert.pem").write_text("garbage")
        (tmp_path / "key.pem").write_text("garbage")
        with pytest.raises(GenerateError) as exc_info:
            generate(tmp_path, skip_port_probing=True)
        assert exc_info.value.stage == STAGE_CERTIFICATE
        assert str(exc_info.value).startswith("create certificate: ")
        assert not (tmp_path / "config.yaml").exists()
        assert (tmp_path / "key.pem").read_text() == "garbage"

    def test_malformed_config_is_not_overwritten(self, tmp_path: Path) -> None:
        (tmp_path / "config.yaml").write_text("gui: [unclosed")
        with pytest.raises(GenerateError) as exc_info:
            generate(tmp_path, skip_port_probing=True)
        assert exc_info.value.stage == STAGE_LOAD_CONFIG
        assert (tmp_path / "config.yaml").read_text() == "gui: [unclosed"

    def test_hashing_failure_is_not_persisted(self, tmp_path: Path) -> None:
        identity = generate(tmp_path, skip_port_probing=True)
        before = (tmp_path / "config.yaml").read_text()

        with patch("nodeseed.config.hash_password", side_effect=HashingError("out of memory")):
            with pytest.raises(GenerateError) as exc_info:
                generate(tmp_path, "admin", "abc123", skip_port_probing=True)

        assert exc_info.value.stage == STAGE_MODIFY_CONFIG
        assert isinstance(exc_info.value.cause, HashingError)
        assert (tmp_path / "config.yaml").read_text() == before
        assert load_config(tmp_path / "config.yaml", identity.device_id).gui.user == ""

    def test_save_failure_reports_stage(self, tmp_path: Path) -> None:
        with patch("nodeseed.services.config_actor.write_config", side_effect=OSError("disk full")):
            with pytest.raises(GenerateError) as exc_info:
                generate(tmp_path, skip_port_probing=True)
        assert exc_info.value.stage == STAGE_SAVE_CONFIG
        assert "disk full" in str(exc_info.value)

    def test_actor_is_stopped_afterwards(self, tmp_path: Path) -> None:
        import threading

        generate(tmp_path, skip_port_probing=True)
        assert not any(t.name == "config-actor" for t in threading.enumerate())
