"""Tests for micdrop.preferences: persistence, sanitizing and legacy migration."""

import json
import stat
import threading

import pytest

from micdrop import preferences as prefs_module
from micdrop.config import BridgePolicy, Config, MuteMode
from micdrop.preferences import PREFS_VERSION, Preferences


@pytest.fixture(autouse=True)
def prefs_paths(tmp_path, monkeypatch):
    prefs_dir = tmp_path / "MicDrop"
    monkeypatch.setattr(prefs_module, "PREFS_DIR", prefs_dir)
    monkeypatch.setattr(prefs_module, "PREFS_FILE", prefs_dir / "preferences.json")
    monkeypatch.setattr(prefs_module, "LEGACY_SETTINGS_FILE", tmp_path / "legacy" / "settings.json")
    return prefs_dir


def _write_legacy(data):
    path = prefs_module.LEGACY_SETTINGS_FILE
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps(data))


class TestSaveLoad:
    def test_first_load_writes_defaults(self):
        prefs = Preferences.load()
        assert prefs == Preferences()
        assert prefs_module.PREFS_FILE.exists()

    def test_round_trip(self):
        prefs = Preferences(port=9001, mute_mode="volume-zero", bridge_mode=True, hotkey="none")
        prefs.save()
        loaded = Preferences.load()
        assert loaded.port == 9001
        assert loaded.mute_mode == "volume-zero"
        assert loaded.bridge_mode is True
        assert loaded.hotkey == "none"

    def test_file_permissions(self, prefs_paths):
        Preferences().save()
        assert stat.S_IMODE(prefs_module.PREFS_FILE.stat().st_mode) == 0o600
        assert stat.S_IMODE(prefs_paths.stat().st_mode) == 0o700

    def test_version_written_and_private_fields_skipped(self):
        Preferences().save()
        data = json.loads(prefs_module.PREFS_FILE.read_text())
        assert data["_prefs_version"] == PREFS_VERSION
        assert "_lock" not in data

    def test_unknown_keys_ignored(self, prefs_paths):
        prefs_paths.mkdir(parents=True)
        prefs_module.PREFS_FILE.write_text(json.dumps({"port": 9100, "whisper_model": "large", "migrated_legacy": True}))
        assert Preferences.load().port == 9100

    def test_corrupt_file_gives_defaults(self, prefs_paths):
        prefs_paths.mkdir(parents=True)
        prefs_module.PREFS_FILE.write_text("{broken")
        assert Preferences.load() == Preferences()

    def test_invalid_values_sanitized(self, prefs_paths):
        prefs_paths.mkdir(parents=True)
        prefs_module.PREFS_FILE.write_text(json.dumps({
            "port": 99999,
            "mute_mode": "shout",
            "bridge_policy": "queue",
            "volume_step": 3,
            "request_count": -4,
            "migrated_legacy": True,
        }))
        prefs = Preferences.load()
        defaults = Preferences()
        assert prefs.port == defaults.port
        assert prefs.mute_mode == defaults.mute_mode
        assert prefs.bridge_policy == defaults.bridge_policy
        assert prefs.volume_step == defaults.volume_step
        assert prefs.request_count == 0


class TestLegacyMigration:
    def test_imports_legacy_settings_once(self):
        _write_legacy({"auto_start": True, "notifications": False, "remote_access": False, "request_count": 12})
        prefs = Preferences.load()
        assert prefs.auto_start is True
        assert prefs.notifications is False
        assert prefs.allow_remote is False
        assert prefs.request_count == 12
        assert prefs.migrated_legacy is True

        prefs.request_count = 20
        prefs.save()
        assert Preferences.load().request_count == 20

    def test_ignores_wrong_types(self):
        _write_legacy({"auto_start": "yes", "request_count": "many"})
        prefs = Preferences.load()
        assert prefs.auto_start is False
        assert prefs.request_count == 0

    def test_no_legacy_file(self):
        assert Preferences().migrate_legacy() is False

    def test_unreadable_legacy_file(self):
        path = prefs_module.LEGACY_SETTINGS_FILE
        path.parent.mkdir(parents=True)
        path.write_text("not json")
        prefs = Preferences()
        assert prefs.migrate_legacy() is False
        assert prefs.migrated_legacy is False


class TestRequestCount:
    def test_increment_persists(self):
        prefs = Preferences.load()
        assert prefs.increment_request_count() == 1
        assert prefs.increment_request_count() == 2
        assert Preferences.load().request_count == 2

    def test_concurrent_increments(self):
        prefs = Preferences.load()
        threads = [threading.Thread(target=prefs.increment_request_count) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert prefs.request_count == 20
        assert json.loads(prefs_module.PREFS_FILE.read_text())["request_count"] == 20

    def test_saves_while_holding_lock(self, monkeypatch):
        prefs = Preferences.load()
        held = []
        original = Preferences._write

        def checking_write(self):
            held.append(self._lock.locked())
            original(self)

        monkeypatch.setattr(Preferences, "_write", checking_write)
        prefs.increment_request_count()
        prefs.save()
        assert held == [True, True]

    def test_no_temp_file_left_behind(self, prefs_paths):
        prefs = Preferences.load()
        prefs.increment_request_count()
        assert [p.name for p in prefs_paths.iterdir()] == ["preferences.json"]


class TestApplyTo:
    def test_overrides_config(self):
        prefs = Preferences(
            port=9200, allow_remote=False, bridge_mode=True, bridge_policy="reject",
            mute_mode="device-switch", null_device_uid="null-uid", volume_step=0.2,
            tones=False, notifications=False, hotkey="<cmd>+<shift>+m",
        )
        config = Config()
        prefs.apply_to(config)
        assert config.server.port == 9200
        assert config.server.host == "127.0.0.1"
        assert config.bridge.enabled is True
        assert config.bridge.policy == BridgePolicy.REJECT
        assert config.audio.mute_mode == MuteMode.DEVICE_SWITCH
        assert config.audio.null_device_uid == "null-uid"
        assert config.audio.volume_step == 0.2
        assert config.tones.enabled is False
        assert config.notifications is False
        assert config.hotkey == "<cmd>+<shift>+m"

    def test_hotkey_label(self):
        assert Preferences().hotkey_label == "Option+M"
        assert Preferences(hotkey="<f5>").hotkey_label == "<f5>"


class TestToConfig:
    """Saved preferences first, then MICDROP_* env overrides on top."""

    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        for name in ("MICDROP_PORT", "MICDROP_BRIDGE", "MICDROP_MUTE_MODE", "MICDROP_VOLUME_STEP"):
            monkeypatch.delenv(name, raising=False)

    def test_env_overrides_saved_preferences(self, monkeypatch):
        Preferences(port=9100, bridge_mode=False, mute_mode="volume-zero").save()
        monkeypatch.setenv("MICDROP_PORT", "9999")
        monkeypatch.setenv("MICDROP_BRIDGE", "1")
        config = Preferences.load().to_config()
        assert config.server.port == 9999
        assert config.bridge.enabled is True
        assert config.audio.mute_mode == MuteMode.VOLUME_ZERO

    def test_env_overrides_first_run_defaults(self, monkeypatch):
        monkeypatch.setenv("MICDROP_PORT", "9999")
        monkeypatch.setenv("MICDROP_VOLUME_STEP", "0.05")
        config = Preferences.load().to_config()
        assert config.server.port == 9999
        assert config.audio.volume_step == 0.05

    def test_invalid_env_keeps_saved_value(self, monkeypatch):
        Preferences(port=9100).save()
        monkeypatch.setenv("MICDROP_PORT", "not-a-port")
        assert Preferences.load().to_config().server.port == 9100

    def test_without_env_uses_preferences(self):
        Preferences(port=9100, tones=False).save()
        config = Preferences.load().to_config()
        assert config.server.port == 9100
        assert config.tones.enabled is False
