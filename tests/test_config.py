import json

import pytest

from micropanel.config import (
    AppConfig,
    ModuleDependencies,
    data_file_for,
    default_menu_config,
    load_menu_config,
    parse_menu_config,
    resolve_config_path,
)
from micropanel.errors import ConfigError

SAMPLE = {
    "persistent_data": {"file_path": "/var/lib/panel/data.json"},
    "modules": [
        {"id": "ping", "title": "Ping Test", "enabled": True,
         "depends": {"default_ip": "10.0.0.1", "retries": 3}},
        {"id": "hidden", "title": "Hidden"},
        {"id": "net_menu", "title": "Network", "type": "menu", "enabled": True,
         "submenus": [{"id": "netinfo", "title": "Info"}, {"id": "broken"}]},
        {"title": "no id"},
    ],
    "options": {"invert_display": {"enabled": True, "title": "Invert"}},
}


def test_enabled_modules_become_main_items_in_order():
    deps = ModuleDependencies()
    cfg = parse_menu_config(SAMPLE, deps)
    assert [(e.module_id, e.title) for e in cfg.main_items] == [
        ("ping", "Ping Test"), ("net_menu", "Network"), ("invert_display", "Invert"),
    ]
    assert "hidden" in cfg.modules
    assert not cfg.modules["hidden"].enabled
    assert cfg.persistent_data_file == "/var/lib/panel/data.json"


def test_submenus_skip_incomplete_entries():
    cfg = parse_menu_config(SAMPLE, ModuleDependencies())
    assert cfg.modules["net_menu"].is_menu
    assert [e.module_id for e in cfg.submenus["net_menu"]] == ["netinfo"]


def test_string_dependencies_only():
    deps = ModuleDependencies()
    parse_menu_config(SAMPLE, deps)
    assert deps.get("ping", "default_ip") == "10.0.0.1"
    assert not deps.has("ping", "retries")
    assert deps.get("ping", "missing", "x") == "x"


def test_missing_modules_array_is_an_error():
    with pytest.raises(ConfigError):
        parse_menu_config({"options": {}}, ModuleDependencies())
    with pytest.raises(ConfigError):
        parse_menu_config([], ModuleDependencies())


def test_load_errors(tmp_path):
    with pytest.raises(ConfigError):
        load_menu_config(str(tmp_path / "nope.json"), ModuleDependencies())
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ConfigError):
        load_menu_config(str(bad), ModuleDependencies())


def test_load_from_file(tmp_path):
    path = tmp_path / "menu.json"
    path.write_text(json.dumps(SAMPLE))
    cfg = load_menu_config(str(path), ModuleDependencies())
    assert cfg.main_items[0].module_id == "ping"


def test_default_menu_has_builtin_entries():
    ids = [e.module_id for e in default_menu_config().main_items]
    assert "brightness" in ids
    assert "wifi" in ids


def test_dependency_check_is_soft(caplog):
    deps = ModuleDependencies()
    deps.add("netinfo", "script_path", "/nonexistent/netinfo.sh --json")
    deps.add("netinfo", "url", "https://example.com")
    assert deps.check("netinfo")
    assert "/nonexistent/netinfo.sh" in caplog.text


def test_data_file_for():
    assert data_file_for("/etc/panel/menu.json") == "/etc/panel/menu_data.json"
    assert data_file_for("/etc/panel/menu") == "/etc/panel/menu_data.json"
    assert data_file_for(None).endswith(".json")


def test_resolve_config_path_from_env(monkeypatch):
    monkeypatch.delenv("MICROPANEL_CONFIG", raising=False)
    assert resolve_config_path() is None
    monkeypatch.setenv("MICROPANEL_CONFIG", "/opt/panel/menu.json")
    assert resolve_config_path() == "/opt/panel/menu.json"


def test_i2c_mode_follows_device_path():
    assert AppConfig(serial_device="/dev/i2c-1").i2c_mode
    assert not AppConfig(serial_device="/dev/ttyACM0").i2c_mode
