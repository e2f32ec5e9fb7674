import stat

from micropanel.engine import Action
from micropanel.screens.brightness import Brightness, stored_brightness
from micropanel.screens.demo import Counter, Hello, InternetTest, SystemStats, format_uptime
from micropanel.screens.netinfo import InterfaceInfo, NetInfo
from micropanel.screens.netsettings import NetSettings, View, parse_settings
from micropanel.screens.wifi import WiFi

from conftest import MemoryStorage


def _script(tmp_path, name, body):
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


# =====================================================
# BRIGHTNESS
# =====================================================
def test_brightness_steps_and_saves(ctx, backend):
    screen = Brightness(ctx)
    screen.enter()
    screen.on_rotate(1)
    assert ("brightness", 144) in backend.calls
    assert "Level: 144".ljust(16) in backend.texts()
    assert screen.on_button() is Action.POP
    assert stored_brightness(ctx.storage) == 144


def test_brightness_clamps(ctx, display, backend):
    display.set_brightness(250)
    screen = Brightness(ctx)
    screen.enter()
    screen.on_rotate(1)
    assert display.brightness == 255
    backend.reset()
    screen.on_rotate(1)
    assert backend.calls == []


def test_stored_brightness_clamps():
    store = MemoryStorage()
    store.set("brightness", "level", 900)
    assert stored_brightness(store) == 255
    assert stored_brightness(MemoryStorage()) == 128


# =====================================================
# NET INFO
# =====================================================
IFACES = [
    InterfaceInfo("eth0", True, "10.0.0.5", "AABBCCDDEEFF", "255.255.255.0"),
    InterfaceInfo("wlan0"),
]


def test_netinfo_list_and_details(ctx, backend, clock):
    screen = NetInfo(ctx, clock=clock, lister=lambda: list(IFACES))
    screen.enter()
    assert ">eth0*".ljust(15) in backend.texts()
    assert " wlan0".ljust(15) in backend.texts()
    assert " Back".ljust(15) in backend.texts()

    screen.on_button()
    assert "Link: Up" in backend.texts()
    assert "10.0.0.5" in backend.texts()
    assert "AABBCCDDEEFF" in backend.texts()
    screen.on_button()
    assert screen.details is None

    screen.on_rotate(1)
    screen.on_rotate(1)
    assert screen.on_button() is Action.POP


def test_netinfo_refresh_drops_vanished_interface(ctx, clock):
    current = list(IFACES)
    screen = NetInfo(ctx, clock=clock, lister=lambda: list(current))
    screen.enter()
    screen.on_button()
    assert screen.details == 0

    current.pop(0)
    clock.advance(5)
    screen.update()
    assert screen.details is None
    assert [i.name for i in screen.interfaces] == ["wlan0"]


# =====================================================
# NET SETTINGS
# =====================================================
NETSET_SCRIPT = """
case "$*" in
  *--mode=static*) echo "$*" > {log}; echo "RESULT: OK";;
  *--mode=dhcp*) echo "RESULT: ERROR: dhcp failed";;
  *) printf 'mode=static\\nip=10.0.0.5\\ngateway=10.0.0.1\\nnetmask=255.255.255.0\\nRESULT: OK\\n';;
esac
"""


def _netsettings(ctx, tmp_path):
    log = tmp_path / "applied.txt"
    script = _script(tmp_path, "netset.sh", NETSET_SCRIPT.format(log=log))
    ctx.deps.add("netsettings", "action_script", script)
    ctx.deps.add("netsettings", "iface_name", "eth1")
    screen = NetSettings(ctx)
    screen.enter()
    return screen, log


def test_parse_settings():
    out = parse_settings("mode=dhcp\nip=1.2.3.4\nbogus=1\nRESULT: OK\n")
    assert out == {"mode": "dhcp", "ip": "1.2.3.4", "result": "OK"}


def test_netsettings_loads_and_applies_static(ctx, backend, tmp_path):
    screen, log = _netsettings(ctx, tmp_path)
    assert screen.mode == "static"
    assert screen.editors["Gateway"].normalized() == "10.0.0.1"
    assert ">Mode: Static".ljust(16) in backend.texts()

    for _ in range(4):
        screen.on_rotate(1)
    screen.on_button()
    assert screen.view is View.RESULT
    assert screen.result_text == "RESULT:OK"
    applied = log.read_text()
    assert "--os=debian --interface=eth1 --mode=static" in applied
    assert "--ip=10.0.0.5 --gateway=10.0.0.1 --netmask=255.255.255.0" in applied

    screen.on_button()
    assert screen.view is View.MAIN


def test_netsettings_switch_to_dhcp_reports_error(ctx, tmp_path):
    screen, _ = _netsettings(ctx, tmp_path)
    screen.on_button()
    assert screen.view is View.MODE
    assert screen.sub.selected == 0
    screen.on_rotate(1)
    screen.on_button()
    assert screen.mode == "dhcp"
    assert screen.view is View.MAIN

    for _ in range(4):
        screen.on_rotate(1)
    screen.on_button()
    assert screen.result_text == "RESULT:ERROR: dhcp failed"


def test_netsettings_address_editor(ctx, tmp_path):
    screen, _ = _netsettings(ctx, tmp_path)
    screen.on_rotate(1)
    screen.on_button()
    assert screen.view is View.ADDR
    assert screen.field == "IP"
    # walk the cursor past the last digit onto Back
    for _ in range(12):
        screen.on_rotate(1)
    assert screen.sub.selected == 1
    screen.on_button()
    assert screen.view is View.MAIN


def test_netsettings_defaults_without_script(ctx):
    ctx.deps.add("netsettings", "action_script", "/nonexistent/netset.sh")
    screen = NetSettings(ctx)
    screen.enter()
    assert screen.mode == "dhcp"
    screen.on_rotate(-1)
    assert screen.on_button() is Action.POP


# =====================================================
# WIFI
# =====================================================
def test_wifi_script_toggles_radio(ctx, backend, tmp_path):
    state = tmp_path / "radio"
    state.write_text("off\n")
    body = f'case "$1" in status) cat {state};; on) echo on > {state};; off) echo off > {state};; esac'
    ctx.deps.add("wifi", "wifi_script", _script(tmp_path, "wifi.sh", body))
    screen = WiFi(ctx)
    screen.enter()
    assert not screen.enabled
    assert " [Turn Off]".ljust(16) in backend.texts()

    screen.on_button()
    assert screen.enabled
    assert state.read_text().strip() == "on"
    assert ">[Turn On]".ljust(16) in backend.texts()


def test_wifi_without_script_is_session_only(ctx):
    screen = WiFi(ctx)
    screen.enter()
    screen.on_button()
    assert screen.enabled
    screen.on_rotate(1)
    screen.on_rotate(1)
    assert screen.on_button() is Action.POP


# =====================================================
# DEMO SCREENS
# =====================================================
def test_hello_pops_after_display_time(ctx, clock):
    screen = Hello(ctx, clock=clock)
    screen.enter()
    assert screen.update() is Action.CONTINUE
    clock.advance(2)
    assert screen.update() is Action.POP


def test_counter_counts_visits(ctx, backend, clock):
    screen = Counter(ctx, clock=clock)
    start = Counter.count
    screen.enter()
    screen.enter()
    assert Counter.count == start + 2
    assert str(start + 2) in backend.texts()


def test_format_uptime():
    assert format_uptime(90061) == "1d 01:01"


def test_system_stats_draws(ctx, backend):
    screen = SystemStats(ctx)
    screen.enter()
    assert any(t.startswith("CPU : ") for t in backend.texts())
    assert any(t.startswith("Mem : ") for t in backend.texts())
    assert screen.on_button() is Action.POP


def test_internet_test_reports_failure_to_start(ctx, backend):
    screen = InternetTest(ctx)
    screen.proc.start = lambda cmd: False
    screen.enter()
    assert screen.result is False
    assert "No Internet" in backend.texts()
