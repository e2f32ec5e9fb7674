import threading

import pytest

from micropanel.config import AppConfig, default_menu_config
from micropanel.events import Button, Rotate
from micropanel.supervisor import Supervisor

from conftest import FakeClock, RecordingBackend, ScriptedInput


class FakeDetector:
    def __init__(self, pair=("/dev/input/event3", "/dev/ttyACM1"), connects=True):
        self.removed = threading.Event()
        self.pair = pair
        self.connects = connects
        self.waits = 0
        self.monitor_starts = 0
        self.monitor_stops = 0

    def detect(self):
        return self.pair

    def detect_with_fallback(self, fallback_input, fallback_serial):
        return self.pair

    def wait_for_connect(self, is_running):
        self.waits += 1
        return self.connects

    def start_removal_monitor(self):
        self.removed.clear()
        self.monitor_starts += 1

    def stop_removal_monitor(self, timeout=1.0):
        self.monitor_stops += 1


class Harness:
    def __init__(self, tmp_path, detector=None, **cfg):
        cfg.setdefault("persistent_data_file", str(tmp_path / "data.json"))
        self.config = AppConfig(**cfg)
        self.detector = detector or FakeDetector()
        self.backends = []
        self.inputs = []
        self.clock = FakeClock()
        self.on_sleep = None
        self.sup = Supervisor(self.config, detector=self.detector,
                              backend_factory=self._backend, input_factory=self._input,
                              clock=self.clock, sleep=self._sleep)

    def _backend(self, path):
        self.backends.append(RecordingBackend(path))
        return self.backends[-1]

    def _input(self, path, gpio_mode):
        self.inputs.append(ScriptedInput())
        return self.inputs[-1]

    def _sleep(self, seconds):
        self.clock.advance(seconds)
        if self.on_sleep is not None:
            self.on_sleep(self)


def _has_main_menu(backend):
    return "MAIN MENU" in backend.texts()


def test_initialize_shows_startup_text_then_main_menu(tmp_path):
    h = Harness(tmp_path)
    assert h.sup.initialize()
    backend = h.backends[0]
    assert backend.path == "/dev/ttyACM1"
    assert ("brightness", 128) in backend.calls
    texts = backend.texts()
    assert texts.index("Menu System") < texts.index("MAIN MENU")
    assert "Initializing..." in texts
    assert h.detector.monitor_starts == 1
    assert h.sup.engine.depth == 1


def test_stored_brightness_applied_at_startup(tmp_path):
    (tmp_path / "data.json").write_text('{"brightness": {"level": 40}}')
    h = Harness(tmp_path)
    h.sup.initialize()
    assert ("brightness", 40) in h.backends[0].calls


def test_bad_config_falls_back_to_default_menu(tmp_path):
    bad = tmp_path / "menu.json"
    bad.write_text("{oops")
    h = Harness(tmp_path, config_file=str(bad))
    assert h.sup.menu_config.main_items == default_menu_config().main_items


def test_reconnect_after_removal_redraws_main_menu(tmp_path):
    h = Harness(tmp_path)
    h.sup.initialize()
    h.sup.route_event(Button())  # open the first entry
    assert h.sup.engine.depth == 2

    h.detector.removed.set()
    assert h.sup.needs_reconnect()
    assert h.sup.reconnect()

    old, new = h.backends
    assert ("close",) in old.calls
    assert h.inputs[0].closed
    assert new.calls[0] == ("brightness", 128)
    assert _has_main_menu(new)
    assert h.sup.engine.depth == 1
    assert h.detector.monitor_starts == 2
    assert not h.sup.needs_reconnect()


def test_lost_input_device_triggers_reconnect(tmp_path):
    h = Harness(tmp_path)
    h.sup.initialize()
    h.inputs[0].disconnected = True
    assert h.sup.needs_reconnect()


def test_periodic_probe_catches_silent_disconnect(tmp_path, monkeypatch):
    h = Harness(tmp_path)
    h.sup.initialize()
    assert not h.sup.needs_reconnect()
    monkeypatch.setattr(h.inputs[0], "check_connection", lambda: False)
    # probes are rate limited
    assert not h.sup.needs_reconnect()
    h.clock.advance(6)
    assert h.sup.needs_reconnect()


def test_inverted_state_survives_reconnect(tmp_path):
    h = Harness(tmp_path)
    h.sup.initialize()
    h.sup.display.set_inverted(True)
    h.detector.removed.set()
    h.sup.reconnect()
    assert ("invert", True) in h.backends[1].calls


def test_wake_event_is_not_delivered(tmp_path):
    h = Harness(tmp_path, power_save=True)
    h.sup.initialize()
    root = h.sup.engine.active
    h.sup.display.set_power(False)

    h.sup.route_event(Rotate(1))
    assert h.sup.display.powered
    assert root.window.selected == 0
    h.sup.route_event(Rotate(1))
    assert root.window.selected == 1


def test_power_save_turns_panel_off_after_idle(tmp_path):
    h = Harness(tmp_path, power_save=True)
    h.sup.initialize()
    h.clock.advance(11)
    h.sup.tick(h.clock())
    assert ("power", False) in h.backends[0].calls


def test_serial_buffer_flushed_on_interval(tmp_path):
    h = Harness(tmp_path)
    h.sup.initialize()
    backend = h.backends[0]
    before = backend.flushes
    last = h.sup.tick(h.clock())
    assert backend.flushes == before
    h.clock.advance(0.06)
    assert h.sup.tick(last) == h.clock()
    assert backend.flushes == before + 1


def test_i2c_mode_has_no_periodic_flush_or_monitor(tmp_path):
    h = Harness(tmp_path, detector=FakeDetector(pair=("/dev/input/event0", "/dev/i2c-1")))
    h.sup.initialize()
    assert h.sup.i2c_mode
    assert h.detector.monitor_starts == 0
    before = h.backends[0].flushes
    h.clock.advance(1)
    h.sup.tick(0)
    assert h.backends[0].flushes == before
    h.detector.removed.set()
    assert not h.sup.needs_reconnect()


# =====================================================
# MAIN LOOP
# =====================================================
def test_run_exits_cleanly_when_stopped(tmp_path):
    h = Harness(tmp_path)
    h.on_sleep = lambda hh: hh.sup.stop()
    assert h.sup.run() == 0
    backend = h.backends[0]
    assert backend.text_at(0)[-1] == "Rebooting....."
    assert ("close",) in backend.calls
    assert not (tmp_path / "data.json").exists()


def test_run_delivers_input_to_active_module(tmp_path):
    h = Harness(tmp_path)
    seen = []

    def record_and_stop(hh):
        seen.append(hh.sup.engine.active.window.selected)
        hh.sup.stop()

    steps = iter([lambda hh: hh.inputs[0].queue.append(Rotate(2)), record_and_stop])
    h.on_sleep = lambda hh: next(steps)(hh)
    assert h.sup.run() == 0
    assert seen == [1]


def test_disconnect_without_auto_detect_exits_1(tmp_path):
    h = Harness(tmp_path, auto_detect=False, serial_device="/dev/ttyACM0")

    def unplug(hh):
        hh.backends[0].disconnected = True

    h.on_sleep = unplug
    assert h.sup.run() == 1
    assert h.backends[0].path == "/dev/ttyACM0"


def test_reconnect_timeout_exits_1(tmp_path):
    h = Harness(tmp_path)

    def unplug(hh):
        hh.detector.connects = False
        hh.detector.removed.set()

    h.on_sleep = unplug
    assert h.sup.run() == 1
    assert h.detector.waits == 1


def test_device_never_found_exits_1(tmp_path):
    class Missing(FakeDetector):
        def detect_with_fallback(self, fallback_input, fallback_serial):
            return None

    h = Harness(tmp_path, detector=Missing(connects=False))
    assert h.sup.run() == 1
    assert h.backends == []


@pytest.mark.parametrize("auto_detect", [True, False])
def test_stop_before_run_skips_loop(tmp_path, auto_detect):
    running = threading.Event()
    h = Harness(tmp_path, auto_detect=auto_detect)
    h.sup.running = running
    assert h.sup.run() == 0
