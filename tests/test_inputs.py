import errno

from evdev import ecodes

from micropanel.events import Button, Rotate
from micropanel.inputs import CompositeInput, HidEncoder, MultiGpio, open_input_source

from conftest import FakeClock, FakeEvent, FakeInputDevice


def _encoder(events, clock=None):
    dev = FakeInputDevice(events=events)
    enc = HidEncoder("/dev/input/event0", open_device=lambda path: dev, clock=clock or FakeClock())
    assert enc.open()
    return enc, dev


def rel(code, value):
    return FakeEvent(ecodes.EV_REL, code, value)


def key(code, value):
    return FakeEvent(ecodes.EV_KEY, code, value)


SYN = FakeEvent(ecodes.EV_SYN, 0, 0)


def test_open_grabs_device():
    enc, dev = _encoder([])
    assert dev.grabbed
    enc.close()
    assert dev.closed and not dev.grabbed


def test_paired_rel_events_give_one_rotation():
    clock = FakeClock()
    enc, dev = _encoder([rel(ecodes.REL_X, 1), SYN], clock)
    got = []
    enc.drain(got.append)
    assert got == []
    assert enc.pending

    clock.advance(0.005)
    dev.events = [rel(ecodes.REL_X, 1), SYN]
    enc.drain(got.append)
    assert got == [Rotate(2)]
    assert not enc.pending


def test_half_pair_is_flushed_after_threshold():
    clock = FakeClock()
    enc, dev = _encoder([rel(ecodes.REL_X, -1)], clock)
    got = []
    enc.drain(got.append)
    assert got == []

    clock.advance(0.050)
    enc.drain(got.append)
    assert got == [Rotate(-1)]


def test_expired_half_is_delivered_before_late_event():
    clock = FakeClock()
    enc, dev = _encoder([rel(ecodes.REL_X, 1)], clock)
    got = []
    enc.drain(got.append)
    assert got == []

    # the next detent arrives well after the 100 ms gesture gap
    clock.advance(0.150)
    dev.events = [rel(ecodes.REL_X, 1)]
    enc.drain(got.append)
    assert got == [Rotate(1)]

    # the late event opened a new gesture of its own
    clock.advance(0.005)
    dev.events = [rel(ecodes.REL_X, 1)]
    enc.drain(got.append)
    assert got == [Rotate(1), Rotate(2)]


def test_half_pair_is_not_merged_after_threshold():
    clock = FakeClock()
    enc, dev = _encoder([rel(ecodes.REL_X, -1)], clock)
    got = []
    enc.drain(got.append)
    clock.advance(0.060)
    dev.events = [rel(ecodes.REL_X, 1), rel(ecodes.REL_X, 1)]
    enc.drain(got.append)
    assert got == [Rotate(-1), Rotate(2)]


def test_new_gesture_resets_accumulator():
    clock = FakeClock()
    enc, _ = _encoder([], clock)
    enc.total_rel_x = 3
    enc.paired_count = 1
    enc.last_event = clock()
    clock.advance(0.120)
    enc._accumulate(ecodes.REL_X, -1)
    assert (enc.total_rel_x, enc.paired_count) == (-1, 1)
    enc, _ = _encoder([rel(ecodes.REL_Y, 1), rel(ecodes.REL_Y, 1)])
    got = []
    enc.drain(got.append)
    assert got == [Rotate(-2)]


def test_keyboard_down_press_and_release():
    enc, _ = _encoder([key(ecodes.KEY_DOWN, 1), SYN, key(ecodes.KEY_DOWN, 0), SYN])
    got = []
    enc.drain(got.append)
    assert got == [Rotate(5)]


def test_keyboard_and_mouse_buttons():
    enc, _ = _encoder([
        key(ecodes.KEY_UP, 1),
        key(ecodes.KEY_ENTER, 1),
        key(ecodes.BTN_LEFT, 1),
        key(ecodes.BTN_LEFT, 0),
        key(ecodes.KEY_A, 1),
    ])
    got = []
    enc.drain(got.append)
    assert got == [Rotate(-5), Button(), Button()]


def test_drain_caps_events_per_iteration():
    enc, dev = _encoder([key(ecodes.KEY_ENTER, 1)] * 8)
    got = []
    enc.drain(got.append)
    assert len(got) == 5
    assert dev.events == []


def test_lost_device_that_cannot_reopen_is_disconnected():
    dev = FakeInputDevice()
    opens = []

    def open_device(path):
        opens.append(path)
        if len(opens) > 1:
            raise OSError(errno.ENOENT, "gone")
        return dev

    enc = HidEncoder("/dev/input/event3", open_device=open_device, clock=FakeClock())
    assert enc.open()
    dev.read_error = OSError(errno.ENODEV, "No such device")
    enc.drain(lambda ev: None)
    assert enc.disconnected
    assert len(opens) == 2


def _gpio_devices():
    return {
        "/dev/input/event1": FakeInputDevice(
            "/dev/input/event1", "button@17", capabilities={ecodes.EV_KEY: [ecodes.KEY_ENTER]}, fd=11),
        "/dev/input/event2": FakeInputDevice("/dev/input/event2", "rotary@5", fd=12),
        "/dev/input/event3": FakeInputDevice("/dev/input/event3", "USB Keyboard", fd=13),
    }


def test_multi_gpio_picks_button_and_rotary_nodes():
    devices = _gpio_devices()
    gpio = MultiGpio(open_device=devices.__getitem__, paths=list(devices))
    assert gpio.open()
    assert [gd.kind for gd in gpio.devices] == ["button", "rotary"]
    assert devices["/dev/input/event3"].closed
    assert gpio.fds() == [11, 12]

    devices["/dev/input/event1"].events = [key(ecodes.KEY_ENTER, 1), key(ecodes.KEY_ENTER, 0)]
    devices["/dev/input/event2"].events = [rel(ecodes.REL_X, -1)]
    got = []
    gpio.drain(got.append)
    assert got == [Button(), Rotate(-5)]


def test_multi_gpio_closes_failing_node():
    devices = _gpio_devices()
    gpio = MultiGpio(open_device=devices.__getitem__, paths=list(devices))
    gpio.open()
    devices["/dev/input/event1"].read_error = OSError(errno.ENODEV, "gone")
    gpio.drain(lambda ev: None)
    assert not gpio.devices[0].is_open
    assert not gpio.disconnected
    devices["/dev/input/event2"].read_error = OSError(errno.ENODEV, "gone")
    gpio.drain(lambda ev: None)
    assert gpio.disconnected


def test_composite_drains_in_order():
    a = FakeInputDevice(events=[key(ecodes.KEY_ENTER, 1)], fd=1)
    b = FakeInputDevice(events=[key(ecodes.KEY_RIGHT, 1)], fd=2)
    first = HidEncoder("/a", open_device=lambda p: a, clock=FakeClock())
    second = HidEncoder("/b", open_device=lambda p: b, clock=FakeClock())
    combo = CompositeInput([first, second])
    assert combo.open()
    got = []
    combo.drain(got.append)
    assert got == [Button(), Rotate(5)]
    assert combo.fds() == [1, 2]


def test_open_input_source_failure_returns_none():
    def open_device(path):
        raise OSError(errno.ENOENT, "missing")

    assert open_input_source("/dev/input/event9", False, open_device=open_device) is None
