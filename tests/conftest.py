from collections import namedtuple
from typing import List

import pytest

from micropanel.backends import DisplayBackend
from micropanel.config import ModuleDependencies, default_menu_config
from micropanel.display import Display
from micropanel.inputs import InputSource
from micropanel.screens import ModuleContext, ModuleFactory


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, dt: float) -> None:
        self.now += dt


# =====================================================
# DISPLAY
# =====================================================
class RecordingBackend(DisplayBackend):
    def __init__(self, path: str = "/dev/ttyACM0"):
        self.path = path
        self.calls = []
        self.opened = False
        self.disconnected = False
        self.flushes = 0

    def open(self) -> bool:
        self.opened = True
        return True

    def close(self) -> None:
        self.opened = False
        self.calls.append(("close",))

    def is_open(self) -> bool:
        return self.opened

    def clear(self) -> None:
        self.calls.append(("clear",))

    def draw_text(self, x, y, text) -> None:
        self.calls.append(("text", x, y, text))

    def set_cursor(self, x, y) -> None:
        self.calls.append(("cursor", x, y))

    def set_inverted(self, inverted) -> None:
        self.calls.append(("invert", inverted))

    def set_brightness(self, level) -> None:
        self.calls.append(("brightness", level))

    def draw_progress_bar(self, x, y, w, h, pct) -> None:
        self.calls.append(("bar", x, y, w, h, pct))

    def set_power(self, on) -> None:
        self.calls.append(("power", on))

    def flush_buffer(self) -> None:
        self.flushes += 1

    # helpers for assertions
    def texts(self) -> List[str]:
        return [c[3] for c in self.calls if c[0] == "text"]

    def text_at(self, y: int) -> List[str]:
        return [c[3] for c in self.calls if c[0] == "text" and c[2] == y]

    def since_clear(self) -> list:
        idx = max((i for i, c in enumerate(self.calls) if c[0] == "clear"), default=-1)
        return self.calls[idx + 1:]

    def reset(self) -> None:
        self.calls.clear()


class FakeLumaDevice:
    def __init__(self, fail: bool = False):
        self.commands = []
        self.data_writes = []
        self.contrast_level = None
        self.shown = True
        self.cleaned = False
        self.persist = False
        self.fail = fail

    def _check(self):
        if self.fail:
            raise OSError(121, "Remote I/O error")

    def command(self, *cmd):
        self._check()
        self.commands.append(cmd)

    def data(self, data):
        self._check()
        self.data_writes.append(list(data))

    def contrast(self, level):
        self._check()
        self.contrast_level = level

    def show(self):
        self.shown = True

    def hide(self):
        self.shown = False

    def cleanup(self):
        self.cleaned = True


class FakeSerialPort:
    def __init__(self, *args, **kwargs):
        self.args = args
        self.kwargs = kwargs
        self.writes: List[bytes] = []
        self.closed = False
        self.error = None

    def write(self, data):
        if self.error is not None:
            raise self.error
        self.writes.append(bytes(data))
        return len(data)

    def flush(self):
        pass

    def reset_input_buffer(self):
        pass

    def reset_output_buffer(self):
        pass

    def fileno(self):
        return -1

    def close(self):
        self.closed = True


# =====================================================
# INPUT
# =====================================================
FakeEvent = namedtuple("FakeEvent", "type code value")


class FakeInputDevice:
    def __init__(self, path="/dev/input/event0", name="", events=None, capabilities=None, fd=10):
        self.path = path
        self.name = name
        self.events = list(events or [])
        self._caps = capabilities or {}
        self.fd = fd
        self.grabbed = False
        self.closed = False
        self.read_error = None

    def read_one(self):
        if self.read_error is not None:
            raise self.read_error
        return self.events.pop(0) if self.events else None

    def capabilities(self):
        return self._caps

    def grab(self):
        self.grabbed = True

    def ungrab(self):
        self.grabbed = False

    def close(self):
        self.closed = True


class ScriptedInput(InputSource):
    """Delivers a queued list of normalized events on the next drain."""

    def __init__(self, events=None):
        self.queue = list(events or [])
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def wait(self, timeout_ms: int) -> int:
        return len(self.queue)

    def drain(self, handler) -> None:
        while self.queue:
            handler(self.queue.pop(0))


# =====================================================
# MODULE CONTEXT
# =====================================================
class MemoryStorage:
    def __init__(self):
        self.data = {}

    def get(self, module_id, key, default=None):
        return self.data.get(module_id, {}).get(key, default)

    def set(self, module_id, key, value):
        self.data.setdefault(module_id, {})[key] = value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def display(backend, clock):
    return Display(backend, clock=clock)


@pytest.fixture
def ctx(display):
    context = ModuleContext(display, ModuleDependencies(), MemoryStorage(), default_menu_config())
    ModuleFactory(context)
    return context
