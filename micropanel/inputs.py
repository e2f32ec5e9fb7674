import os
import glob
import time
import errno
import logging
import selectors
from dataclasses import dataclass
from typing import Callable, List, Optional

from evdev import InputDevice, ecodes

from .config import (
    DEFAULT_INPUT_DEVICE,
    ENCODER_RESET_GAP,
    EVENT_PROCESS_THRESHOLD,
    GPIO_BUTTON_PREFIX,
    GPIO_ROTARY_PREFIX,
    KEY_ROTATE_STEPS,
    MAX_EVENTS_PER_ITERATION,
)
from .events import Button, InputEvent, Rotate

logger = logging.getLogger(__name__)

Handler = Callable[[InputEvent], None]

_GONE_ERRNOS = (errno.EIO, errno.ENODEV, errno.ENXIO)

# Key code -> normalized event (key-down only)
_KEY_EVENTS = {
    ecodes.KEY_LEFT: Rotate(-KEY_ROTATE_STEPS),
    ecodes.KEY_UP: Rotate(-KEY_ROTATE_STEPS),
    ecodes.KEY_RIGHT: Rotate(KEY_ROTATE_STEPS),
    ecodes.KEY_DOWN: Rotate(KEY_ROTATE_STEPS),
    ecodes.KEY_ENTER: Button(),
}

# Probe order for gpio-keys devices
_GPIO_KEY_PROBE = (ecodes.KEY_LEFT, ecodes.KEY_RIGHT, ecodes.KEY_UP, ecodes.KEY_DOWN, ecodes.KEY_ENTER)


def _grab(dev, path: str) -> None:
    try:
        dev.grab()
    except OSError as e:
        logger.warning(f"Could not grab {path} exclusively: {e}")


def _release(dev) -> None:
    try:
        dev.ungrab()
    except OSError:
        pass
    try:
        dev.close()
    except OSError:
        pass


# =====================================================
# BASE
# =====================================================
class InputSource:
    """
    A readable set of evdev nodes producing normalized Rotate/Button events.

    wait() blocks up to timeout_ms for readable data; drain() reads what is
    available and calls handler(event) in read order.
    """

    disconnected = False

    def open(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def fds(self) -> List[int]:
        return []

    @property
    def pending(self) -> bool:
        return False

    def drain(self, handler: Handler) -> None:
        raise NotImplementedError

    def check_connection(self) -> bool:
        return not self.disconnected

    def wait(self, timeout_ms: int) -> int:
        if self.pending:
            timeout_ms = min(timeout_ms, int(EVENT_PROCESS_THRESHOLD * 1000))
        fds = self.fds()
        if not fds:
            time.sleep(timeout_ms / 1000.0)
            return 0
        sel = selectors.DefaultSelector()
        try:
            for fd in fds:
                sel.register(fd, selectors.EVENT_READ)
            return len(sel.select(timeout=timeout_ms / 1000.0))
        except (OSError, ValueError) as e:
            logger.debug(f"select on input failed: {e}")
            return 0
        finally:
            sel.close()


# =====================================================
# USB-HID ENCODER / KEYBOARD
# =====================================================
class HidEncoder(InputSource):
    """
    Rotary encoder exposed as a relative pointer (REL_X/REL_Y + BTN_LEFT),
    or a plain keyboard.

    One detent arrives as two REL events a few ms apart. They are summed
    and delivered as a single Rotate once the pair is complete, or once
    EVENT_PROCESS_THRESHOLD has passed without the second half.
    """

    def __init__(self, path: str, open_device=InputDevice, clock=time.monotonic):
        self.path = path
        self._open_device = open_device
        self._clock = clock
        self.dev = None
        self.disconnected = False
        self.total_rel_x = 0
        self.total_rel_y = 0
        self.paired_count = 0
        self.last_event = 0.0
        self._pending = False

    def open(self) -> bool:
        try:
            self.dev = self._open_device(self.path)
        except OSError as e:
            logger.error(f"Failed to open input device {self.path}: {e}")
            self.dev = None
            return False
        _grab(self.dev, self.path)
        self.disconnected = False
        logger.info(f"Input device opened: {self.path}")
        return True

    def close(self) -> None:
        if self.dev is not None:
            _release(self.dev)
            self.dev = None

    def fds(self) -> List[int]:
        if self.dev is None:
            return []
        return [self.dev.fd]

    @property
    def pending(self) -> bool:
        return self._pending

    def check_connection(self) -> bool:
        return self.dev is not None and not self.disconnected and os.path.exists(self.path)

    def _reset_accumulator(self) -> None:
        self.total_rel_x = 0
        self.total_rel_y = 0
        self.paired_count = 0
        self._pending = False

    def _reopen(self) -> bool:
        self.close()
        if self.open():
            logger.info(f"Reopened input device {self.path}")
            return True
        self.disconnected = True
        return False

    def _accumulate(self, code: int, value: int) -> None:
        now = self._clock()
        if self.last_event and now - self.last_event > ENCODER_RESET_GAP:
            self._reset_accumulator()
        self.last_event = now
        if code == ecodes.REL_X:
            self.total_rel_x += value
        else:
            self.total_rel_y += value
        self.paired_count += 1
        self._pending = True

    def _flush_rotation(self, handler: Handler) -> None:
        if not self._pending:
            return
        expired = self._clock() - self.last_event > EVENT_PROCESS_THRESHOLD
        if self.paired_count < 2 and not expired:
            return
        # REL_Y is negative for "up"
        steps = self.total_rel_x - self.total_rel_y
        self._reset_accumulator()
        if steps:
            handler(Rotate(steps))

    def _handle(self, ev, handler: Handler) -> bool:
        """Returns True when the event counted towards the per-drain event limit."""
        if ev.type == ecodes.EV_KEY:
            if ev.value != 1:
                return False
            if ev.code == ecodes.BTN_LEFT:
                handler(Button())
                return True
            event = _KEY_EVENTS.get(ev.code)
            if event is None:
                return False
            handler(event)
            return True
        if ev.type == ecodes.EV_REL and ev.code in (ecodes.REL_X, ecodes.REL_Y):
            # an expired half-detent goes out before the new event is counted
            self._flush_rotation(handler)
            self._accumulate(ev.code, ev.value)
            self._flush_rotation(handler)
            return True
        return False

    def drain(self, handler: Handler) -> None:
        if self.dev is None:
            return
        count = 0
        while True:
            try:
                ev = self.dev.read_one()
            except OSError as e:
                if e.errno in _GONE_ERRNOS:
                    logger.warning(f"Input device {self.path} lost ({e}), reopening")
                    self._reopen()
                else:
                    logger.debug(f"Error reading from input device: {e}")
                break
            if ev is None:
                break
            if ev.type == ecodes.EV_SYN:
                continue
            if count >= MAX_EVENTS_PER_ITERATION:
                # read and drop the surplus
                continue
            if self._handle(ev, handler):
                count += 1
        self._flush_rotation(handler)


# =====================================================
# GPIO KEYS (kernel gpio-keys / rotary-encoder overlays)
# =====================================================
@dataclass
class GpioDevice:
    path: str
    kind: str
    key_code: Optional[int] = None
    dev: object = None

    @property
    def is_open(self) -> bool:
        return self.dev is not None


class MultiGpio(InputSource):
    """
    One evdev node per physical button (``button@NN``) or rotary encoder
    (``rotary@NN``), drained in path order.
    """

    def __init__(self, open_device=InputDevice, paths: Optional[List[str]] = None):
        self._open_device = open_device
        self._paths = paths
        self.devices: List[GpioDevice] = []

    def open(self) -> bool:
        paths = self._paths if self._paths is not None else glob.glob("/dev/input/event*")
        for path in sorted(paths):
            try:
                dev = self._open_device(path)
            except OSError as e:
                logger.debug(f"Skipping {path}: {e}")
                continue

            name = dev.name or ""
            if name.startswith(GPIO_ROTARY_PREFIX):
                gd = GpioDevice(path=path, kind="rotary", dev=dev)
            elif name.startswith(GPIO_BUTTON_PREFIX):
                keys = dev.capabilities().get(ecodes.EV_KEY, [])
                code = next((k for k in _GPIO_KEY_PROBE if k in keys), None)
                if code is None:
                    logger.warning(f"GPIO button {name} at {path} has no supported key")
                    dev.close()
                    continue
                gd = GpioDevice(path=path, kind="button", key_code=code, dev=dev)
            else:
                dev.close()
                continue

            _grab(dev, path)
            self.devices.append(gd)
            logger.info(f"GPIO {gd.kind} {name} at {path}")

        if not self.devices:
            logger.error("No GPIO input devices found")
            return False
        return True

    def close(self) -> None:
        for gd in self.devices:
            self._close_device(gd)

    def _close_device(self, gd: GpioDevice) -> None:
        if gd.dev is not None:
            _release(gd.dev)
            gd.dev = None

    def fds(self) -> List[int]:
        return [gd.dev.fd for gd in self.devices if gd.is_open]

    @property
    def disconnected(self) -> bool:
        return bool(self.devices) and not any(gd.is_open for gd in self.devices)

    def check_connection(self) -> bool:
        return any(gd.is_open and os.path.exists(gd.path) for gd in self.devices)

    def _handle(self, gd: GpioDevice, ev, handler: Handler) -> None:
        if gd.kind == "rotary":
            if ev.type == ecodes.EV_REL and ev.code == ecodes.REL_X and ev.value:
                handler(Rotate(ev.value * KEY_ROTATE_STEPS))
        elif ev.type == ecodes.EV_KEY and ev.value == 1 and ev.code == gd.key_code:
            handler(_KEY_EVENTS[gd.key_code])

    def drain(self, handler: Handler) -> None:
        for gd in self.devices:
            if not gd.is_open:
                continue
            try:
                while True:
                    ev = gd.dev.read_one()
                    if ev is None:
                        break
                    self._handle(gd, ev, handler)
            except OSError as e:
                logger.warning(f"GPIO device {gd.path} failed ({e}), closing")
                self._close_device(gd)


class CompositeInput(InputSource):
    """Several sources drained in construction order."""

    def __init__(self, sources: List[InputSource]):
        self.sources = sources

    def open(self) -> bool:
        return any([s.open() for s in self.sources])

    def close(self) -> None:
        for s in self.sources:
            s.close()

    def fds(self) -> List[int]:
        out: List[int] = []
        for s in self.sources:
            out.extend(s.fds())
        return out

    @property
    def pending(self) -> bool:
        return any(s.pending for s in self.sources)

    @property
    def disconnected(self) -> bool:
        return all(s.disconnected for s in self.sources)

    def check_connection(self) -> bool:
        return any(s.check_connection() for s in self.sources)

    def drain(self, handler: Handler) -> None:
        for s in self.sources:
            s.drain(handler)


def open_input_source(input_device: str, gpio_mode: bool, open_device=InputDevice) -> Optional[InputSource]:
    if gpio_mode:
        gpio = MultiGpio(open_device=open_device)
        if not gpio.open():
            return None
        fallback_path = input_device if input_device and input_device != "gpio" else DEFAULT_INPUT_DEVICE
        fallback = HidEncoder(fallback_path, open_device=open_device)
        if not fallback.open():
            logger.warning(f"Failed to open fallback input device {fallback_path}")
            return gpio
        return CompositeInput([gpio, fallback])

    source = HidEncoder(input_device, open_device=open_device)
    if not source.open():
        return None
    return source
