import time
import logging

from .backends import DisplayBackend
from .config import DEFAULT_BRIGHTNESS, POWER_SAVE_TIMEOUT_SEC

logger = logging.getLogger(__name__)


class Display:
    """
    Stateful wrapper around a DisplayBackend: remembers inversion,
    brightness and power, and implements the inactivity power-save policy.
    """

    def __init__(self, backend: DisplayBackend, clock=time.monotonic,
                 power_save_timeout: float = POWER_SAVE_TIMEOUT_SEC):
        self.backend = backend
        self._clock = clock
        self.power_save_timeout = power_save_timeout
        self.inverted = False
        self.brightness = DEFAULT_BRIGHTNESS
        self.powered = True
        self.power_save_enabled = False
        self.power_save_tripped = False
        self.last_activity = clock()

    def attach(self, backend: DisplayBackend) -> None:
        """Swap in a freshly opened backend and push the remembered state to it."""
        self.backend = backend
        self.powered = True
        self.power_save_tripped = False
        self.last_activity = self._clock()
        backend.set_brightness(self.brightness)
        if self.inverted:
            backend.set_inverted(True)

    # pass-through drawing
    def clear(self) -> None:
        self.backend.clear()

    def draw_text(self, x: int, y: int, text: str) -> None:
        self.backend.draw_text(x, y, text)

    def set_cursor(self, x: int, y: int) -> None:
        self.backend.set_cursor(x, y)

    def draw_progress_bar(self, x: int, y: int, w: int, h: int, pct: int) -> None:
        self.backend.draw_progress_bar(x, y, w, h, pct)

    def flush_buffer(self) -> None:
        self.backend.flush_buffer()

    # state
    def set_inverted(self, inverted: bool) -> None:
        self.inverted = bool(inverted)
        self.backend.set_inverted(self.inverted)

    def set_brightness(self, level: int) -> None:
        self.brightness = max(0, min(255, int(level)))
        self.backend.set_brightness(self.brightness)

    def set_power(self, on: bool) -> None:
        if on == self.powered:
            return
        self.powered = on
        self.backend.set_power(on)
        if on:
            self.power_save_tripped = False
        elif self.power_save_enabled:
            self.power_save_tripped = True

    # power save
    def enable_power_save(self, enable: bool) -> None:
        self.power_save_enabled = enable
        if enable:
            self.last_activity = self._clock()
            self.set_power(True)

    def update_activity_timestamp(self) -> bool:
        """Record user activity. Returns True if this woke the panel."""
        self.last_activity = self._clock()
        if self.power_save_enabled and not self.powered:
            logger.debug("Waking display from power save")
            self.set_power(True)
            return True
        return False

    def check_power_save_timeout(self) -> None:
        if not self.power_save_enabled or not self.powered:
            return
        if self._clock() - self.last_activity >= self.power_save_timeout:
            logger.debug("Inactivity timeout, display off")
            self.set_power(False)
            self.power_save_tripped = True

    def is_disconnected(self) -> bool:
        return self.backend.disconnected
