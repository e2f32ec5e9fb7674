import re
import time
import errno
import logging
import termios
import threading
from typing import Optional

import serial
from luma.core.error import Error as LumaError
from luma.core.interface.serial import i2c
from luma.oled.device import ssd1306

from .config import (
    CMD_BRIGHTNESS,
    CMD_BUFFER_SIZE,
    CMD_CLEAR,
    CMD_DRAW_TEXT,
    CMD_INVERT,
    CMD_POWER_MODE,
    CMD_PROGRESS_BAR,
    CMD_SET_CURSOR,
    I2C_ADDR,
    OLED_H,
    OLED_W,
    SERIAL_BAUD,
)
from .font8x8 import glyph_columns

logger = logging.getLogger(__name__)

_GONE_ERRNOS = (errno.EIO, errno.ENODEV, errno.ENXIO)

# SSD1306 commands used for partial updates
SSD_COLUMN_ADDR = 0x21
SSD_PAGE_ADDR = 0x22
SSD_NORMAL = 0xA6
SSD_INVERT = 0xA7

PAGES = OLED_H // 8
LAST_GLYPH_COL = OLED_W - 8


def _clamp(v: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, int(v)))


def _u8(v: int) -> int:
    return int(v) & 0xFF


class DisplayBackend:
    """Transport for the 128x64 panel. Drawing calls never raise on I/O errors."""

    path = ""
    disconnected = False

    def open(self) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def is_open(self) -> bool:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def draw_text(self, x: int, y: int, text: str) -> None:
        raise NotImplementedError

    def set_cursor(self, x: int, y: int) -> None:
        raise NotImplementedError

    def set_inverted(self, inverted: bool) -> None:
        raise NotImplementedError

    def set_brightness(self, level: int) -> None:
        raise NotImplementedError

    def draw_progress_bar(self, x: int, y: int, w: int, h: int, pct: int) -> None:
        raise NotImplementedError

    def set_power(self, on: bool) -> None:
        raise NotImplementedError

    def check_connection(self) -> bool:
        return self.is_open() and not self.disconnected

    # Buffered command API (serial only)
    def send_command(self, frame: bytes) -> None:
        pass

    def buffer_command(self, frame: bytes) -> None:
        pass

    def flush_buffer(self) -> None:
        pass


# =====================================================
# SERIAL (framed protocol to the HMI microcontroller)
# =====================================================
class SerialFrame(DisplayBackend):
    """
    Frames are ``CMD_BYTE + args``; DRAW_TEXT carries no length prefix, so
    every frame is handed to the port in a single write().
    """

    def __init__(self, path: str, serial_factory=serial.Serial):
        self.path = path
        self._serial_factory = serial_factory
        self.port = None
        self.disconnected = False
        self._buf = bytearray()
        self._lock = threading.Lock()
        self.last_flush = time.monotonic()

    def open(self) -> bool:
        if self.port is not None:
            return True
        try:
            self.port = self._serial_factory(
                self.path,
                baudrate=SERIAL_BAUD,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=False,
                timeout=0,
            )
            self.port.reset_input_buffer()
            self.port.reset_output_buffer()
        except (serial.SerialException, OSError) as e:
            logger.error(f"Failed to open serial device {self.path}: {e}")
            self.port = None
            return False
        self.disconnected = False
        logger.info(f"Serial display opened: {self.path}")
        return True

    def close(self) -> None:
        if self.port is None:
            return
        self.flush_buffer()
        try:
            self.port.close()
        except (serial.SerialException, OSError):
            pass
        self.port = None

    def is_open(self) -> bool:
        return self.port is not None

    def check_connection(self) -> bool:
        if self.port is None or self.disconnected:
            return False
        try:
            termios.tcgetattr(self.port.fileno())
        except termios.error as e:
            if e.args and e.args[0] in _GONE_ERRNOS:
                return False
        except (serial.SerialException, OSError, ValueError):
            return False
        return True

    def _write(self, data: bytes) -> None:
        if self.port is None or self.disconnected:
            return
        try:
            n = self.port.write(data)
            if n is not None and n < len(data):
                logger.warning(f"Only wrote {n} of {len(data)} bytes")
        except serial.SerialException as e:
            logger.error(f"Serial write error, device disconnected: {e}")
            self.disconnected = True
            return
        except OSError as e:
            logger.error(f"Error writing to serial device: {e}")
            if e.errno in _GONE_ERRNOS:
                self.disconnected = True
            return

        try:
            self.port.flush()
        except termios.error as e:
            logger.error(f"Error draining serial output: {e}")
            if e.args and e.args[0] in _GONE_ERRNOS:
                self.disconnected = True
        except (serial.SerialException, OSError) as e:
            logger.error(f"Error draining serial output: {e}")
            self.disconnected = True

    def send_command(self, frame: bytes) -> None:
        with self._lock:
            self._write(bytes(frame))

    def buffer_command(self, frame: bytes) -> None:
        with self._lock:
            if len(self._buf) + len(frame) > CMD_BUFFER_SIZE:
                self._flush_locked()
            self._buf.extend(frame)

    def flush_buffer(self) -> None:
        with self._lock:
            self._flush_locked()

    def _flush_locked(self) -> None:
        if self._buf:
            self._write(bytes(self._buf))
            self._buf.clear()
        self.last_flush = time.monotonic()

    @property
    def buffered(self) -> int:
        return len(self._buf)

    # Frames
    def clear(self) -> None:
        self.send_command(bytes([CMD_CLEAR]))

    def draw_text(self, x: int, y: int, text: str) -> None:
        self.send_command(bytes([CMD_DRAW_TEXT, _u8(x), _u8(y)]) + text.encode("ascii", "replace"))

    def set_cursor(self, x: int, y: int) -> None:
        self.send_command(bytes([CMD_SET_CURSOR, _u8(x), _u8(y)]))

    def set_inverted(self, inverted: bool) -> None:
        self.send_command(bytes([CMD_INVERT, 1 if inverted else 0]))

    def set_brightness(self, level: int) -> None:
        self.send_command(bytes([CMD_BRIGHTNESS, _clamp(level, 0, 255)]))

    def draw_progress_bar(self, x: int, y: int, w: int, h: int, pct: int) -> None:
        self.send_command(bytes([CMD_PROGRESS_BAR, _u8(x), _u8(y), _u8(w), _u8(h), _clamp(pct, 0, 100)]))

    def set_power(self, on: bool) -> None:
        self.send_command(bytes([CMD_POWER_MODE, 1 if on else 0]))


# =====================================================
# I2C SSD1306 (framebuffer rendered in-process)
# =====================================================
def _luma_device(port: int, address: int):
    # ssd1306() runs the standard 128x64 init sequence, contrast 0xCF, clear, display on
    return ssd1306(i2c(port=port, address=address), width=OLED_W, height=OLED_H)


class I2cSsd1306(DisplayBackend):
    def __init__(self, path: str, device_factory=_luma_device, address: int = I2C_ADDR):
        self.path = path
        self.address = address
        self._device_factory = device_factory
        self.device = None
        self.disconnected = False
        self.framebuffer = bytearray(OLED_W * PAGES)
        self.cursor_x = 0
        self.cursor_y = 0

    @property
    def bus(self) -> Optional[int]:
        m = re.match(r"^/dev/i2c-(\d+)$", self.path)
        return int(m.group(1)) if m else None

    def open(self) -> bool:
        if self.device is not None:
            return True
        bus = self.bus
        if bus is None:
            logger.error(f"Not an I2C bus path: {self.path}")
            return False
        try:
            self.device = self._device_factory(bus, self.address)
        except (LumaError, OSError) as e:
            logger.error(f"Failed to initialize SSD1306 on {self.path} @0x{self.address:02X}: {e}")
            self.device = None
            return False
        self.disconnected = False
        self.framebuffer = bytearray(OLED_W * PAGES)
        self.cursor_x = self.cursor_y = 0
        logger.info(f"I2C display opened: {self.path} @0x{self.address:02X}")
        return True

    def close(self) -> None:
        if self.device is None:
            return
        self._io(self.device.hide)
        try:
            self.device.persist = True
            self.device.cleanup()
        except (LumaError, OSError):
            pass
        self.device = None

    def is_open(self) -> bool:
        return self.device is not None

    def check_connection(self) -> bool:
        return self.device is not None

    def _io(self, fn, *args) -> bool:
        if self.device is None or self.disconnected:
            return False
        try:
            fn(*args)
            return True
        except (LumaError, OSError) as e:
            logger.error(f"I2C write failed, display disconnected: {e}")
            self.disconnected = True
            return False

    def _update(self, page0: int, page1: int, col0: int, col1: int) -> None:
        data = []
        for page in range(page0, page1 + 1):
            base = page * OLED_W
            data.extend(self.framebuffer[base + col0:base + col1 + 1])
        if not self._io(self.device.command, SSD_PAGE_ADDR, page0, page1):
            return
        if not self._io(self.device.command, SSD_COLUMN_ADDR, col0, col1):
            return
        self._io(self.device.data, data)

    def clear(self) -> None:
        self.framebuffer = bytearray(OLED_W * PAGES)
        self.cursor_x = self.cursor_y = 0
        if self.device is not None:
            self._update(0, PAGES - 1, 0, OLED_W - 1)

    def set_cursor(self, x: int, y: int) -> None:
        self.cursor_x = _clamp(x, 0, OLED_W - 1)
        self.cursor_y = _clamp(y, 0, OLED_H - 1)

    def _advance(self) -> None:
        self.cursor_x += 8
        if self.cursor_x > LAST_GLYPH_COL:
            self.cursor_x = 0
            self.cursor_y += 8
            if self.cursor_y >= OLED_H:
                self.cursor_y = 0

    def _put_glyph(self, ch: str) -> None:
        page = self.cursor_y // 8
        col = self.cursor_x
        if page >= PAGES or col > LAST_GLYPH_COL:
            return
        cols = glyph_columns(ch)
        base = page * OLED_W + col
        self.framebuffer[base:base + 8] = cols
        if self.device is not None:
            self._update(page, page, col, col + 7)

    def draw_text(self, x: int, y: int, text: str) -> None:
        self.set_cursor(x, y)
        for ch in text:
            self._put_glyph(ch)
            self._advance()

    def draw_progress_bar(self, x: int, y: int, w: int, h: int, pct: int) -> None:
        pct = _clamp(pct, 0, 100)
        x = _clamp(x, 0, OLED_W - 1)
        y = _clamp(y, 0, OLED_H - 1)
        w = min(int(w), OLED_W - x)
        h = min(int(h), OLED_H - y)
        if w <= 0 or h <= 0:
            return
        fill_w = w * pct // 100
        x_end = x + w - 1
        y_end = y + h - 1
        page0, page1 = y // 8, y_end // 8

        for page in range(page0, page1 + 1):
            for col in range(x, x_end + 1):
                mask = 0
                bits = 0
                for bit in range(8):
                    py = page * 8 + bit
                    if py < y or py > y_end:
                        continue
                    mask |= 1 << bit
                    border = col in (x, x_end) or py in (y, y_end)
                    if border or col < x + fill_w:
                        bits |= 1 << bit
                idx = page * OLED_W + col
                self.framebuffer[idx] = (self.framebuffer[idx] & ~mask & 0xFF) | bits

        if self.device is not None:
            self._update(page0, page1, x, x_end)

    def set_inverted(self, inverted: bool) -> None:
        if self.device is not None:
            self._io(self.device.command, SSD_INVERT if inverted else SSD_NORMAL)

    def set_brightness(self, level: int) -> None:
        if self.device is not None:
            self._io(self.device.contrast, _clamp(level, 0, 255))

    def set_power(self, on: bool) -> None:
        if self.device is not None:
            self._io(self.device.show if on else self.device.hide)


def create_backend(path: str) -> DisplayBackend:
    if path.startswith("/dev/i2c-"):
        return I2cSsd1306(path)
    return SerialFrame(path)
