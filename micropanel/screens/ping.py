import os
import time
import logging
from enum import Enum
from typing import Optional

from ..config import LINE_H, MENU_SEPARATOR, TEXT_COLS
from ..engine import Action, Result, ScreenModule
from ..ip_editor import IpEditor
from ..process import ExternalProcess

logger = logging.getLogger(__name__)

RESULT_FILE = "/tmp/micropanel_ping_result.txt"
PING_CMD = "ping -c 1 -W 2 {ip} | grep -oP 'time=\\K[0-9.]+' > {out}"
DEFAULT_TARGET = "192.168.001.001"
DOT_INTERVAL = 0.25

IP_Y = 16
PING_Y = 32
EXIT_Y = 40
STATUS_Y = 48


class PingState(Enum):
    IP = 0
    PING = 1
    EXIT = 2


_ORDER = [PingState.IP, PingState.PING, PingState.EXIT]


def parse_ping_time(text: str) -> float:
    """First line of the grep output as milliseconds (0.0 when unparseable)."""
    line = (text or "").strip().splitlines()[:1]
    try:
        return float(line[0]) if line else 0.0
    except ValueError:
        logger.error("Failed to parse ping time")
        return 0.0


def ping_status_text(rc: int, time_ms: float) -> str:
    if rc == 0:
        return f"Success!({time_ms:.1f}ms)"
    return "No Response"


class PingScreen(ScreenModule):
    id = "ping"
    title = "IP Ping"

    def __init__(self, ctx, module_id=None, clock=time.monotonic, result_file: str = RESULT_FILE):
        super().__init__(ctx, module_id)
        self._clock = clock
        self.result_file = result_file
        self.editor = IpEditor(self.dep("default_ip", DEFAULT_TARGET))
        self.state = PingState.IP
        self.proc = ExternalProcess("ping")
        self.result: Optional[int] = None
        self.time_ms = 0.0
        self.dots = 0
        self.last_dot = 0.0
        self.last_status: Optional[str] = None

    def enter(self) -> None:
        logger.debug("Ping: entered")
        self.state = PingState.IP
        self.result = None
        self.time_ms = 0.0
        self.editor.reset()
        self.redraw()

    def exit(self) -> None:
        if self.proc.running:
            self.proc.terminate()

    # ---------- drawing ----------
    def redraw(self) -> None:
        self.display.clear()
        self.display.draw_text(0, 0, "   Ping Test")
        self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        self.last_status = None
        self.render_menu()

    def render_menu(self) -> None:
        self.editor.draw(self.display, IP_Y, self.state is PingState.IP)
        self.display.draw_text(0, PING_Y, (">" if self.state is PingState.PING else " ") + "Ping")
        self.display.draw_text(0, EXIT_Y, (">" if self.state is PingState.EXIT else " ") + "Exit")
        self.update_status_line()

    def status_text(self) -> str:
        if self.proc.running:
            return "Pinging" + "." * self.dots
        if self.result is not None:
            return ping_status_text(self.result, self.time_ms)
        return ""

    def update_status_line(self) -> None:
        text = self.status_text()
        if text == self.last_status:
            return
        self.display.draw_text(0, STATUS_Y, " " * TEXT_COLS)
        if text:
            self.display.draw_text(0, STATUS_Y, text)
        self.last_status = text

    # ---------- ping ----------
    def start_ping(self) -> None:
        if self.proc.running:
            return
        ip = self.editor.normalized()
        logger.debug(f"Starting ping to {ip}")
        self.result = None
        self.time_ms = 0.0
        self.dots = 0
        self.last_dot = self._clock()
        if not self.proc.start(PING_CMD.format(ip=ip, out=self.result_file)):
            self.result = 1

    def check_ping(self) -> None:
        rc = self.proc.poll()
        if rc is None:
            return
        self.result = 0 if rc == 0 else 1
        if self.result == 0:
            try:
                with open(self.result_file, errors="replace") as f:
                    self.time_ms = parse_ping_time(f.read())
            except OSError:
                self.time_ms = 0.0
            try:
                os.unlink(self.result_file)
            except OSError:
                pass
        logger.debug(f"Ping completed with result {self.result} time {self.time_ms}ms")

    def update(self) -> Result:
        if self.proc.running:
            self.check_ping()
            now = self._clock()
            if self.proc.running and now - self.last_dot >= DOT_INTERVAL:
                self.dots = (self.dots + 1) % 4
                self.last_dot = now
        self.update_status_line()
        return Action.CONTINUE

    # ---------- input ----------
    def on_rotate(self, steps: int) -> Result:
        direction = 1 if steps > 0 else -1
        if self.state is PingState.IP and self.editor.on_rotate(direction):
            self.render_menu()
            return Action.CONTINUE

        nxt = _ORDER[(_ORDER.index(self.state) + direction) % len(_ORDER)]
        self.state = nxt
        if nxt is PingState.IP:
            self.editor.focus(from_end=direction < 0)
        self.render_menu()
        return Action.CONTINUE

    def on_button(self) -> Result:
        if self.state is PingState.IP:
            self.editor.on_button()
        elif self.state is PingState.PING:
            self.start_ping()
        else:
            return Action.POP
        self.render_menu()
        return Action.CONTINUE
