import time
import logging

import psutil

from ..engine import Action, Result, ScreenModule, draw_centered, draw_header, fit
from ..process import ExternalProcess

logger = logging.getLogger(__name__)

DISPLAY_TIME = 2.0


# =====================================================
# HELLO / COUNTER
# =====================================================
class Hello(ScreenModule):
    id = "hello"
    title = "Hello World"

    def __init__(self, ctx, module_id=None, clock=time.monotonic):
        super().__init__(ctx, module_id)
        self._clock = clock
        self.started = 0.0

    def enter(self) -> None:
        self.started = self._clock()
        self.redraw()

    def redraw(self) -> None:
        self.display.clear()
        draw_centered(self.display, 16, "Hello, World!")
        draw_centered(self.display, 32, "MicroPanel")

    def update(self) -> Result:
        if self._clock() - self.started >= DISPLAY_TIME:
            return Action.POP
        return Action.CONTINUE

    def on_rotate(self, steps: int) -> Result:
        return Action.POP

    def on_button(self) -> Result:
        return Action.POP


class Counter(Hello):
    id = "counter"
    title = "Counter"

    count = 0

    def enter(self) -> None:
        Counter.count += 1
        super().enter()

    def redraw(self) -> None:
        self.display.clear()
        draw_centered(self.display, 16, "Counter")
        draw_centered(self.display, 32, str(Counter.count))


# =====================================================
# SYSTEM STATS
# =====================================================
def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    return f"{days}d {hours:02d}:{rem // 60:02d}"


class SystemStats(ScreenModule):
    id = "system"
    title = "System Stats"

    REFRESH = 1.0

    def __init__(self, ctx, module_id=None, clock=time.monotonic):
        super().__init__(ctx, module_id)
        self._clock = clock
        self.last_update = 0.0

    def enter(self) -> None:
        psutil.cpu_percent(interval=None)
        self.redraw()

    def redraw(self) -> None:
        self.display.clear()
        draw_header(self.display, "  System Stats")
        self.render_stats()

    def render_stats(self) -> None:
        cpu = psutil.cpu_percent(interval=None)
        mem = psutil.virtual_memory().percent
        try:
            load = psutil.getloadavg()[0]
        except (AttributeError, OSError):
            load = 0.0
        uptime = time.time() - psutil.boot_time()
        self.display.draw_text(0, 16, fit(f"CPU : {cpu:.0f}%"))
        self.display.draw_progress_bar(0, 24, 128, 6, int(cpu))
        self.display.draw_text(0, 32, fit(f"Mem : {mem:.0f}%"))
        self.display.draw_text(0, 40, fit(f"Load: {load:.2f}"))
        self.display.draw_text(0, 48, fit(f"Up  : {format_uptime(uptime)}"))
        self.last_update = self._clock()

    def update(self) -> Result:
        if self.display.powered and self._clock() - self.last_update >= self.REFRESH:
            self.render_stats()
        return Action.CONTINUE

    def on_button(self) -> Result:
        return Action.POP


# =====================================================
# INTERNET TEST
# =====================================================
class InternetTest(ScreenModule):
    """Pings a public resolver once and reports reachability."""

    id = "internet"
    title = "Test Internet"

    SERVER = "8.8.8.8"
    TIMEOUT = 5

    def __init__(self, ctx, module_id=None):
        super().__init__(ctx, module_id)
        self.proc = ExternalProcess("internet-test")
        self.result = None
        self.last_pct = -1

    def enter(self) -> None:
        self.result = None
        self.last_pct = -1
        cmd = ["ping", "-c", "1", "-W", str(self.TIMEOUT), self.SERVER]
        if not self.proc.start(cmd):
            self.result = False
        self.redraw()

    def exit(self) -> None:
        if self.proc.running:
            self.proc.terminate()

    def redraw(self) -> None:
        self.display.clear()
        draw_header(self.display, " Internet Test")
        self.display.draw_text(0, 16, f"Ping {self.SERVER}")
        self.last_pct = -1
        self.render_status()

    def render_status(self) -> None:
        if self.result is None:
            pct = min(99, int(self.proc.elapsed() * 100 / (self.TIMEOUT + 1)))
            if pct != self.last_pct:
                self.display.draw_progress_bar(0, 32, 128, 8, pct)
                self.last_pct = pct
            return
        self.display.draw_progress_bar(0, 32, 128, 8, 100)
        draw_centered(self.display, 48, "Connected" if self.result else "No Internet")

    def update(self) -> Result:
        if self.result is None:
            rc = self.proc.poll()
            if rc is not None:
                self.result = rc == 0
                logger.info(f"Internet test: {'connected' if self.result else 'no connectivity'}")
            self.render_status()
        return Action.CONTINUE

    def on_button(self) -> Result:
        return Action.POP
