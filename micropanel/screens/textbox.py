import time
import logging
from typing import Dict, List, Optional

from ..config import LINE_H, MENU_SEPARATOR, TEXT_COLS
from ..engine import Action, Result, ScreenModule, centered_x, draw_centered, fit
from ..process import run_capture

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Info"
DEFAULT_SCRIPT = "/usr/bin/micropanel-version.sh"
MAX_LINES = 4
FIRST_LINE_Y = 16
FOOTER_Y = 48


def substitute(text: str, params: Dict[str, str]) -> str:
    for key, value in params.items():
        text = text.replace(f"${key}", value)
    return text


def parse_output(output: str) -> List[str]:
    out = output.replace("°", "*")
    lines = [ln.rstrip()[:TEXT_COLS] for ln in out.splitlines() if ln.strip()]
    return lines[:MAX_LINES]


class TextBox(ScreenModule):
    """
    Shows up to four lines printed by ``script_path``; any input returns.
    With ``refresh_sec`` > 0 the script is re-run and changed lines redrawn.
    """

    id = "textbox"

    def __init__(self, ctx, module_id: Optional[str] = None,
                 runtime_params: Optional[Dict[str, str]] = None, clock=time.monotonic):
        super().__init__(ctx, module_id)
        self.params = dict(runtime_params or {})
        self._clock = clock
        self.lines: List[str] = []
        self.error = ""
        self.last_refresh = 0.0

    @property
    def title_text(self) -> str:
        return substitute(self.dep("display_title", DEFAULT_TITLE), self.params)

    @property
    def script(self) -> str:
        return substitute(self.dep("script_path", DEFAULT_SCRIPT), self.params).strip()

    @property
    def refresh_sec(self) -> float:
        try:
            return float(self.dep("refresh_sec", "0"))
        except ValueError:
            return 0.0

    def _run(self) -> List[str]:
        script = self.script
        if not script:
            self.error = "Error: No script"
            return []
        self.error = ""
        return parse_output(run_capture(script))

    def enter(self) -> None:
        self.lines = self._run()
        self.last_refresh = self._clock()
        self.redraw()

    def _draw_line(self, i: int) -> None:
        y = FIRST_LINE_Y + i * LINE_H
        self.display.draw_text(0, y, fit(""))
        if i < len(self.lines):
            text = self.lines[i]
            self.display.draw_text(centered_x(text), y, text)

    def redraw(self) -> None:
        self.display.clear()
        draw_centered(self.display, 0, self.title_text)
        self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        if self.error:
            self.display.draw_text(0, FIRST_LINE_Y, self.error)
        elif not self.lines:
            self.display.draw_text(0, FIRST_LINE_Y, "No output")
        else:
            for i in range(len(self.lines)):
                self._draw_line(i)
        self.display.draw_text(0, FOOTER_Y, "Press to return")

    def update(self) -> Result:
        interval = self.refresh_sec
        if interval <= 0 or not self.display.powered:
            return Action.CONTINUE
        now = self._clock()
        if now - self.last_refresh < interval:
            return Action.CONTINUE
        self.last_refresh = now

        old = self.lines
        new = self._run()
        if self.error or not old or not new:
            self.lines = new
            self.redraw()
            return Action.CONTINUE
        self.lines = new
        for i in range(max(len(old), len(new))):
            before = old[i] if i < len(old) else None
            after = new[i] if i < len(new) else None
            if before != after:
                self._draw_line(i)
        return Action.CONTINUE

    def on_rotate(self, steps: int) -> Result:
        return Action.POP

    def on_button(self) -> Result:
        return Action.POP
