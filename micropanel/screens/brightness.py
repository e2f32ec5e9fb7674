import logging

from ..config import DEFAULT_BRIGHTNESS
from ..engine import Action, Result, ScreenModule, draw_header, fit

logger = logging.getLogger(__name__)

STEP = 16
BAR_X, BAR_Y, BAR_W, BAR_H = 4, 24, 120, 10
STORE_MODULE = "brightness"
STORE_KEY = "level"


def stored_brightness(storage) -> int:
    level = storage.get(STORE_MODULE, STORE_KEY, DEFAULT_BRIGHTNESS)
    return max(0, min(255, level))


class Brightness(ScreenModule):
    id = "brightness"
    title = "Brightness"

    def enter(self) -> None:
        self.level = self.display.brightness
        self.redraw()

    def redraw(self) -> None:
        self.display.clear()
        draw_header(self.display, "   Brightness")
        self.draw_level()
        self.display.draw_text(0, 56, "Press to save")

    def draw_level(self) -> None:
        pct = self.level * 100 // 255
        self.display.draw_progress_bar(BAR_X, BAR_Y, BAR_W, BAR_H, pct)
        self.display.draw_text(0, 40, fit(f"Level: {self.level}"))

    def on_rotate(self, steps: int) -> Result:
        delta = STEP if steps > 0 else -STEP
        level = max(0, min(255, self.level + delta))
        if level != self.level:
            self.level = level
            self.display.set_brightness(level)
            self.draw_level()
        return Action.CONTINUE

    def on_button(self) -> Result:
        self.ctx.storage.set(STORE_MODULE, STORE_KEY, self.level)
        logger.info(f"Brightness saved: {self.level}")
        return Action.POP
