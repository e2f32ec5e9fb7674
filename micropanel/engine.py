import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union

from .config import (
    LINE_H,
    MENU_SEPARATOR,
    MENU_START_Y,
    MENU_VISIBLE_ITEMS,
    SCROLL_MARK_X,
    TEXT_COLS,
)
from .events import Button, InputEvent, Rotate

logger = logging.getLogger(__name__)


# =====================================================
# RESULTS
# =====================================================
class Action(Enum):
    CONTINUE = "continue"
    POP = "pop"
    POP_TO_ROOT = "pop_to_root"


@dataclass
class Push:
    module: "ScreenModule"


Result = Union[Action, Push, None]


# =====================================================
# SCREEN MODULE BASE
# =====================================================
class ScreenModule:
    """
    A screen that owns the panel while it is on top of the MenuEngine stack.

    Handlers return CONTINUE (or None), POP, POP_TO_ROOT or Push(child).
    """

    id = ""
    title = ""
    # set by the launching menu; receives on_screen_action(screen_id, action, value)
    callback = None

    def __init__(self, ctx, module_id: Optional[str] = None):
        self.ctx = ctx
        if module_id:
            self.id = module_id
        self.display = ctx.display
        self.deps = ctx.deps

    def enter(self) -> None:
        pass

    def exit(self) -> None:
        pass

    def update(self) -> Result:
        return Action.CONTINUE

    def on_rotate(self, steps: int) -> Result:
        return Action.CONTINUE

    def on_button(self) -> Result:
        return Action.CONTINUE

    def redraw(self) -> None:
        pass

    def dep(self, key: str, default: str = "") -> str:
        return self.deps.get(self.id, key, default)


# =====================================================
# DRAW HELPERS
# =====================================================
def fit(text: str, width: int = TEXT_COLS) -> str:
    """Truncate and pad to exactly ``width`` characters."""
    return text[:width].ljust(width)


def centered_x(text: str) -> int:
    return max(0, (TEXT_COLS - len(text)) // 2) * 8


def draw_centered(display, y: int, text: str) -> None:
    text = text[:TEXT_COLS]
    display.draw_text(centered_x(text), y, text)


def draw_header(display, title: str) -> None:
    display.draw_text(0, 0, title[:TEXT_COLS])
    display.draw_text(0, LINE_H, MENU_SEPARATOR)


def option_label(label: str, selected: bool, current: bool = False) -> str:
    """'>[Start]', '>Start', ' [Start]', ' Start'."""
    body = f"[{label}]" if current else label
    return (">" if selected else " ") + body


def message(display, lines: List[str], y0: int = 0, step: int = 10) -> None:
    display.clear()
    y = y0
    for line in lines:
        display.draw_text(0, y, line[:TEXT_COLS])
        y += step


# =====================================================
# SCROLL WINDOW
# =====================================================
class ScrollWindow:
    """
    Selection over ``total`` rows, ``visible`` of which fit on screen.

    first_visible = max(0, min(selected, total - visible)); a scroll change
    needs a full list redraw, otherwise only the old and new rows change.
    """

    def __init__(self, total: int = 0, visible: int = MENU_VISIBLE_ITEMS, wrap: bool = False):
        self.total = total
        self.visible = visible
        self.wrap = wrap
        self.selected = 0
        self.first_visible = 0

    def reset(self, total: Optional[int] = None, selected: int = 0) -> None:
        if total is not None:
            self.total = total
        self.selected = max(0, min(selected, self.total - 1)) if self.total else 0
        self.first_visible = self._first_for(self.selected)

    def _first_for(self, selected: int) -> int:
        return max(0, min(selected, self.total - self.visible))

    def move(self, direction: int) -> bool:
        """Returns True when the selection changed."""
        if self.total == 0 or direction == 0:
            return False
        nxt = self.selected + (1 if direction > 0 else -1)
        if self.wrap:
            nxt %= self.total
        else:
            nxt = max(0, min(self.total - 1, nxt))
        if nxt == self.selected:
            return False
        self.selected = nxt
        if self.selected < self.first_visible or self.selected >= self.first_visible + self.visible:
            self.first_visible = self._first_for(self.selected)
        return True

    def visible_range(self) -> range:
        return range(self.first_visible, min(self.total, self.first_visible + self.visible))

    def row_y(self, index: int, start_y: int = MENU_START_Y, spacing: int = LINE_H) -> int:
        return start_y + (index - self.first_visible) * spacing

    @property
    def clipped_above(self) -> bool:
        return self.first_visible > 0

    @property
    def clipped_below(self) -> bool:
        return self.first_visible + self.visible < self.total

    def draw_arrows(self, display, start_y: int = MENU_START_Y, spacing: int = LINE_H) -> None:
        last_y = start_y + (self.visible - 1) * spacing
        display.draw_text(SCROLL_MARK_X, start_y, "^" if self.clipped_above else " ")
        display.draw_text(SCROLL_MARK_X, last_y, "v" if self.clipped_below else " ")


# =====================================================
# ENGINE
# =====================================================
class MenuEngine:
    """
    Stack of screen modules. Only the top module receives input; a parent
    stays suspended (not exited) below its child and is fully redrawn when
    the child pops.
    """

    def __init__(self):
        self.stack: List[ScreenModule] = []

    @property
    def active(self) -> Optional[ScreenModule]:
        return self.stack[-1] if self.stack else None

    @property
    def depth(self) -> int:
        return len(self.stack)

    def push(self, module: ScreenModule) -> None:
        logger.debug(f"push {module.id or type(module).__name__}")
        self.stack.append(module)
        self._guard(module, module.enter)

    def set_root(self, module: ScreenModule) -> None:
        self.pop_all()
        self.push(module)

    def pop_all(self) -> None:
        while self.stack:
            mod = self.stack.pop()
            self._guard(mod, mod.exit)

    def route(self, event: InputEvent) -> None:
        mod = self.active
        if mod is None:
            return
        if isinstance(event, Rotate):
            res = self._guard(mod, mod.on_rotate, event.steps)
        elif isinstance(event, Button):
            res = self._guard(mod, mod.on_button)
        else:
            return
        self.apply(res)

    def update(self) -> None:
        mod = self.active
        if mod is None:
            return
        self.apply(self._guard(mod, mod.update))

    def redraw(self) -> None:
        mod = self.active
        if mod is not None:
            self._guard(mod, mod.redraw)

    def apply(self, res: Result) -> None:
        if res is None or res is Action.CONTINUE:
            return
        if isinstance(res, Push):
            self.push(res.module)
            return
        if res is Action.POP:
            self._pop_one()
        elif res is Action.POP_TO_ROOT:
            while len(self.stack) > 1:
                self._pop_one()
        self.redraw()

    def _pop_one(self) -> None:
        if len(self.stack) <= 1:
            logger.debug("pop on root ignored")
            return
        mod = self.stack.pop()
        logger.debug(f"pop {mod.id or type(mod).__name__}")
        self._guard(mod, mod.exit)

    @staticmethod
    def _guard(mod: ScreenModule, fn, *args) -> Result:
        # A failing module must never take down the main loop.
        try:
            return fn(*args)
        except Exception:
            logger.exception(f"Module {mod.id or type(mod).__name__} raised in {fn.__name__}")
            return Action.CONTINUE
