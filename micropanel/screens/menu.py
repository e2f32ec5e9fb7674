import logging
from typing import Dict, List, Optional

from ..config import MENU_TITLE, MenuEntry
from ..engine import (
    Action,
    Push,
    Result,
    ScreenModule,
    ScrollWindow,
    draw_header,
    fit,
    option_label,
)
from .textbox import TextBox

logger = logging.getLogger(__name__)

BACK_ID = "back"
INVERT_ID = "invert_display"
MAIN_MENU_ID = "__main_menu__"

ROW_COLS = 15  # leave the right edge for scroll arrows

DYNAMIC_TEXTBOX_SCRIPT = "./scripts/network-data-info.sh --interface=$INTERFACE"


class MenuModule(ScreenModule):
    """
    A list of (module_id, title) entries. Selecting one pushes the module
    from the factory; ``back`` pops, ``invert_display`` toggles inversion and
    the appended "Main Menu" entry of nested menus pops to the root.

    Also acts as the callback target of the screens it launches.
    """

    def __init__(self, ctx, module_id: str, title: str, entries: List[MenuEntry],
                 top_level: bool = False, is_root: bool = False):
        super().__init__(ctx)
        self.id = module_id
        self.title = title
        self.entries = list(entries)
        self.top_level = top_level
        self.is_root = is_root
        self.items: List[MenuEntry] = []
        self.window = ScrollWindow()
        self.callback_values: Dict[str, str] = {}

    def _build_items(self) -> None:
        self.items = list(self.entries)
        if not self.is_root and not self.top_level:
            self.items.append(MenuEntry(MAIN_MENU_ID, "Main Menu"))
        self.window.reset(len(self.items))

    def enter(self) -> None:
        logger.debug(f"Entering menu {self.id}")
        self._build_items()
        self.redraw()

    # rendering
    def _draw_row(self, index: int) -> None:
        y = self.window.row_y(index)
        label = option_label(self.items[index].title, index == self.window.selected)
        self.display.draw_text(0, y, fit(label, ROW_COLS))

    def _draw_rows(self) -> None:
        for row in range(self.window.visible):
            index = self.window.first_visible + row
            if index < len(self.items):
                self._draw_row(index)
            else:
                self.display.draw_text(0, self.window.row_y(index), fit("", ROW_COLS))
        self.window.draw_arrows(self.display)

    def redraw(self) -> None:
        self.display.clear()
        draw_header(self.display, self.title or MENU_TITLE)
        if not self.items:
            self.display.draw_text(0, 16, "(empty)")
            return
        self._draw_rows()

    # input
    def on_rotate(self, steps: int) -> Result:
        old, old_first = self.window.selected, self.window.first_visible
        if not self.window.move(steps):
            return Action.CONTINUE
        if self.window.first_visible != old_first:
            self._draw_rows()
        else:
            self._draw_row(old)
            self._draw_row(self.window.selected)
        return Action.CONTINUE

    def on_button(self) -> Result:
        if not self.items:
            return Action.CONTINUE
        item = self.items[self.window.selected]
        if item.module_id == BACK_ID:
            return Action.POP
        if item.module_id == MAIN_MENU_ID:
            return Action.POP_TO_ROOT
        if item.module_id == INVERT_ID:
            self.display.set_inverted(not self.display.inverted)
            return Action.CONTINUE
        return self.launch(item.module_id)

    def launch(self, module_id: str) -> Result:
        module = self.ctx.factory.get(module_id)
        if module is None:
            logger.warning(f"Module not found: {module_id}")
            return Action.CONTINUE
        if not isinstance(module, MenuModule):
            self.deps.check(module_id)
        module.callback = self
        logger.info(f"Launching {module_id}")
        return Push(module)

    # callbacks from child screens
    def on_screen_action(self, screen_id: str, action: str, value: str) -> Result:
        logger.debug(f"Menu {self.id} callback from {screen_id}: {action}={value}")
        self.callback_values[f"{screen_id}.{action}"] = value
        if action == "exit_to_main_menu":
            return Action.POP_TO_ROOT
        if action == "launch_module":
            return self._launch_dynamic(value)
        return None

    def _launch_dynamic(self, value: str) -> Result:
        kind, _, param = value.partition(":")
        if kind != "textbox" or not param:
            logger.warning(f"Unsupported dynamic module: {value}")
            return None
        return Push(self.dynamic_textbox(param))

    def dynamic_textbox(self, interface: str) -> TextBox:
        module_id = f"{interface}_dynamic_stats"
        deps = self.deps
        if not deps.has(module_id, "script_path"):
            deps.add(module_id, "script_path",
                     deps.get("dynamic_network_stats", "script_path", DYNAMIC_TEXTBOX_SCRIPT))
        if not deps.has(module_id, "refresh_sec"):
            deps.add(module_id, "refresh_sec", "2.0")
        if not deps.has(module_id, "display_title"):
            deps.add(module_id, "display_title", "$INTERFACE Stats")
        return TextBox(self.ctx, module_id=module_id, runtime_params={"INTERFACE": interface})

    def selected_entry(self) -> Optional[MenuEntry]:
        if not self.items:
            return None
        return self.items[self.window.selected]
