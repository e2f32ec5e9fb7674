import logging

from ..config import LINE_H, MENU_SEPARATOR
from ..engine import Action, Result, ScreenModule, ScrollWindow, fit, option_label
from ..process import run_capture, run_status

logger = logging.getLogger(__name__)

OPTIONS = ["Turn On", "Turn Off", "Back"]
ROW_SPACING = 10


class WiFi(ScreenModule):
    """
    Radio on/off. With a ``wifi_script`` dependency the state is read with
    ``<script> status`` and changed with ``<script> on|off``; without one it
    is only remembered for the session.
    """

    id = "wifi"
    title = "WiFi"

    def __init__(self, ctx, module_id=None):
        super().__init__(ctx, module_id)
        self.window = ScrollWindow(len(OPTIONS))
        self.enabled = False

    @property
    def script(self) -> str:
        return self.dep("wifi_script").strip()

    def read_state(self) -> bool:
        if not self.script:
            return self.enabled
        out = run_capture(f"{self.script} status").strip().lower()
        return out == "on"

    def write_state(self, enabled: bool) -> None:
        if enabled == self.enabled:
            return
        if self.script:
            rc = run_status(f"{self.script} {'on' if enabled else 'off'}")
            if rc != 0:
                logger.warning(f"WiFi script failed with {rc}")
        self.enabled = enabled if not self.script else self.read_state()
        logger.info(f"WiFi state changed to {'ON' if self.enabled else 'OFF'}")

    def enter(self) -> None:
        self.enabled = self.read_state()
        self.window.reset()
        self.redraw()

    def redraw(self) -> None:
        self.display.clear()
        self.display.draw_text(0, 0, " WiFi Settings")
        self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        self.render_options()

    def render_options(self) -> None:
        for i, name in enumerate(OPTIONS):
            current = (i == 0 and self.enabled) or (i == 1 and not self.enabled)
            text = option_label(name, i == self.window.selected, current)
            self.display.draw_text(0, 16 + i * ROW_SPACING, fit(text))

    def on_rotate(self, steps: int) -> Result:
        if self.window.move(steps):
            self.render_options()
        return Action.CONTINUE

    def on_button(self) -> Result:
        choice = OPTIONS[self.window.selected]
        if choice == "Back":
            return Action.POP
        self.write_state(choice == "Turn On")
        self.render_options()
        return Action.CONTINUE
