import logging
from enum import Enum
from typing import Dict, Optional

from ..config import LINE_H, MENU_SEPARATOR
from ..engine import Action, Result, ScreenModule, ScrollWindow, fit, option_label
from ..ip_editor import IpEditor
from ..process import run_capture

logger = logging.getLogger(__name__)

DEFAULT_SCRIPT = "/usr/bin/dhcp-net-settings.sh"
DEFAULT_OS = "debian"
DEFAULT_IFACE = "eth0"
SCRIPT_TIMEOUT = 30.0

MAIN_ROWS = ["Mode", "IP", "Gateway", "Netmask", "Apply", "Back"]
MODE_ROWS = ["Static", "Dhcp", "Back"]
ADDR_FIELDS = ("IP", "Gateway", "Netmask")


class View(Enum):
    MAIN = "main"
    MODE = "mode"
    ADDR = "addr"
    RESULT = "result"


def parse_settings(output: str) -> Dict[str, str]:
    """
    Key/value lines of the helper script. ``result`` holds the RESULT: line
    (OK or ERROR...) and is absent when the script printed none.
    """
    out: Dict[str, str] = {}
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("RESULT:"):
            out["result"] = line[len("RESULT:"):].strip()
        elif "=" in line:
            key, _, value = line.partition("=")
            if key in ("mode", "ip", "gateway", "netmask"):
                out[key] = value.strip()
    return out


class NetSettings(ScreenModule):
    """Static/DHCP configuration of one interface through a helper script."""

    id = "netsettings"
    title = "Net Settings"

    def __init__(self, ctx, module_id=None):
        super().__init__(ctx, module_id)
        self.mode = "dhcp"
        self.editors = {
            "IP": IpEditor("192.168.001.100"),
            "Gateway": IpEditor("192.168.001.001"),
            "Netmask": IpEditor("255.255.255.000"),
        }
        self.view = View.MAIN
        self.main = ScrollWindow(len(MAIN_ROWS), wrap=True)
        self.sub = ScrollWindow(len(MODE_ROWS), wrap=True)
        self.field: Optional[str] = None
        self.result_text = ""

    @property
    def script(self) -> str:
        return self.dep("action_script", DEFAULT_SCRIPT)

    @property
    def os_type(self) -> str:
        return self.dep("os_type", DEFAULT_OS)

    @property
    def iface(self) -> str:
        return self.dep("iface_name", DEFAULT_IFACE)

    def base_command(self) -> str:
        return f"{self.script} --os={self.os_type} --interface={self.iface}"

    # ---------- script I/O ----------
    def load_settings(self) -> bool:
        cmd = self.base_command()
        logger.debug(f"Initializing network settings from script: {cmd}")
        settings = parse_settings(run_capture(cmd, timeout=SCRIPT_TIMEOUT))
        if "result" not in settings:
            logger.info("Network settings script output incomplete, using defaults")
            return False
        if "ERROR" in settings["result"]:
            logger.error("Error reading network settings")
            return False
        if settings.get("mode") in ("static", "dhcp"):
            self.mode = settings["mode"]
        for key, field in (("ip", "IP"), ("gateway", "Gateway"), ("netmask", "Netmask")):
            if key in settings:
                self.editors[field].set_ip(settings[key])
            elif self.mode == "static":
                logger.warning(f"Static mode but {key} missing from script output")
        return True

    def apply(self) -> bool:
        cmd = self.base_command()
        if self.mode == "static":
            cmd += (f" --mode=static --ip={self.editors['IP'].normalized()}"
                    f" --gateway={self.editors['Gateway'].normalized()}"
                    f" --netmask={self.editors['Netmask'].normalized()}")
        else:
            cmd += " --mode=dhcp"
        logger.debug(f"Running command: {cmd}")
        result = parse_settings(run_capture(cmd, timeout=SCRIPT_TIMEOUT)).get("result", "")
        ok = "OK" in result
        self.result_text = "RESULT:" + (result or "ERROR")
        if ok:
            logger.info(f"Network settings applied ({self.mode})")
        else:
            logger.warning(f"Applying network settings failed: {self.result_text}")
        return ok

    # ---------- lifecycle ----------
    def enter(self) -> None:
        if not self.load_settings():
            logger.info("Using default network settings")
        self.view = View.MAIN
        self.main.reset()
        self.redraw()

    def redraw(self) -> None:
        self.display.clear()
        if self.view is View.MAIN:
            self.display.draw_text(0, 0, "  Net Settings")
        elif self.view is View.MODE:
            self.display.draw_text(0, 0, "Mode")
        elif self.view is View.ADDR:
            self.display.draw_text(0, 0, self.field)
        else:
            self.display.draw_text(0, 0, "Apply")
        self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        self.render_body()

    def render_body(self) -> None:
        if self.view is View.MAIN:
            for i, name in enumerate(MAIN_ROWS):
                label = f"Mode: {'Static' if self.mode == 'static' else 'DHCP'}" if i == 0 else name
                self.display.draw_text(0, 16 + i * LINE_H, fit(option_label(label, i == self.main.selected)))
        elif self.view is View.MODE:
            for i, name in enumerate(MODE_ROWS):
                current = name.lower() == self.mode
                self.display.draw_text(0, 16 + i * LINE_H,
                                       fit(option_label(name, i == self.sub.selected, current)))
        elif self.view is View.ADDR:
            self.editors[self.field].draw(self.display, 16, self.sub.selected == 0)
            self.display.draw_text(0, 32, fit(option_label("Back", self.sub.selected == 1)))
        else:
            self.display.draw_text(0, 24, fit(self.result_text))
            self.display.draw_text(0, 48, "Press to return")

    def _open(self, view: View, rows: int, selected: int = 0) -> None:
        self.view = view
        self.sub = ScrollWindow(rows, wrap=True)
        self.sub.reset(selected=selected)
        self.redraw()

    def _back_to_main(self) -> None:
        self.view = View.MAIN
        self.field = None
        self.redraw()

    # ---------- input ----------
    def on_rotate(self, steps: int) -> Result:
        direction = 1 if steps > 0 else -1
        if self.view is View.MAIN:
            self.main.move(direction)
        elif self.view is View.MODE:
            self.sub.move(direction)
        elif self.view is View.ADDR:
            editor = self.editors[self.field]
            if not (self.sub.selected == 0 and editor.on_rotate(direction)):
                self.sub.move(direction)
                if self.sub.selected == 0:
                    editor.focus(from_end=direction < 0)
        else:
            return Action.CONTINUE
        self.render_body()
        return Action.CONTINUE

    def on_button(self) -> Result:
        if self.view is View.RESULT:
            self._back_to_main()
            return Action.CONTINUE
        if self.view is View.MODE:
            choice = MODE_ROWS[self.sub.selected]
            if choice != "Back":
                self.mode = choice.lower()
                logger.debug(f"Network mode set to {self.mode}")
            self._back_to_main()
            return Action.CONTINUE
        if self.view is View.ADDR:
            if self.sub.selected == 0:
                self.editors[self.field].on_button()
                self.render_body()
            else:
                self._back_to_main()
            return Action.CONTINUE

        choice = MAIN_ROWS[self.main.selected]
        if choice == "Mode":
            self._open(View.MODE, len(MODE_ROWS), 0 if self.mode == "static" else 1)
        elif choice in ADDR_FIELDS:
            self.field = choice
            self.editors[choice].reset()
            self._open(View.ADDR, 2)
        elif choice == "Apply":
            self.display.clear()
            self.display.draw_text(0, 24, "Applying...")
            self.apply()
            self.view = View.RESULT
            self.redraw()
        else:
            return Action.POP
        return Action.CONTINUE
