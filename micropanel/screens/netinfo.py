import time
import socket
import logging
from dataclasses import dataclass
from typing import List, Optional

import psutil

from ..config import LINE_H, MENU_SEPARATOR
from ..engine import Action, Result, ScreenModule, ScrollWindow, draw_centered, fit

logger = logging.getLogger(__name__)

REFRESH_INTERVAL = 5.0
ROW_COLS = 15


@dataclass
class InterfaceInfo:
    name: str
    link_up: bool = False
    ip: str = "<no ip>"
    mac: str = ""
    netmask: str = "<no netmask>"


def list_interfaces() -> List[InterfaceInfo]:
    """Non-loopback interfaces, in the order psutil reports them."""
    try:
        addrs = psutil.net_if_addrs()
        stats = psutil.net_if_stats()
    except OSError as e:
        logger.error(f"Failed to get interface addresses: {e}")
        return []

    out: List[InterfaceInfo] = []
    for name, entries in addrs.items():
        if name == "lo" or any(e.family == socket.AF_INET and e.address.startswith("127.")
                               for e in entries):
            continue
        st = stats.get(name)
        info = InterfaceInfo(name=name, link_up=bool(st and st.isup))
        for e in entries:
            if e.family == socket.AF_INET and info.ip == "<no ip>":
                info.ip = e.address
                info.netmask = e.netmask or info.netmask
            elif e.family == psutil.AF_LINK:
                info.mac = (e.address or "").replace(":", "").replace("-", "").upper()
        out.append(info)
    return out


class NetInfo(ScreenModule):
    """Interface list with link markers; selecting one shows its addresses."""

    id = "netinfo"
    title = "Net Info"

    def __init__(self, ctx, module_id=None, clock=time.monotonic, lister=list_interfaces):
        super().__init__(ctx, module_id)
        self._clock = clock
        self._lister = lister
        self.interfaces: List[InterfaceInfo] = []
        self.window = ScrollWindow()
        self.details: Optional[int] = None
        self.last_refresh = 0.0

    def refresh(self) -> None:
        old = self.window.selected
        name = self.interfaces[old].name if old < len(self.interfaces) else None
        self.interfaces = self._lister()
        index = next((i for i, f in enumerate(self.interfaces) if f.name == name), None)
        if index is None:
            # Back stays selected; a vanished interface falls back to the top
            index = len(self.interfaces) if name is None else 0
        self.window.reset(len(self.interfaces) + 1, index)
        self.last_refresh = self._clock()

    def enter(self) -> None:
        self.details = None
        self.interfaces = []
        self.window.reset(0)
        self.refresh()
        self.window.reset(selected=0)
        self.redraw()

    # ---------- drawing ----------
    def _label(self, index: int) -> str:
        if index == len(self.interfaces):
            name = "Back"
        else:
            iface = self.interfaces[index]
            name = iface.name + ("*" if iface.link_up else "")
        return fit((">" if index == self.window.selected else " ") + name, ROW_COLS)

    def render_list(self) -> None:
        rows = self.window.visible_range()
        for index in rows:
            self.display.draw_text(0, self.window.row_y(index), self._label(index))
        for row in range(len(rows), self.window.visible):
            self.display.draw_text(0, 16 + row * LINE_H, fit("", ROW_COLS))
        self.window.draw_arrows(self.display)

    def render_details(self) -> None:
        iface = self.interfaces[self.details]
        self.display.clear()
        draw_centered(self.display, 0, iface.name)
        self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        self.display.draw_text(0, 16, f"Link: {'Up' if iface.link_up else 'Down'}")
        draw_centered(self.display, 24, iface.ip)
        draw_centered(self.display, 32, iface.mac)
        draw_centered(self.display, 40, iface.netmask)
        self.display.draw_text(0, 48, "Press to return")

    def redraw(self) -> None:
        if self.details is not None:
            self.render_details()
            return
        self.display.clear()
        self.display.draw_text(0, 0, "   Net Info")
        self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        self.render_list()

    def update(self) -> Result:
        if self._clock() - self.last_refresh < REFRESH_INTERVAL:
            return Action.CONTINUE
        name = self.interfaces[self.details].name if self.details is not None else None
        self.refresh()
        if name is not None:
            self.details = next((i for i, f in enumerate(self.interfaces) if f.name == name), None)
        self.redraw()
        return Action.CONTINUE

    # ---------- input ----------
    def on_rotate(self, steps: int) -> Result:
        if self.details is not None:
            return Action.CONTINUE
        old, old_first = self.window.selected, self.window.first_visible
        if self.window.move(steps):
            if self.window.first_visible != old_first:
                self.render_list()
            else:
                self.display.draw_text(0, self.window.row_y(old), self._label(old))
                index = self.window.selected
                self.display.draw_text(0, self.window.row_y(index), self._label(index))
        return Action.CONTINUE

    def on_button(self) -> Result:
        if self.details is not None:
            self.details = None
            self.redraw()
            return Action.CONTINUE
        if self.window.selected >= len(self.interfaces):
            return Action.POP
        self.details = self.window.selected
        self.render_details()
        return Action.CONTINUE
