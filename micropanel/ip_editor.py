import re
from typing import List

from .config import LINE_H, TEXT_COLS

DIGITS = 12
_BLANK_ROW = " " * TEXT_COLS


def pad_ip(ip: str) -> str:
    """'192.168.1.1' -> '192.168.001.001'. Invalid input gives 000.000.000.000."""
    parts = (ip or "").strip().split(".")
    if len(parts) != 4:
        return "000.000.000.000"
    octets = []
    for p in parts:
        try:
            v = int(p) if p else 0
        except ValueError:
            v = 0
        octets.append(max(0, min(255, v)))
    return ".".join(f"{o:03d}" for o in octets)


def strip_ip(ip: str) -> str:
    """'192.168.001.001' -> '192.168.1.1'."""
    return ".".join(str(int(p)) for p in pad_ip(ip).split("."))


def is_ipv4(text: str) -> bool:
    m = re.match(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$", text or "")
    return bool(m) and all(int(g) <= 255 for g in m.groups())


class IpEditor:
    """
    Octet-wise IPv4 editor. The cursor walks the 12 digits (dots skipped);
    a button press toggles editing, where rotation changes the digit under
    the cursor with carry into its octet.
    """

    def __init__(self, ip: str = "192.168.001.001"):
        self._octets: List[int] = [0, 0, 0, 0]
        self.cursor = 0
        self.editing = False
        self.set_ip(ip)

    def set_ip(self, ip: str) -> None:
        self._octets = [int(p) for p in pad_ip(ip).split(".")]

    def get_ip(self) -> str:
        return ".".join(f"{o:03d}" for o in self._octets)

    def normalized(self) -> str:
        return ".".join(str(o) for o in self._octets)

    def reset(self) -> None:
        self.cursor = 0
        self.editing = False

    def focus(self, from_end: bool = False) -> None:
        self.editing = False
        self.cursor = DIGITS - 1 if from_end else 0

    def on_button(self) -> bool:
        self.editing = not self.editing
        return True

    def on_rotate(self, direction: int) -> bool:
        """Returns False when the rotation moves off either end of the address."""
        if direction == 0:
            return True
        if self.editing:
            octet, pos = divmod(self.cursor, 3)
            delta = 10 ** (2 - pos)
            value = self._octets[octet] + (delta if direction > 0 else -delta)
            self._octets[octet] = max(0, min(255, value))
            return True

        nxt = self.cursor + (1 if direction > 0 else -1)
        if nxt < 0 or nxt >= DIGITS:
            return False
        self.cursor = nxt
        return True

    def cursor_column(self) -> int:
        octet, pos = divmod(self.cursor, 3)
        return octet * 4 + pos

    def draw(self, display, y: int, selected: bool) -> None:
        display.draw_text(0, y, (">" if selected else " ") + self.get_ip())
        marker = _BLANK_ROW
        if selected:
            col = 1 + self.cursor_column()
            mark = "^" if self.editing else "-"
            marker = (" " * col + mark).ljust(TEXT_COLS)
        display.draw_text(0, y + LINE_H, marker)
