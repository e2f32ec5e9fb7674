import os
import socket
import logging

import psutil

from ..config import LINE_H, MENU_SEPARATOR
from ..engine import Action, Result, ScreenModule, ScrollWindow, fit, option_label
from ..process import ExternalProcess, which

logger = logging.getLogger(__name__)

DEFAULT_IPERF3 = "/usr/bin/iperf3"
DEFAULT_PORT = 5201
SERVICE_TYPE = "_iperf3._tcp"
OPTIONS = ["Start", "Stop", "Back"]
ROW_SPACING = 10


def local_ipv4() -> str:
    """First non-loopback IPv4 address, or 'Unknown'."""
    try:
        addrs = psutil.net_if_addrs()
    except OSError as e:
        logger.error(f"Failed to get network interfaces: {e}")
        return "Unknown"
    for entries in addrs.values():
        for entry in entries:
            if entry.family == socket.AF_INET and not entry.address.startswith("127."):
                return entry.address
    logger.warning("Could not determine local IP address")
    return "Unknown"


class ThroughputServer(ScreenModule):
    """
    Starts and stops an iperf3 server (announced over mDNS when
    avahi-publish exists). Leaving the screen keeps the server running.
    """

    id = "throughputserver"
    title = "Throughput Srv"

    def __init__(self, ctx, module_id=None):
        super().__init__(ctx, module_id)
        self.port = DEFAULT_PORT
        self.local_ip = "Unknown"
        self.window = ScrollWindow(len(OPTIONS), wrap=True)
        self.server = ExternalProcess("iperf3-server")
        self.announce = ExternalProcess("avahi-publish")

    def refresh_settings(self) -> None:
        raw = self.dep("default_port") or self.deps.get("throughputtest", "default_port")
        if not raw:
            return
        try:
            port = int(raw)
        except ValueError:
            logger.warning(f"Failed to parse port value: {raw}")
            return
        if 0 < port < 65536 and port != self.port:
            logger.info(f"ThroughputServer: updating port from {self.port} to {port}")
            self.port = port

    def iperf3_path(self) -> str:
        return (self.dep("iperf3_path")
                or self.deps.get("throughputtest", "iperf3_path")
                or DEFAULT_IPERF3)

    @property
    def running(self) -> bool:
        if self.server.running and self.server.poll() is not None:
            logger.warning("ThroughputServer: iperf3 server exited on its own")
            self.announce.terminate()
        return self.server.running

    # ---------- lifecycle ----------
    def enter(self) -> None:
        self.refresh_settings()
        self.local_ip = local_ipv4()
        self.window.reset()
        self.redraw()

    def redraw(self) -> None:
        running = self.running
        self.display.clear()
        self.display.draw_text(0, 0, "Server(Running)" if running else "Server(Stopped)")
        self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        for i, name in enumerate(OPTIONS):
            current = (i == 0 and running) or (i == 1 and not running)
            self.display.draw_text(0, 16 + i * ROW_SPACING,
                                   option_label(name, i == self.window.selected, current))
        self.display.draw_text(0, 48, fit(self.local_ip))
        self.display.draw_text(0, 56, f"Port:{self.port}")

    def update(self) -> Result:
        was = self.server.running
        if was and not self.running:
            self.redraw()
        return Action.CONTINUE

    # ---------- server control ----------
    def start_server(self) -> bool:
        path = self.iperf3_path()
        if not (os.access(path, os.X_OK) or which(path)):
            logger.error(f"ThroughputServer: iperf3 not found at: {path}")
            return False
        cmd = [path, "-s", "-p", str(self.port), "--udp-counters-64bit"]
        if not self.server.start(cmd):
            return False
        logger.info(f"ThroughputServer: iperf3 server started on port {self.port} pid={self.server.pid}")
        if which("avahi-publish"):
            name = f"MicroPanel iperf3 {self.local_ip}"
            self.announce.start(["avahi-publish", "-s", name, SERVICE_TYPE, str(self.port)])
            logger.debug(f"ThroughputServer: announcing '{name}' pid={self.announce.pid}")
        return True

    def stop_server(self) -> None:
        self.announce.terminate()
        if self.server.running:
            logger.info("ThroughputServer: stopping iperf3 server")
            self.server.terminate()

    # ---------- input ----------
    def on_rotate(self, steps: int) -> Result:
        if self.window.move(steps):
            self.redraw()
        return Action.CONTINUE

    def on_button(self) -> Result:
        choice = OPTIONS[self.window.selected]
        if choice == "Start":
            if not self.running:
                self.start_server()
                self.redraw()
        elif choice == "Stop":
            if self.running:
                self.stop_server()
                self.redraw()
        else:
            return Action.POP
        return Action.CONTINUE

    def shutdown(self) -> None:
        """Stops the server for good; called when the application exits."""
        self.stop_server()
