import os
import re
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from ..config import LINE_H, MENU_SEPARATOR, MENU_START_Y, TEXT_COLS
from ..engine import Action, Result, ScreenModule, ScrollWindow, fit, option_label
from ..ip_editor import IpEditor, pad_ip, strip_ip
from ..process import ExternalProcess, which

logger = logging.getLogger(__name__)

# =====================================================
# CONFIG
# =====================================================
MODULE_ID = "throughputclient"
DEFAULT_IPERF3 = "/usr/bin/iperf3"
DEFAULT_PORT = 5201
RESULT_FILE = "/tmp/micropanel_iperf_result.txt"
AVAHI_FILE = "/tmp/micropanel_avahi_result.txt"
AVAHI_CMD = ["avahi-browse", "-p", "-t", "-r", "_iperf3._tcp"]
MAX_DISCOVERED = 5

PROTOCOLS = ["TCP", "UDP"]
DURATIONS = [10, 20, 30, 40, 50, 60]
BANDWIDTHS = [0, 10, 20, 50, 100, 500, 1000, 2000, 2500, 4500, 5000, 9500, 10000]
PARALLELS = [1, 4, 8, 16, 32]


class ClientState(Enum):
    START = "start"
    START_REVERSE = "start_reverse"
    PROTOCOL = "protocol"
    DURATION = "duration"
    BANDWIDTH = "bandwidth"
    PARALLEL = "parallel"
    SERVER_IP = "server_ip"
    BACK = "back"
    TESTING = "testing"
    RESULTS = "results"


MAIN_STATES = [
    ClientState.START,
    ClientState.START_REVERSE,
    ClientState.PROTOCOL,
    ClientState.DURATION,
    ClientState.BANDWIDTH,
    ClientState.PARALLEL,
    ClientState.SERVER_IP,
    ClientState.BACK,
]


class Submenu(Enum):
    PROTOCOL = "protocol"
    DURATION = "duration"
    BANDWIDTH = "bandwidth"
    PARALLEL = "parallel"
    SERVER_IP = "server_ip"
    DISCOVER = "discover"


# =====================================================
# FORMATTING / PARSING
# =====================================================
def format_bandwidth(mbps: float) -> str:
    if mbps < 1.0:
        return f"{mbps * 1000.0:g}Kbps"
    if mbps < 1000.0:
        return f"{mbps:.1f}Mbps"
    return f"{mbps / 1000.0:.2f}Gbps"


def bandwidth_label(value: int) -> str:
    """Short form for the main menu: Auto, 500M, 2.5G, 10G."""
    if value == 0:
        return "Auto"
    if value >= 1000:
        return f"{value / 1000.0:.1f}".rstrip("0").rstrip(".") + "G"
    return f"{value}M"


@dataclass
class IperfResult:
    protocol: str
    mbps: float = 0.0
    retransmits: int = 0
    jitter_ms: float = 0.0
    lost_percent: float = 0.0
    lost_packets: int = 0
    packets: int = 0


def _from_json(text: str, protocol: str) -> Optional[IperfResult]:
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("end"), dict):
        return None
    end = data["end"]
    section = end.get("sum") if protocol == "UDP" else end.get("sum_sent")
    if not isinstance(section, dict) or "bits_per_second" not in section:
        return None
    res = IperfResult(protocol, mbps=float(section["bits_per_second"]) / 1e6)
    if protocol == "UDP":
        res.jitter_ms = float(section.get("jitter_ms", 0.0))
        res.lost_percent = float(section.get("lost_percent", 0.0))
        res.lost_packets = int(section.get("lost_packets", 0))
        res.packets = int(section.get("packets", 0))
    else:
        res.retransmits = int(section.get("retransmits", 0))
    return res


_NUM = r"\s*:\s*(-?[0-9.]+(?:[eE][-+]?[0-9]+)?)"


def _scan(text: str, key: str, start: int) -> Optional[float]:
    m = re.compile(f'"{key}"{_NUM}').search(text, start)
    if not m:
        return None
    try:
        return float(m.group(1))
    except ValueError:
        return None


def _from_text(text: str, protocol: str) -> Optional[IperfResult]:
    if protocol == "UDP":
        end = text.find('"end"')
        start = text.find('"sum"', end) if end >= 0 else -1
    else:
        start = text.find('"sum_sent"')
    if start < 0:
        return None
    bps = _scan(text, "bits_per_second", start)
    if bps is None:
        return None
    res = IperfResult(protocol, mbps=bps / 1e6)
    if protocol == "UDP":
        res.jitter_ms = _scan(text, "jitter_ms", start) or 0.0
        res.lost_percent = _scan(text, "lost_percent", start) or 0.0
        res.lost_packets = int(_scan(text, "lost_packets", start) or 0)
        res.packets = int(_scan(text, "packets", start) or 0)
    else:
        res.retransmits = int(_scan(text, "retransmits", start) or 0)
    return res


def parse_iperf_output(text: str, protocol: str) -> Optional[IperfResult]:
    """iperf3 -J output to a result; falls back to a textual scan when the JSON is damaged."""
    res = _from_json(text, protocol)
    if res is None:
        res = _from_text(text, protocol)
    return res


@dataclass
class DiscoveredServer:
    ip: str
    port: int
    name: str


def _unescape(name: str) -> str:
    name = re.sub(r"\\(\d{3})", lambda m: chr(int(m.group(1))), name)
    return re.sub(r"\\(.)", r"\1", name)


def _looks_ipv4(text: str) -> bool:
    return "." in text and ":" not in text


def parse_avahi_output(text: str) -> List[DiscoveredServer]:
    seen = {}
    servers: List[DiscoveredServer] = []
    for line in text.splitlines():
        if ";IPv4;" not in line:
            continue
        fields = line.split(";")
        if len(fields) < 4:
            continue
        name = _unescape(fields[3])
        ip = ""
        if " " in name and _looks_ipv4(name.rsplit(" ", 1)[1]):
            ip = name.rsplit(" ", 1)[1]
        if not ip and fields[0] == "=" and len(fields) >= 8 and _looks_ipv4(fields[7]):
            ip = fields[7]
        if not ip:
            continue
        port = None
        if fields[0] == "=" and len(fields) >= 9:
            try:
                port = int(fields[8])
            except ValueError:
                logger.warning("Failed to parse discovered port, using default")
        if ip in seen:
            # the resolved "=" line follows the browse "+" line for the same service
            if port is not None:
                seen[ip].port = port
            continue
        seen[ip] = DiscoveredServer(ip, port or DEFAULT_PORT, name)
        servers.append(seen[ip])
        logger.debug(f"Discovered iperf3 server {ip}:{seen[ip].port} ({name})")
    return servers


def build_iperf_command(iperf3: str, ip: str, port: int, duration: int, protocol: str,
                        bandwidth: int, parallel: int, reverse: bool) -> List[str]:
    cmd = [iperf3, "-c", ip, "-p", str(port), "-t", str(duration), "-J"]
    if protocol == "UDP":
        cmd += ["-u", "-l", "9000", "-w", "1M"]
    if bandwidth > 0:
        cmd += ["-b", f"{bandwidth}m"]
    if parallel > 1:
        cmd += ["-P", str(parallel)]
    if reverse:
        cmd.append("-R")
    return cmd


# =====================================================
# SCREEN
# =====================================================
class ThroughputClient(ScreenModule):
    """
    iperf3 client: pick protocol, duration, bandwidth, stream count and
    server (typed or discovered over mDNS), run a forward or reverse test
    and show the summary.
    """

    id = MODULE_ID
    title = "Throughput Cli"

    def __init__(self, ctx, module_id=None, result_file: str = RESULT_FILE,
                 avahi_file: str = AVAHI_FILE):
        super().__init__(ctx, module_id)
        self.result_file = result_file
        self.avahi_file = avahi_file

        self.protocol = "TCP"
        self.duration = 10
        self.bandwidth = 0
        self.parallel = 1
        self.port = DEFAULT_PORT
        self.server_ip = "192.168.1.1"
        self._ip_loaded = False

        self.state = ClientState.START
        self.main = ScrollWindow(len(MAIN_STATES))
        self.submenu: Optional[Submenu] = None
        self.sub = ScrollWindow(0, wrap=True)
        self.editor = IpEditor(self.server_ip)

        self.test = ExternalProcess("iperf3")
        self.discovery = ExternalProcess("avahi-browse")
        self.reverse = False
        self.cancel_armed = False
        self.result: Optional[IperfResult] = None
        self.servers: List[DiscoveredServer] = []
        self.status = ""

    # ---------- settings ----------
    def _int_dep(self, key: str, current: int, valid: Callable[[int], bool]) -> int:
        raw = self.dep(key)
        if not raw:
            return current
        try:
            value = int(raw)
        except ValueError:
            logger.warning(f"Invalid {key} value in config: {raw!r}")
            return current
        return value if valid(value) else current

    def refresh_settings(self) -> None:
        self.port = self._int_dep("default_port", self.port, lambda v: 0 < v < 65536)
        protocol = self.dep("default_protocol").upper()
        if protocol in PROTOCOLS:
            self.protocol = protocol
        self.duration = self._int_dep("default_duration", self.duration, lambda v: v > 0)
        self.bandwidth = self._int_dep("default_bandwidth", self.bandwidth, lambda v: v >= 0)
        self.parallel = self._int_dep("default_parallel", self.parallel, lambda v: v > 0)
        if not self._ip_loaded:
            ip = self.dep("default_server_ip")
            if "." in ip:
                self.server_ip = strip_ip(ip)
            self._ip_loaded = True

    def iperf3_path(self) -> str:
        return (self.dep("iperf3_path")
                or self.deps.get("throughputserver", "iperf3_path")
                or DEFAULT_IPERF3)

    def iperf3_available(self) -> bool:
        path = self.iperf3_path()
        return os.access(path, os.X_OK) or which(path) is not None

    # ---------- lifecycle ----------
    def enter(self) -> None:
        logger.debug("ThroughputClient: entered")
        self.refresh_settings()
        self.state = ClientState.START
        self.main.reset(len(MAIN_STATES))
        self.submenu = None
        self.result = None
        self.servers = []
        self.status = ""
        self.cancel_armed = False
        self.editor.set_ip(self.server_ip)
        self.redraw()

    def exit(self) -> None:
        logger.debug("ThroughputClient: exiting")
        for proc in (self.test, self.discovery):
            if proc.running:
                proc.terminate()
        for path in (self.result_file, self.avahi_file):
            try:
                os.unlink(path)
            except OSError:
                pass

    def redraw(self) -> None:
        if self.state is ClientState.TESTING:
            self.render_testing()
        elif self.state is ClientState.RESULTS:
            self.render_results()
        elif self.submenu is Submenu.SERVER_IP:
            self.render_server_ip(full=True)
        elif self.submenu is Submenu.DISCOVER:
            self.render_discover()
        elif self.submenu is not None:
            self.render_options(full=True)
        else:
            self.render_main(full=True)

    # ---------- main menu ----------
    def _main_label(self, state: ClientState) -> str:
        if state is ClientState.START:
            return "Start Test"
        if state is ClientState.START_REVERSE:
            return "Reverse Test"
        if state is ClientState.PROTOCOL:
            return f"Proto: {self.protocol}"
        if state is ClientState.DURATION:
            return f"Duration: {self.duration}s"
        if state is ClientState.BANDWIDTH:
            return f"BW: {bandwidth_label(self.bandwidth)}"
        if state is ClientState.PARALLEL:
            return f"Parallel: {self.parallel}"
        if state is ClientState.SERVER_IP:
            return self.server_ip
        return "Back"

    def render_main(self, full: bool = False) -> None:
        if full:
            self.display.clear()
            self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        header = self.status or ("Client(Running)" if self.test.running else "Client(Ready)")
        self.display.draw_text(0, 0, fit(header))
        self._draw_rows([self._main_label(s) for s in MAIN_STATES], self.main)

    def _draw_rows(self, labels: List[str], window: ScrollWindow) -> None:
        rows = window.visible_range()
        for index in rows:
            text = option_label(labels[index], index == window.selected)
            self.display.draw_text(0, window.row_y(index), fit(text, TEXT_COLS - 1))
        for row in range(len(rows), window.visible):
            self.display.draw_text(0, MENU_START_Y + row * LINE_H, fit("", TEXT_COLS - 1))
        window.draw_arrows(self.display)

    # ---------- option submenus ----------
    def _options(self):
        if self.submenu is Submenu.PROTOCOL:
            return "   Protocol", PROTOCOLS, PROTOCOLS, self.protocol
        if self.submenu is Submenu.DURATION:
            return "   Duration", DURATIONS, [f"{d} sec" for d in DURATIONS], self.duration
        if self.submenu is Submenu.BANDWIDTH:
            labels = ["Auto (0)" if b == 0 else f"{b} Mbps" for b in BANDWIDTHS]
            return "   Bandwidth", BANDWIDTHS, labels, self.bandwidth
        return "   Parallel", PARALLELS, [str(p) for p in PARALLELS], self.parallel

    def open_options(self, submenu: Submenu) -> None:
        self.submenu = submenu
        _, values, _, current = self._options()
        selected = values.index(current) if current in values else 0
        self.sub = ScrollWindow(len(values) + 1, wrap=True)
        self.sub.reset(selected=selected)
        self.render_options(full=True)

    def render_options(self, full: bool = False) -> None:
        title, _, labels, _ = self._options()
        if full:
            self.display.clear()
            self.display.draw_text(0, 0, title)
            self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        self._draw_rows(labels + ["Back"], self.sub)

    def choose_option(self) -> None:
        _, values, _, _ = self._options()
        index = self.sub.selected
        if index < len(values):
            value = values[index]
            if self.submenu is Submenu.PROTOCOL:
                self.protocol = value
            elif self.submenu is Submenu.DURATION:
                self.duration = value
            elif self.submenu is Submenu.BANDWIDTH:
                self.bandwidth = value
            else:
                self.parallel = value
        self.back_to_main()

    def back_to_main(self, state: Optional[ClientState] = None) -> None:
        self.submenu = None
        if state is not None:
            self.state = state
            self.main.reset(selected=MAIN_STATES.index(state))
        self.render_main(full=True)

    # ---------- server ip ----------
    def open_server_ip(self) -> None:
        self.submenu = Submenu.SERVER_IP
        self.sub = ScrollWindow(3, wrap=True)
        self.editor.set_ip(self.server_ip)
        self.editor.reset()
        self.render_server_ip(full=True)

    def render_server_ip(self, full: bool = False) -> None:
        if full:
            self.display.clear()
            self.display.draw_text(0, 0, "   Server IP")
            self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        self.editor.draw(self.display, 16, self.sub.selected == 0)
        self.display.draw_text(0, 32, option_label("Auto-Discover", self.sub.selected == 1))
        self.display.draw_text(0, 40, option_label("Back", self.sub.selected == 2))
        self.display.draw_text(0, 56, fit(self.status))

    def _server_ip_rotate(self, direction: int) -> None:
        if self.sub.selected == 0 and self.editor.on_rotate(direction):
            self.server_ip = self.editor.normalized()
        else:
            self.sub.move(direction)
            if self.sub.selected == 0:
                self.editor.focus(from_end=direction < 0)
        self.render_server_ip()

    def _server_ip_button(self) -> None:
        if self.sub.selected == 0:
            self.editor.on_button()
            self.server_ip = self.editor.normalized()
            self.render_server_ip()
        elif self.sub.selected == 1:
            self.start_discovery()
        else:
            self.back_to_main(ClientState.SERVER_IP)

    # ---------- discovery ----------
    def start_discovery(self) -> None:
        if which("avahi-browse") is None:
            logger.error("ThroughputClient: avahi-browse not found")
            self.status = "Avahi not avail."
            self.render_server_ip()
            return
        self.servers = []
        self.submenu = Submenu.DISCOVER
        self.sub = ScrollWindow(1, wrap=True)
        logger.debug("ThroughputClient: starting avahi discovery")
        if not self.discovery.start(AVAHI_CMD, log_path=self.avahi_file, merge_stderr=False):
            self.status = "Discovery failed"
        self.render_discover()

    def check_discovery(self) -> None:
        rc = self.discovery.poll()
        if rc is None:
            return
        logger.debug(f"ThroughputClient: avahi-browse exited with {rc}")
        try:
            with open(self.avahi_file, errors="replace") as f:
                self.servers = parse_avahi_output(f.read())[:MAX_DISCOVERED]
        except OSError as e:
            logger.error(f"Failed to open discovery results: {e}")
            self.servers = []
        if self.servers:
            logger.info(f"ThroughputClient: found {len(self.servers)} iperf3 servers")
        else:
            logger.warning("ThroughputClient: no iperf3 servers found")
        self.sub = ScrollWindow(len(self.servers) + 1, wrap=True)
        self.render_discover()

    def render_discover(self) -> None:
        self.display.clear()
        if self.discovery.running:
            self.display.draw_text(0, 0, "   Discovering")
            self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
            self.display.draw_text(0, 16, "Scanning...")
            return
        if not self.servers:
            self.display.draw_text(0, 0, "   No Servers")
            self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
            self.display.draw_text(0, 16, "No iperf3 server")
            self.display.draw_text(0, 24, "found on network")
            self.display.draw_text(0, 48, ">Back")
            return
        self.display.draw_text(0, 0, "   Select Server")
        self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        self._draw_rows([s.ip for s in self.servers] + ["Back"], self.sub)

    def _discover_button(self) -> None:
        if self.discovery.running:
            return
        index = self.sub.selected
        if index < len(self.servers):
            server = self.servers[index]
            self.server_ip = server.ip
            self.port = server.port
            self.editor.set_ip(pad_ip(server.ip))
            logger.info(f"ThroughputClient: selected server {server.ip}:{server.port}")
            self.back_to_main(ClientState.SERVER_IP)
        else:
            self.open_server_ip()

    # ---------- test ----------
    def start_test(self, reverse: bool) -> None:
        if self.test.running:
            return
        self.reverse = reverse
        self.server_ip = strip_ip(self.server_ip)
        if not self.iperf3_available():
            logger.error("ThroughputClient: iperf3 not found")
            self.status = "iperf3 not found"
            self.render_main()
            return
        cmd = build_iperf_command(self.iperf3_path(), self.server_ip, self.port, self.duration,
                                  self.protocol, self.bandwidth, self.parallel, reverse)
        logger.debug(f"ThroughputClient: executing {' '.join(cmd)}")
        self.result = None
        self.status = ""
        self.cancel_armed = False
        if not self.test.start(cmd, log_path=self.result_file, merge_stderr=False):
            self.status = "Failed to start"
            self.render_main(full=True)
            return
        logger.info(f"ThroughputClient: started iperf3 client pid={self.test.pid}")
        self.state = ClientState.TESTING
        self.render_testing()

    def render_testing(self) -> None:
        self.display.clear()
        self.display.draw_text(0, 0, "  Reverse Test" if self.reverse else "    Testing")
        self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        self.display.draw_text(0, 16, f"Srv:{self.server_ip}")
        self.display.draw_text(0, 24, f"Proto  :{self.protocol}")
        self.display.draw_text(0, 32, f"Dur    :{self.duration}sec")
        rate = f"{self.bandwidth}Mbps" if self.bandwidth > 0 else "Auto"
        self.display.draw_text(0, 40, f"Rate   :{rate}")
        if self.cancel_armed:
            self.display.draw_text(0, 48, fit("Cancel test?"))
            self.display.draw_text(0, 56, fit("Press again"))
        else:
            self.display.draw_text(0, 48, f"Streams:{self.parallel}")
            self.display.draw_text(0, 56, "Please wait...")

    def check_test(self) -> None:
        rc = self.test.poll()
        if rc is None:
            return
        if rc != 0:
            logger.warning(f"ThroughputClient: iperf3 exited with error code {rc}")
            self.status = "Test failed"
            self.back_to_main(ClientState.START)
            return
        try:
            with open(self.result_file, errors="replace") as f:
                output = f.read()
        except OSError as e:
            logger.error(f"Failed to open test results: {e}")
            output = ""
        self.result = parse_iperf_output(output, self.protocol)
        if self.result is None:
            logger.warning("ThroughputClient: could not parse iperf3 output")
            self.status = "Test failed"
            self.back_to_main(ClientState.START)
            return
        logger.info(f"ThroughputClient: {self.protocol} result {self.result.mbps:.2f} Mbps")
        self.state = ClientState.RESULTS
        self.render_results()

    def cancel_test(self) -> None:
        logger.info("ThroughputClient: test cancelled")
        self.test.terminate()
        self.cancel_armed = False
        self.status = "Test cancelled"
        self.back_to_main(ClientState.START)

    def render_results(self) -> None:
        res = self.result
        self.display.clear()
        self.display.draw_text(0, 0, " Reverse Results" if self.reverse else "  Test Results")
        self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        self.display.draw_text(0, 16, f"Proto :{res.protocol}")
        self.display.draw_text(0, 24, f"Speed :{format_bandwidth(res.mbps)}")
        if res.protocol == "TCP":
            self.display.draw_text(0, 32, f"Retrns:{res.retransmits}")
        else:
            self.display.draw_text(0, 32, f"Loss  :{res.lost_percent:.4f}%")
            self.display.draw_text(0, 40, f"Jitter:{res.jitter_ms:.4f}ms")
        self.display.draw_text(0, 56, "Enter to continu")

    def update(self) -> Result:
        if self.test.running:
            self.check_test()
        if self.discovery.running:
            self.check_discovery()
        return Action.CONTINUE

    # ---------- input ----------
    def on_rotate(self, steps: int) -> Result:
        direction = 1 if steps > 0 else -1
        if self.state in (ClientState.TESTING, ClientState.RESULTS):
            return Action.CONTINUE
        if self.submenu is Submenu.SERVER_IP:
            self._server_ip_rotate(direction)
        elif self.submenu is Submenu.DISCOVER:
            if not self.discovery.running and self.servers and self.sub.move(direction):
                self.render_discover()
        elif self.submenu is not None:
            if self.sub.move(direction):
                self.render_options()
        else:
            self.status = ""
            old_first = self.main.first_visible
            if self.main.move(direction):
                self.state = MAIN_STATES[self.main.selected]
                self.render_main(full=self.main.first_visible != old_first)
        return Action.CONTINUE

    def on_button(self) -> Result:
        if self.state is ClientState.TESTING:
            if self.cancel_armed:
                self.cancel_test()
            else:
                self.cancel_armed = True
                self.render_testing()
            return Action.CONTINUE
        if self.state is ClientState.RESULTS:
            logger.debug("ThroughputClient: results dismissed")
            self.back_to_main(ClientState.START)
            return Action.CONTINUE

        if self.submenu is Submenu.SERVER_IP:
            self._server_ip_button()
        elif self.submenu is Submenu.DISCOVER:
            self._discover_button()
        elif self.submenu is not None:
            self.choose_option()
        elif self.state is ClientState.START:
            self.start_test(reverse=False)
        elif self.state is ClientState.START_REVERSE:
            self.start_test(reverse=True)
        elif self.state is ClientState.PROTOCOL:
            self.open_options(Submenu.PROTOCOL)
        elif self.state is ClientState.DURATION:
            self.open_options(Submenu.DURATION)
        elif self.state is ClientState.BANDWIDTH:
            self.open_options(Submenu.BANDWIDTH)
        elif self.state is ClientState.PARALLEL:
            self.open_options(Submenu.PARALLEL)
        elif self.state is ClientState.SERVER_IP:
            self.open_server_ip()
        else:
            return Action.POP
        return Action.CONTINUE
