import os
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Dict, Any

from .errors import ConfigError

logger = logging.getLogger(__name__)


# =====================================================
# DISPLAY
# =====================================================
OLED_W, OLED_H = 128, 64
CHAR_W = 8
LINE_H = 8
TEXT_COLS = OLED_W // CHAR_W

MENU_TITLE = "MAIN MENU"
MENU_SEPARATOR = "----------------"
MENU_START_Y = 16
MENU_ITEM_SPACING = 8
MENU_VISIBLE_ITEMS = 6
SCROLL_MARK_X = 122

DEFAULT_BRIGHTNESS = 128
I2C_ADDR = 0x3C


# =====================================================
# SERIAL DISPLAY PROTOCOL
# =====================================================
SERIAL_BAUD = 115200

CMD_CLEAR = 0x01
CMD_DRAW_TEXT = 0x02
CMD_SET_CURSOR = 0x03
CMD_INVERT = 0x04
CMD_BRIGHTNESS = 0x05
CMD_PROGRESS_BAR = 0x06
CMD_POWER_MODE = 0x07

CMD_BUFFER_SIZE = 256
CMD_BUFFER_FLUSH_INTERVAL = 0.050


# =====================================================
# INPUT / LOOP TIMING
# =====================================================
KEY_ROTATE_STEPS = 5
ENCODER_RESET_GAP = 0.100
EVENT_PROCESS_THRESHOLD = 0.030
MAX_EVENTS_PER_ITERATION = 5
INPUT_WAIT_MS = 100
MAIN_LOOP_DELAY = 0.005
POWER_SAVE_TIMEOUT_SEC = 10

GPIO_BUTTON_PREFIX = "button@"
GPIO_ROTARY_PREFIX = "rotary@"


# =====================================================
# HMI DEVICE (USB)
# =====================================================
HMI_VENDOR_ID = "1209"
HMI_PRODUCT_ID = "0001"
HMI_MANUFACTURER = "DIY Projects"
HMI_PRODUCT = "Pico Encoder Display"

UDEV_POLL_MS = 100
HOTPLUG_SETTLE_SEC = 2.0
PRESENCE_CHECK_SEC = 5.0
MAX_CONNECT_ATTEMPTS = 30


# =====================================================
# DEFAULTS
# =====================================================
DEFAULT_INPUT_DEVICE = "/dev/input/event0"
DEFAULT_SERIAL_DEVICE = "/dev/ttyACM0"
DEFAULT_DATA_FILE = "/etc/micropanel_data.json"

# Built-in main menu used when no (valid) JSON config is given
DEFAULT_MAIN_MENU = [
    ("brightness", "Brightness"),
    ("netinfo", "Net Info"),
    ("netsettings", "Net Settings"),
    ("ping", "IP Ping"),
    ("throughputserver", "Throughput Srv"),
    ("throughputclient", "Throughput Cli"),
    ("system", "System Stats"),
    ("internet", "Test Internet"),
    ("wifi", "WiFi Settings"),
]


def resolve_config_path() -> Optional[str]:
    """
    Resolve the menu config path when -c is not given.
    Priority:
      1) MICROPANEL_CONFIG env var
      2) none (built-in default menu)
    """
    env = os.environ.get("MICROPANEL_CONFIG", "").strip()
    if env:
        return str(Path(env).expanduser())
    return None


def data_file_for(config_file: Optional[str]) -> str:
    """<config without extension>_data.json, or the system default."""
    if not config_file:
        return DEFAULT_DATA_FILE
    root, ext = os.path.splitext(config_file)
    return (root if ext else config_file) + "_data.json"


@dataclass
class AppConfig:
    input_device: str = DEFAULT_INPUT_DEVICE
    serial_device: str = DEFAULT_SERIAL_DEVICE
    config_file: Optional[str] = None
    auto_detect: bool = True
    power_save: bool = False
    verbose: bool = False
    gpio_mode: bool = False
    persistent_data_file: Optional[str] = None
    log_file: Optional[str] = None

    @property
    def i2c_mode(self) -> bool:
        return self.serial_device.startswith("/dev/i2c-")


# =====================================================
# MODULE DEPENDENCIES
# =====================================================
class ModuleDependencies:
    """
    Per-module string settings taken from the config's ``depends`` objects
    (script paths, default ports, refresh intervals...).
    """

    def __init__(self):
        self._deps: Dict[str, Dict[str, str]] = {}

    def load(self, modules: List[Dict[str, Any]]) -> None:
        for mod in modules:
            mod_id = mod.get("id")
            depends = mod.get("depends")
            if not isinstance(mod_id, str) or not isinstance(depends, dict):
                continue
            for key, value in depends.items():
                if not isinstance(value, str):
                    logger.warning(f"Ignoring non-string dependency {mod_id}.{key}")
                    continue
                self.add(mod_id, key, value)

    def add(self, module_id: str, key: str, value: str) -> None:
        self._deps.setdefault(module_id, {})[key] = value

    def get(self, module_id: str, key: str, default: str = "") -> str:
        return self._deps.get(module_id, {}).get(key, default)

    def has(self, module_id: str, key: str) -> bool:
        return key in self._deps.get(module_id, {})

    def check(self, module_id: str) -> bool:
        # Soft check: missing files are reported but never block a module.
        if "_menu" in module_id:
            return True
        for key, value in self._deps.get(module_id, {}).items():
            if value.startswith("http://") or value.startswith("https://"):
                continue
            if not value.startswith("/"):
                continue
            path = value.split()[0]
            if not os.path.exists(path):
                logger.warning(f"Dependency not satisfied: {path} for module {module_id} ({key})")
        return True


# =====================================================
# MENU CONFIG (JSON)
# =====================================================
@dataclass
class MenuEntry:
    module_id: str
    title: str


@dataclass
class ModuleSpec:
    id: str
    title: str
    type: str = ""
    enabled: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_menu(self) -> bool:
        return self.type == "menu"

    @property
    def is_generic_list(self) -> bool:
        return self.type in ("GenericList", "genericlist")

    @property
    def is_textbox(self) -> bool:
        return self.type == "textbox"


@dataclass
class MenuConfig:
    modules: Dict[str, ModuleSpec] = field(default_factory=dict)
    main_items: List[MenuEntry] = field(default_factory=list)
    submenus: Dict[str, List[MenuEntry]] = field(default_factory=dict)
    persistent_data_file: Optional[str] = None


def default_menu_config() -> MenuConfig:
    return MenuConfig(main_items=[MenuEntry(mid, title) for mid, title in DEFAULT_MAIN_MENU])


def parse_menu_config(data: Any, deps: ModuleDependencies) -> MenuConfig:
    if not isinstance(data, dict):
        raise ConfigError("config root is not an object")
    modules = data.get("modules")
    if not isinstance(modules, list):
        raise ConfigError("config doesn't contain a valid 'modules' array")

    cfg = MenuConfig()

    pdata = data.get("persistent_data")
    if isinstance(pdata, dict) and isinstance(pdata.get("file_path"), str):
        cfg.persistent_data_file = pdata["file_path"]

    deps.load([m for m in modules if isinstance(m, dict)])

    for mod in modules:
        if not isinstance(mod, dict) or "id" not in mod:
            logger.warning("Skipping module entry without id")
            continue
        spec = ModuleSpec(
            id=str(mod["id"]),
            title=str(mod.get("title", mod["id"])),
            type=str(mod.get("type", "")),
            enabled=bool(mod.get("enabled", False)),
            raw=mod,
        )
        cfg.modules[spec.id] = spec

        if spec.is_menu:
            items = []
            for sub in mod.get("submenus") or []:
                if not isinstance(sub, dict) or "id" not in sub or "title" not in sub:
                    logger.warning(f"Skipping submenu with missing field in {spec.id}")
                    continue
                items.append(MenuEntry(str(sub["id"]), str(sub["title"])))
            cfg.submenus[spec.id] = items

        if spec.enabled:
            cfg.main_items.append(MenuEntry(spec.id, spec.title))
            logger.debug(f"Added {spec.id} to main menu")

    options = data.get("options")
    if isinstance(options, dict):
        inv = options.get("invert_display")
        if isinstance(inv, dict) and inv.get("enabled") and isinstance(inv.get("title"), str):
            cfg.main_items.append(MenuEntry("invert_display", inv["title"]))

    return cfg


def load_menu_config(path: str, deps: ModuleDependencies) -> MenuConfig:
    try:
        data = json.loads(Path(path).read_text())
    except OSError as e:
        raise ConfigError(f"could not open config file {path}: {e}") from e
    except ValueError as e:
        raise ConfigError(f"error parsing JSON config {path}: {e}") from e
    return parse_menu_config(data, deps)
