"""Screen modules and the factory the menus launch them from."""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from ..config import MENU_TITLE, MenuConfig, ModuleDependencies
from ..engine import ScreenModule
from .brightness import Brightness
from .demo import Counter, Hello, InternetTest, SystemStats
from .generic_list import GenericList
from .menu import MAIN_MENU_ID, MenuModule
from .netinfo import NetInfo
from .netsettings import NetSettings
from .ping import PingScreen
from .textbox import TextBox
from .throughput_client import ThroughputClient
from .throughput_server import ThroughputServer
from .wifi import WiFi

logger = logging.getLogger(__name__)

BUILTINS = {
    "brightness": Brightness,
    "netinfo": NetInfo,
    "netsettings": NetSettings,
    "ping": PingScreen,
    "throughputserver": ThroughputServer,
    "throughputclient": ThroughputClient,
    "system": SystemStats,
    "internet": InternetTest,
    "wifi": WiFi,
    "hello": Hello,
    "counter": Counter,
    "textbox": TextBox,
}

# ids that older configs reference but this build does not ship
UNAVAILABLE = ("network", "speedtest")


@dataclass
class ModuleContext:
    """What every screen borrows from the supervisor."""

    display: object
    deps: ModuleDependencies
    storage: object
    menu_config: MenuConfig
    factory: Optional["ModuleFactory"] = None


class ModuleFactory:
    """
    Builds screen modules by id and caches them for the session, so a
    module keeps its state (server running, last settings) between visits.
    """

    def __init__(self, ctx: ModuleContext):
        self.ctx = ctx
        ctx.factory = self
        self._cache: Dict[str, ScreenModule] = {}

    def get(self, module_id: str) -> Optional[ScreenModule]:
        if module_id in self._cache:
            return self._cache[module_id]
        module = self._build(module_id)
        if module is not None:
            self._cache[module_id] = module
        return module

    def _build(self, module_id: str) -> Optional[ScreenModule]:
        cfg = self.ctx.menu_config
        spec = cfg.modules.get(module_id)

        if spec is not None:
            if spec.is_menu:
                return MenuModule(self.ctx, module_id, spec.title,
                                  cfg.submenus.get(module_id, []),
                                  top_level=spec.enabled)
            if spec.is_generic_list:
                return GenericList(self.ctx, module_id, spec.raw)
            if spec.is_textbox:
                return TextBox(self.ctx, module_id=module_id)

        cls = BUILTINS.get(module_id)
        if cls is None and spec is not None:
            cls = BUILTINS.get(spec.type)
        if cls is not None:
            # a type alias keeps its own id, e.g. {"id": "lab_ping", "type": "ping"}
            return cls(self.ctx, module_id=module_id)

        if module_id in UNAVAILABLE:
            logger.warning(f"Module {module_id} is not available in this build")
        else:
            logger.warning(f"Unknown module id: {module_id}")
        return None

    def main_menu(self) -> MenuModule:
        cfg = self.ctx.menu_config
        return MenuModule(self.ctx, MAIN_MENU_ID, MENU_TITLE, cfg.main_items,
                          top_level=True, is_root=True)

    def shutdown(self) -> None:
        for module_id, module in self._cache.items():
            stop = getattr(module, "shutdown", None)
            if stop is None:
                continue
            try:
                stop()
            except Exception:
                logger.exception(f"Error shutting down {module_id}")

    def clear(self) -> None:
        self._cache.clear()
