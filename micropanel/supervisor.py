import time
import logging
import threading
from typing import Optional

from .backends import create_backend
from .config import (
    CMD_BUFFER_FLUSH_INTERVAL,
    INPUT_WAIT_MS,
    MAIN_LOOP_DELAY,
    PRESENCE_CHECK_SEC,
    AppConfig,
    MenuConfig,
    ModuleDependencies,
    data_file_for,
    default_menu_config,
    load_menu_config,
)
from .detector import DeviceDetector
from .display import Display
from .engine import MenuEngine
from .errors import ConfigError, WaitCancelled
from .events import InputEvent
from .inputs import InputSource, open_input_source
from .screens import ModuleContext, ModuleFactory
from .screens.brightness import stored_brightness
from .storage import PersistentStorage

logger = logging.getLogger(__name__)


class Supervisor:
    """
    Owns the devices, the Display and the MenuEngine, and runs the
    single-threaded main loop: input, module update, power save, buffer
    flush and hotplug reconnect.
    """

    def __init__(self, config: AppConfig, running: Optional[threading.Event] = None,
                 detector: Optional[DeviceDetector] = None, backend_factory=create_backend,
                 input_factory=open_input_source, clock=time.monotonic, sleep=time.sleep):
        self.config = config
        if running is None:
            running = threading.Event()
            running.set()
        self.running = running
        self.detector = detector if detector is not None else DeviceDetector()
        self._backend_factory = backend_factory
        self._input_factory = input_factory
        self._clock = clock
        self._sleep = sleep

        self.deps = ModuleDependencies()
        self.menu_config = self.load_menu()
        self.storage = PersistentStorage(self.data_file())

        self.engine = MenuEngine()
        self.display: Optional[Display] = None
        self.input: Optional[InputSource] = None
        self.factory: Optional[ModuleFactory] = None
        self.serial_path = config.serial_device
        self.exit_code = 0
        self._last_probe = 0.0

    @property
    def i2c_mode(self) -> bool:
        return self.serial_path.startswith("/dev/i2c-")

    # =====================================================
    # CONFIG
    # =====================================================
    def load_menu(self) -> MenuConfig:
        path = self.config.config_file
        if not path:
            logger.info("No config file given, using default menu")
            return default_menu_config()
        try:
            cfg = load_menu_config(path, self.deps)
        except ConfigError as e:
            logger.error(f"Failed to load config: {e}")
            logger.info("Falling back to default menu")
            return default_menu_config()
        logger.info(f"Loaded {len(cfg.modules)} modules from {path}")
        return cfg

    def data_file(self) -> str:
        return (self.config.persistent_data_file
                or self.menu_config.persistent_data_file
                or data_file_for(self.config.config_file))

    # =====================================================
    # DEVICES
    # =====================================================
    def find_devices(self):
        if not self.config.auto_detect:
            return self.config.input_device, self.config.serial_device
        found = self.detector.detect_with_fallback(self.config.input_device, self.config.serial_device)
        if found:
            return found
        try:
            if not self.detector.wait_for_connect(self.running.is_set):
                return None
        except WaitCancelled:
            logger.info("Device detection cancelled")
            return None
        return self.detector.detect()

    def open_devices(self, input_path: str, serial_path: str) -> bool:
        backend = self._backend_factory(serial_path)
        if not backend.open():
            logger.error(f"Failed to open display device {serial_path}")
            return False
        source = self._input_factory(input_path, self.config.gpio_mode)
        if source is None:
            logger.error(f"Failed to open input device {input_path}")
            backend.close()
            return False

        self.serial_path = serial_path
        self.input = source
        if self.display is None:
            self.display = Display(backend, clock=self._clock)
        else:
            self.display.attach(backend)
        logger.info(f"Devices open: input {input_path}, display {serial_path}")
        return True

    def close_devices(self) -> None:
        if self.input is not None:
            self.input.close()
            self.input = None
        if self.display is not None:
            self.display.backend.close()

    def start_monitor(self) -> None:
        if self.config.auto_detect and not self.i2c_mode:
            self.detector.start_removal_monitor()

    # =====================================================
    # LIFECYCLE
    # =====================================================
    def initialize(self) -> bool:
        found = self.find_devices()
        if not found:
            logger.error("HMI device not found")
            return False
        if not self.open_devices(*found):
            return False

        self.display.set_brightness(stored_brightness(self.storage))
        self.display.clear()
        self.display.draw_text(0, 0, "Menu System")
        self.display.draw_text(0, 10, "Initializing...")
        self.display.flush_buffer()

        ctx = ModuleContext(self.display, self.deps, self.storage, self.menu_config)
        self.factory = ModuleFactory(ctx)
        if self.config.power_save:
            self.display.enable_power_save(True)

        self.engine.set_root(self.factory.main_menu())
        self.start_monitor()
        return True

    def needs_reconnect(self) -> bool:
        if self.i2c_mode:
            return False
        if (self.detector.removed.is_set()
                or self.display.is_disconnected()
                or (self.input is not None and self.input.disconnected)):
            return True
        now = self._clock()
        if now - self._last_probe < PRESENCE_CHECK_SEC:
            return False
        self._last_probe = now
        if not self.display.backend.check_connection() or not self.input.check_connection():
            logger.warning("Device connection check failed")
            return True
        return False

    def reconnect(self) -> bool:
        logger.info("Device disconnected, waiting for reconnection")
        self.detector.stop_removal_monitor()
        self.engine.pop_all()
        self.close_devices()
        try:
            if not self.detector.wait_for_connect(self.running.is_set):
                return False
        except WaitCancelled:
            logger.info("Reconnect cancelled")
            return False
        found = self.detector.detect()
        if not found or not self.open_devices(*found):
            logger.error("Reconnect failed")
            return False

        self.display.clear()
        if self.config.power_save:
            self.display.enable_power_save(True)
        self.engine.set_root(self.factory.main_menu())
        self.start_monitor()
        self._last_probe = self._clock()
        logger.info("Device reconnected")
        return True

    def route_event(self, event: InputEvent) -> None:
        if self.display.update_activity_timestamp():
            # the event that wakes the panel is not delivered
            return
        self.engine.route(event)

    def tick(self, last_flush: float) -> float:
        if self.input.wait(INPUT_WAIT_MS) > 0 or self.input.pending:
            self.input.drain(self.route_event)
        self.engine.update()
        if self.display.power_save_enabled:
            self.display.check_power_save_timeout()
        now = self._clock()
        if not self.i2c_mode and now - last_flush > CMD_BUFFER_FLUSH_INTERVAL:
            self.display.flush_buffer()
            last_flush = now
        return last_flush

    def run(self) -> int:
        if not self.initialize():
            self.shutdown()
            return 1

        last_flush = self._clock()
        while self.running.is_set():
            if self.needs_reconnect():
                if not self.config.auto_detect:
                    logger.error("Display disconnected and auto-detect is off")
                    self.exit_code = 1
                    break
                if not self.reconnect():
                    if self.running.is_set():
                        self.exit_code = 1
                    break
                last_flush = self._clock()
                continue
            last_flush = self.tick(last_flush)
            self._sleep(MAIN_LOOP_DELAY)

        self.shutdown()
        return self.exit_code

    def stop(self) -> None:
        self.running.clear()

    def shutdown(self) -> None:
        logger.info("Shutting down")
        self.detector.stop_removal_monitor()
        self.engine.pop_all()
        if self.display is not None and self.display.backend.is_open():
            self.display.set_power(True)
            self.display.clear()
            self.display.draw_text(0, 0, "Rebooting.....")
            self.display.flush_buffer()
        if self.factory is not None:
            self.factory.shutdown()
            self.factory.clear()
        self.storage.close()
        self.close_devices()
