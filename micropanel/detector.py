import os
import re
import glob
import time
import logging
import threading
from typing import Callable, Optional, Tuple

import pyudev
from evdev import InputDevice, ecodes

from .config import (
    HMI_MANUFACTURER,
    HMI_PRODUCT,
    HMI_PRODUCT_ID,
    HMI_VENDOR_ID,
    HOTPLUG_SETTLE_SEC,
    MAX_CONNECT_ATTEMPTS,
    PRESENCE_CHECK_SEC,
    UDEV_POLL_MS,
)
from .errors import WaitCancelled
from .process import run_capture

logger = logging.getLogger(__name__)

DevicePair = Tuple[str, str]

DMESG_INPUT_RE = re.compile(rf"{HMI_MANUFACTURER} {HMI_PRODUCT}.*?(?:/dev/input/)?(event\d+)")
DMESG_TTY_RE = re.compile(r"(ttyACM\d+)")


def _usb_monitor(context):
    monitor = pyudev.Monitor.from_netlink(context)
    monitor.filter_by(subsystem="usb", device_type="usb_device")
    monitor.start()
    return monitor


def _dmesg() -> str:
    return run_capture(["dmesg"], timeout=5.0)


def _attr(dev, name: str) -> str:
    try:
        return dev.attributes.asstring(name)
    except (KeyError, UnicodeDecodeError, AttributeError):
        return ""


def _ids(dev) -> Tuple[str, str]:
    vendor, product = _attr(dev, "idVendor"), _attr(dev, "idProduct")
    if vendor and product:
        return vendor, product
    # remove events carry only properties; PRODUCT is "1209/1/100" style hex
    props = getattr(dev, "properties", {}) or {}
    vendor = props.get("ID_VENDOR_ID", "")
    product = props.get("ID_MODEL_ID", "")
    if not (vendor and product) and props.get("PRODUCT"):
        parts = props["PRODUCT"].split("/")
        if len(parts) >= 2:
            vendor, product = parts[0].zfill(4), parts[1].zfill(4)
    return vendor.lower(), product.lower()


def is_hmi(dev) -> bool:
    return _ids(dev) == (HMI_VENDOR_ID, HMI_PRODUCT_ID)


class DeviceDetector:
    """
    Finds the USB HMI (rotary encoder + serial display on one Pico) and
    watches for it to come and go.

    Enumeration uses pyudev; the event/tty nodes fall back to dmesg and to
    plain globbing so a half-populated udev database still works.
    """

    def __init__(self, context=None, monitor_factory=_usb_monitor, glob_fn=glob.glob,
                 dmesg: Callable[[], str] = _dmesg, open_device=InputDevice,
                 exists=os.path.exists, clock=time.monotonic, sleep=time.sleep):
        self._context = context
        self._monitor_factory = monitor_factory
        self._glob = glob_fn
        self._dmesg = dmesg
        self._open_device = open_device
        self._exists = exists
        self._clock = clock
        self._sleep = sleep

        self.removed = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def context(self):
        if self._context is None:
            self._context = pyudev.Context()
        return self._context

    # =====================================================
    # ENUMERATION
    # =====================================================
    def find_hmi_usb(self):
        """The HMI's usb_device, preferring one whose strings match too."""
        try:
            candidates = [d for d in self.context.list_devices(subsystem="usb", DEVTYPE="usb_device")
                          if is_hmi(d)]
        except (OSError, pyudev.DeviceNotFoundError) as e:
            logger.debug(f"USB enumeration failed: {e}")
            return None
        for dev in candidates:
            if (HMI_MANUFACTURER in _attr(dev, "manufacturer")
                    and HMI_PRODUCT in _attr(dev, "product")):
                return dev
        return candidates[0] if candidates else None

    def is_present(self) -> bool:
        return self.find_hmi_usb() is not None

    def _input_from_children(self, usb) -> Optional[str]:
        try:
            for child in usb.children:
                node = child.device_node or ""
                if child.subsystem == "input" and node.startswith("/dev/input/event"):
                    return node
        except (OSError, pyudev.DeviceNotFoundError) as e:
            logger.debug(f"Walking HMI children failed: {e}")
        return None

    def _input_from_tree(self) -> Optional[str]:
        try:
            for dev in self.context.list_devices(subsystem="input"):
                node = dev.device_node or ""
                if not node.startswith("/dev/input/event"):
                    continue
                parent = dev.parent
                name = dev.properties.get("NAME") or (parent.properties.get("NAME") if parent else "") or ""
                if HMI_PRODUCT in name or "Pico Encoder" in name:
                    return node
                usb = dev.find_parent("usb", "usb_device")
                if usb is not None and is_hmi(usb):
                    return node
        except (OSError, pyudev.DeviceNotFoundError) as e:
            logger.debug(f"Input device traversal failed: {e}")
        return None

    def _input_from_dmesg(self) -> Optional[str]:
        matches = DMESG_INPUT_RE.findall(self._dmesg())
        return f"/dev/input/{matches[-1]}" if matches else None

    def _input_by_capability(self) -> Optional[str]:
        for path in sorted(self._glob("/dev/input/event*")):
            try:
                dev = self._open_device(path)
            except OSError:
                continue
            try:
                caps = dev.capabilities()
            finally:
                dev.close()
            if ecodes.REL_X in caps.get(ecodes.EV_REL, []):
                return path
        return None

    def find_input_device(self, usb) -> Optional[str]:
        for finder in (lambda: self._input_from_children(usb), self._input_from_tree,
                       self._input_from_dmesg, self._input_by_capability):
            path = finder()
            if path:
                return path
        return None

    def find_serial_device(self, usb) -> Optional[str]:
        try:
            for child in usb.children:
                node = child.device_node or ""
                if child.subsystem == "tty" and node.startswith("/dev/ttyACM"):
                    return node
        except (OSError, pyudev.DeviceNotFoundError) as e:
            logger.debug(f"Walking HMI tty children failed: {e}")
        matches = DMESG_TTY_RE.findall(self._dmesg())
        if matches:
            return f"/dev/{matches[-1]}"
        ports = sorted(self._glob("/dev/ttyACM*"))
        return ports[0] if ports else None

    def detect(self) -> Optional[DevicePair]:
        usb = self.find_hmi_usb()
        if usb is None:
            logger.debug(f"No HMI device with VID:PID {HMI_VENDOR_ID}:{HMI_PRODUCT_ID}")
            return None
        input_path = self.find_input_device(usb)
        serial_path = self.find_serial_device(usb)
        if not input_path or not serial_path:
            logger.warning(f"HMI present but nodes incomplete (input={input_path}, serial={serial_path})")
            return None
        logger.info(f"Found HMI: input {input_path}, display {serial_path}")
        return input_path, serial_path

    def detect_with_fallback(self, fallback_input: str, fallback_serial: str) -> Optional[DevicePair]:
        found = self.detect()
        if found:
            return found
        if fallback_serial.startswith("/dev/i2c-") and self._exists(fallback_serial):
            logger.info(f"HMI not found, using I2C display {fallback_serial}")
            return fallback_input, fallback_serial
        return None

    # =====================================================
    # HOTPLUG
    # =====================================================
    def wait_for_connect(self, is_running: Callable[[], bool]) -> bool:
        """
        Block until the HMI shows up. Returns False after MAX_CONNECT_ATTEMPTS
        periodic checks; raises WaitCancelled once is_running() is false.
        """
        if self.detect():
            return True
        try:
            monitor = self._monitor_factory(self.context)
        except OSError as e:
            logger.warning(f"udev monitor unavailable, presence polling only: {e}")
            monitor = None
        logger.info("Waiting for HMI device to be connected...")
        attempts = 0
        last_check = self._clock()

        while True:
            if not is_running():
                raise WaitCancelled("device wait cancelled")

            if monitor is None:
                self._sleep(UDEV_POLL_MS / 1000)
                dev = None
            else:
                dev = monitor.poll(timeout=UDEV_POLL_MS / 1000)
            if dev is not None and dev.action == "add" and is_hmi(dev):
                logger.info("HMI USB device attached, waiting for nodes")
                self._sleep(HOTPLUG_SETTLE_SEC)
                if self.detect():
                    return True

            now = self._clock()
            if now - last_check >= PRESENCE_CHECK_SEC:
                last_check = now
                attempts += 1
                logger.debug(f"Waiting for device... Attempt {attempts} of {MAX_CONNECT_ATTEMPTS}")
                if self.detect():
                    return True
                if attempts >= MAX_CONNECT_ATTEMPTS:
                    logger.warning(f"Gave up waiting for device after {attempts} attempts")
                    return False

    def start_removal_monitor(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self.removed.clear()
        self._stop.clear()
        self._thread = threading.Thread(target=self._monitor_loop, name="hmi_removal", daemon=True)
        self._thread.start()

    def stop_removal_monitor(self, timeout: float = 1.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None

    def _monitor_loop(self) -> None:
        try:
            monitor = self._monitor_factory(self.context)
        except OSError as e:
            logger.warning(f"udev monitor unavailable, presence polling only: {e}")
            monitor = None

        last_check = self._clock()
        while not self._stop.is_set():
            if self._clock() - last_check >= PRESENCE_CHECK_SEC:
                last_check = self._clock()
                if not self.is_present():
                    logger.info("Device disconnected (periodic check)")
                    self.removed.set()
                    return
            if monitor is None:
                self._stop.wait(UDEV_POLL_MS / 1000)
                continue
            dev = monitor.poll(timeout=UDEV_POLL_MS / 1000)
            if dev is not None and dev.action == "remove" and is_hmi(dev):
                logger.info("HMI USB device removed")
                self.removed.set()
                return
        logger.debug("Removal monitor exiting")
