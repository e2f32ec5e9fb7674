import sys
import signal
import logging
import argparse
import threading
from typing import List, Optional

from . import __version__
from .config import (
    DEFAULT_INPUT_DEVICE,
    DEFAULT_SERIAL_DEVICE,
    POWER_SAVE_TIMEOUT_SEC,
    AppConfig,
    resolve_config_path,
)
from .supervisor import Supervisor

logger = logging.getLogger("micropanel")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="micropanel",
        description=f"OLED menu control daemon v{__version__}",
        epilog="Example: micropanel -i /dev/input/event11 -s /dev/ttyACM0 -c /etc/screens.json -v",
    )
    parser.add_argument("-i", "--input", metavar="DEVICE",
                        help="input device (default: auto-detect); 'gpio' for GPIO buttons")
    parser.add_argument("-s", "--serial", metavar="DEVICE",
                        help="display device, /dev/ttyACM* or /dev/i2c-* (default: auto-detect)")
    parser.add_argument("-c", "--config", metavar="FILE",
                        help="JSON configuration file for screen modules")
    parser.add_argument("-a", "--auto-detect", action="store_true",
                        help="auto-detect the HMI device (default unless -i/-s given)")
    parser.add_argument("-p", "--power-save", action="store_true",
                        help=f"turn the display off after {POWER_SAVE_TIMEOUT_SEC}s of inactivity")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--log-file", metavar="FILE", help="also log to FILE")
    return parser


def config_from_args(args: argparse.Namespace) -> AppConfig:
    gpio_mode = args.input == "gpio"
    explicit = bool(args.input or args.serial)
    return AppConfig(
        input_device=args.input if args.input and not gpio_mode else DEFAULT_INPUT_DEVICE,
        serial_device=args.serial or DEFAULT_SERIAL_DEVICE,
        config_file=args.config or resolve_config_path(),
        auto_detect=args.auto_detect or not explicit,
        power_save=args.power_save,
        verbose=args.verbose,
        gpio_mode=gpio_mode,
        log_file=args.log_file,
    )


def setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            print(f"Could not open log file {log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = config_from_args(args)
    setup_logging(cfg.verbose, cfg.log_file)

    logger.info(f"MicroPanel v{__version__} starting")
    logger.debug(f"Auto-detection: {'ENABLED' if cfg.auto_detect else 'DISABLED'}")
    if cfg.gpio_mode:
        logger.info("GPIO multi-device mode enabled")
    if cfg.config_file:
        logger.info(f"Using configuration file: {cfg.config_file}")

    running = threading.Event()
    running.set()

    def _sig_handler(signo, _frame):
        logger.info(f"Received signal {signo}, shutting down")
        running.clear()

    signal.signal(signal.SIGINT, _sig_handler)
    signal.signal(signal.SIGTERM, _sig_handler)

    supervisor = Supervisor(cfg, running=running)
    code = supervisor.run()
    logger.info(f"MicroPanel exited with code {code}")
    return code


if __name__ == "__main__":
    sys.exit(main())
