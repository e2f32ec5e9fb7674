from micropanel.__main__ import build_parser, config_from_args
from micropanel.config import DEFAULT_INPUT_DEVICE, DEFAULT_SERIAL_DEVICE


def _cfg(*argv):
    return config_from_args(build_parser().parse_args(list(argv)))


def test_defaults_auto_detect(monkeypatch):
    monkeypatch.delenv("MICROPANEL_CONFIG", raising=False)
    cfg = _cfg()
    assert cfg.auto_detect
    assert cfg.input_device == DEFAULT_INPUT_DEVICE
    assert cfg.serial_device == DEFAULT_SERIAL_DEVICE
    assert cfg.config_file is None
    assert not cfg.power_save


def test_explicit_devices_disable_auto_detect():
    cfg = _cfg("-i", "/dev/input/event11", "-s", "/dev/ttyACM2")
    assert not cfg.auto_detect
    assert cfg.input_device == "/dev/input/event11"
    assert cfg.serial_device == "/dev/ttyACM2"
    assert _cfg("-s", "/dev/i2c-1", "-a").auto_detect


def test_gpio_and_i2c_mode():
    cfg = _cfg("-i", "gpio", "-s", "/dev/i2c-1")
    assert cfg.gpio_mode
    assert cfg.input_device == DEFAULT_INPUT_DEVICE
    assert cfg.i2c_mode


def test_config_flag_beats_environment(monkeypatch):
    monkeypatch.setenv("MICROPANEL_CONFIG", "/etc/env.json")
    assert _cfg().config_file == "/etc/env.json"
    assert _cfg("-c", "/etc/screens.json").config_file == "/etc/screens.json"


def test_flags():
    cfg = _cfg("-p", "-v", "--log-file", "/tmp/panel.log")
    assert cfg.power_save
    assert cfg.verbose
    assert cfg.log_file == "/tmp/panel.log"
