class MicroPanelError(Exception):
    pass


class ConfigError(MicroPanelError):
    """Menu configuration could not be loaded or is malformed."""


class WaitCancelled(MicroPanelError):
    """Raised when a hotplug wait is interrupted by shutdown."""
