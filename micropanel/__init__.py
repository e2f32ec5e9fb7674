"""MicroPanel: OLED + rotary encoder menu controller."""

__version__ = "2.0.0"
