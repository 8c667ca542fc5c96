"""Audio streaming transport and codec layer for ESP32 recording devices."""

__version__ = "0.1.0"
