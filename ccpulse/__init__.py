"""CCPulse: live activity monitor for coding-assistant conversation logs."""

__version__ = "0.1.0"
