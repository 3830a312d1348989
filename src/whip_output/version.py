"""Version information for whip-output."""

APP_VERSION = "0.4.0"

__all__ = ["APP_VERSION"]
