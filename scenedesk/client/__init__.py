from .live_updates import LiveUpdateClient

__all__ = ["LiveUpdateClient"]
