from .core import Settings, load_settings, sanitize_dict

__all__ = ["Settings", "load_settings", "sanitize_dict"]
