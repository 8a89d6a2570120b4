"""JengaHacks registration funnel with abuse control."""

__version__ = "0.3.0"
