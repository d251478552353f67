"""Lab supply label extraction: queue, throttle, extract and export."""

__version__ = "0.1.0"
