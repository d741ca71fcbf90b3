"""trafficlight - AI usage monitor with tiered status and enforced cool-down blocks."""

__version__ = "0.1.0"
