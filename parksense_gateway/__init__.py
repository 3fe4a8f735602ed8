# parksense_gateway/__init__.py
"""ParkSense gateway: device protocol and parking-session engine."""

__version__ = "1.0.0"
