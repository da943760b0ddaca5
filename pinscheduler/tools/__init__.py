"""
External service clients for the pin scheduler.

- PinterestClient: Pinterest v5 API (publish pins, read pin analytics)
"""

from pinscheduler.tools.pinterest_client import PinterestClient

__all__ = [
    "PinterestClient",
]
