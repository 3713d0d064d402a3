"""
SLCAN Serial Transport
"""

from .serial_transport import SerialTransport

__all__ = ["SerialTransport"]
