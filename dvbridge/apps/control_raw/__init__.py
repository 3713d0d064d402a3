"""
Raw Manual Control
Latched gamepad control independent of received state
"""

from .raw_control import RawControl

__all__ = ["RawControl"]
