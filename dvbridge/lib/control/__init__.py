"""
Control logic abstractions
"""

from .control_logic import ControlLogic, ManualAxisMapping

__all__ = ["ControlLogic", "ManualAxisMapping"]
