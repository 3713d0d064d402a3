"""
Gamepad snapshot differencing
"""

from .diff_engine import GamepadDiffEngine, GamepadEvent, GamepadSnapshot

__all__ = ["GamepadDiffEngine", "GamepadEvent", "GamepadSnapshot"]
