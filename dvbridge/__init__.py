"""
DV Bridge
Gamepad and mission state machine to CAN over an SLCAN serial adapter
"""

__version__ = "1.0.0"
