"""
State-Driven Control
switch(AS_STATE) driving logic with timed mission sequences
"""

from .state_control import StateControl

__all__ = ["StateControl"]
