"""
Pygame Gamepad Source
Polls SDL joysticks into GamepadSnapshots, tracking hot-plug events

Joystick state is read directly; only hot-plug events are let onto the SDL queue,
and each poll drains the whole queue so it can never fill up.
"""

import logging
import os
from typing import Dict

import pygame

from dvbridge.lib.gamepad.diff_engine import ButtonState, GamepadSnapshot

logger = logging.getLogger(__name__)

HOTPLUG_EVENTS = [pygame.JOYDEVICEADDED, pygame.JOYDEVICEREMOVED]


class PygameGamepadSource:
    """
    Joystick poller for headless use.
    Pads are keyed by SDL instance id, which stays stable across hot-plug.
    """

    def __init__(self):
        os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
        pygame.display.init()
        # Filter first so the added events for pads already present survive
        pygame.event.set_blocked(None)
        pygame.event.set_allowed(HOTPLUG_EVENTS)
        pygame.joystick.init()
        self._joysticks: Dict[int, "pygame.joystick.JoystickType"] = {}
        logger.info(f"Pygame joystick support ready ({pygame.joystick.get_count()} present)")

    def _handle_events(self):
        for event in pygame.event.get():
            if event.type == pygame.JOYDEVICEADDED:
                joystick = pygame.joystick.Joystick(event.device_index)
                self._joysticks[joystick.get_instance_id()] = joystick
                logger.info(f"Gamepad connected: {joystick.get_name()}")
            elif event.type == pygame.JOYDEVICEREMOVED:
                joystick = self._joysticks.pop(event.instance_id, None)
                if joystick is not None:
                    logger.info(f"Gamepad removed: #{event.instance_id}")

    def poll(self) -> Dict[int, GamepadSnapshot]:
        """Current snapshot of every connected pad"""
        pygame.event.pump()
        self._handle_events()

        pads = {}
        for index, joystick in self._joysticks.items():
            buttons = []
            for button in range(joystick.get_numbuttons()):
                pressed = bool(joystick.get_button(button))
                buttons.append(ButtonState(pressed=pressed, value=1.0 if pressed else 0.0))
            pads[index] = GamepadSnapshot(
                axes=tuple(joystick.get_axis(axis) for axis in range(joystick.get_numaxes())),
                buttons=tuple(buttons),
            )
        return pads

    def close(self):
        self._joysticks.clear()
        pygame.joystick.quit()
