"""
Raw Manual Control Logic
Latched manual control driven directly by gamepad button edges

Buttons (rising-edge press counters, so presses between ticks are not lost):
- 0: cycle mission status 0 -> 1 -> 2 -> 3 -> 0
- 1: toggle direction request 0/1
- 2: toggle estop request 0/1
- 3: toggle torque request 0/calibration
"""

import logging
from typing import Callable, List

from dvbridge.lib.control.control_logic import ControlLogic, TORQUE_CALIBRATION
from dvbridge.lib.models.messages import ControlStatus, ControlVector

logger = logging.getLogger(__name__)

EDGE_BUTTONS = 4


def next_mission_status(current: int) -> int:
    current = max(0, min(3, int(current or 0)))
    return 0 if current >= 3 else current + 1


def toggle_zero_one(current: int) -> int:
    return 0 if current == 1 else 1


def toggle_torque(current: int) -> int:
    return 0 if current == TORQUE_CALIBRATION else TORQUE_CALIBRATION


def apply_press_delta(previous_count: int, current_count: int, action: Callable[[], None]) -> int:
    """
    Invoke action once per counted press since previous_count.
    Returns the new watermark; it never moves backwards.
    """
    watermark = max(0, int(previous_count or 0))
    current = max(0, int(current_count or 0))
    while watermark < current:
        action()
        watermark += 1
    return watermark


class RawControl(ControlLogic):
    """Manual driving with latched mode buttons; ignores received AS state"""

    name = "raw"

    def __init__(self, ctx, manual, states):
        super().__init__(ctx, manual, states)
        # Presses that happened before this variant was selected are not replayed
        self.previous_counts: List[int] = [
            max(0, int(count)) for count in ctx.gamepad.press_counts[:EDGE_BUTTONS]
        ]
        self.previous_counts += [0] * (EDGE_BUTTONS - len(self.previous_counts))
        self._latched = ControlVector(
            mission_status=ctx.control.mission_status,
            direction_request=ctx.control.direction_request,
            estop_request=ctx.control.estop_request,
            torque_request=ctx.control.torque_request,
        )

    def should_tick_mission_timer(self) -> bool:
        return False

    def _cycle_mission(self):
        self._latched.mission_status = next_mission_status(self._latched.mission_status)

    def _toggle_direction(self):
        self._latched.direction_request = toggle_zero_one(self._latched.direction_request)

    def _toggle_estop(self):
        self._latched.estop_request = toggle_zero_one(self._latched.estop_request)

    def _toggle_torque(self):
        self._latched.torque_request = toggle_torque(self._latched.torque_request)

    def refresh(self) -> ControlStatus:
        gamepad = self.ctx.gamepad
        actions = (
            self._cycle_mission,
            self._toggle_direction,
            self._toggle_estop,
            self._toggle_torque,
        )

        for button, action in enumerate(actions):
            current = gamepad.press_counts[button] if button < len(gamepad.press_counts) else 0
            self.previous_counts[button] = apply_press_delta(
                self.previous_counts[button], current, action
            )

        latched = self._latched
        latched.mission_status = max(0, min(3, latched.mission_status))

        self.set_outputs(
            latched.mission_status,
            self.axes.steer_request(gamepad.x_axis, gamepad.x2_axis),
            self.axes.speed_request(gamepad.y_axis),
            latched.torque_request,
            latched.direction_request,
            latched.estop_request,
            brake=self.axes.brake_request(gamepad.y_axis),
        )
        self.ctx.mission_timer = 0

        return self.build_status(
            active_case="RAW_MANUAL",
            status_text="Raw manual latched control",
            label="RAW_MANUAL",
            ready_to_drive=latched.mission_status != 0,
        )
