"""
Control Logic Interface
Abstract base for the state-driven and raw manual control variants
"""

import math
from abc import ABC, abstractmethod

from dvbridge.lib.models.config import ManualControlConfig, StateMachineConfig
from dvbridge.lib.models.context import SharedContext
from dvbridge.lib.models.messages import ControlStatus, ControlVector

# Torque request used whenever a variant asks for drive torque
TORQUE_CALIBRATION = 1950
MISSION_TIMER_TICK_MS = 10


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize_axis(value: float, deadband: float) -> float:
    """
    Clamp to [-1, 1], zero inside the dead-band, then rescale the remaining
    range back to [0, 1] keeping the sign.
    """
    try:
        axis = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(axis):
        return 0.0

    axis = max(-1.0, min(1.0, axis))
    magnitude = abs(axis)
    if magnitude <= deadband:
        return 0.0

    normalized = min(1.0, (magnitude - deadband) / (1.0 - deadband))
    return math.copysign(normalized, axis)


class ManualAxisMapping:
    """Gamepad axes to steer/speed/brake requests"""

    def __init__(self, config: ManualControlConfig):
        self.deadband = config.deadband
        self.steer_max = config.steer_max
        self.speed_max = config.speed_max
        self.brake_max = config.brake_max

    def steer_request(self, x_axis: float, x2_axis: float) -> int:
        # Stick right gives a negative steer request
        primary = normalize_axis(x_axis, self.deadband)
        secondary = normalize_axis(x2_axis, self.deadband)
        steer = primary if abs(primary) >= abs(secondary) else secondary
        return round_half_up(-steer * self.steer_max)

    def speed_request(self, y_axis: float) -> int:
        throttle = normalize_axis(-y_axis, self.deadband)
        if throttle <= 0:
            return 0
        return round_half_up(throttle * self.speed_max)

    def brake_request(self, y_axis: float) -> int:
        brake = normalize_axis(y_axis, self.deadband)
        if brake <= 0:
            return 0
        return round_half_up(brake * self.brake_max)


class ControlLogic(ABC):
    """
    Computes the outgoing ControlVector from shared context.

    Implementations:
    - StateControl: switch on received AS_STATE / AMI_STATE
    - RawControl: latched manual control straight from gamepad edges
    """

    def __init__(self, ctx: SharedContext, manual: ManualControlConfig,
                 states: StateMachineConfig):
        self.ctx = ctx
        self.axes = ManualAxisMapping(manual)
        self.states = states

    @property
    @abstractmethod
    def name(self) -> str:
        """Short label of the variant"""

    @abstractmethod
    def refresh(self) -> ControlStatus:
        """Evaluate once, write ctx.control and ctx.control_status"""

    @abstractmethod
    def should_tick_mission_timer(self) -> bool:
        """Whether the mission timer advances on the next tick"""

    def set_outputs(self, mission_status: int, steer: int, speed: int, torque: int,
                    direction: int, estop: int, brake: int = 0):
        self.ctx.control = ControlVector(
            mission_status=mission_status,
            steer_request=steer,
            speed_request=speed,
            torque_request=torque,
            brake_request=brake,
            direction_request=direction,
            estop_request=estop,
        )

    def build_status(self, active_case: str, status_text: str, label: str,
                     ready_to_drive: bool) -> ControlStatus:
        """Derive the status flags from the current outputs and store them"""
        control = self.ctx.control
        mission = self.ctx.mission_state
        status = ControlStatus(
            active_case=active_case,
            status_text=status_text,
            label=label,
            as_state=mission.as_state,
            ami_state=mission.ami_state,
            handshake=mission.handshake,
            go_signal=mission.go_signal,
            mission_status=control.mission_status,
            mission_timer=self.ctx.mission_timer,
            allow_torque=control.torque_request > 0 and control.estop_request == 0,
            ready_to_drive=ready_to_drive,
            finish_requested=control.mission_status == 3,
            emergency_active=control.estop_request != 0,
        )
        self.ctx.control_status = status
        return status
