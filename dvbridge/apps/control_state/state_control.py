"""
State-Driven Control Logic
switch(AS_STATE) / switch(AMI_STATE) driving logic with timed mission phases
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from dvbridge.lib.control.control_logic import ControlLogic, TORQUE_CALIBRATION
from dvbridge.lib.models.messages import ControlStatus

logger = logging.getLogger(__name__)


# ============================================================================
# STATE VALUES
# ============================================================================

AS_INIT = 0x0
AS_OFF = 0x1
AS_READY = 0x2
AS_DRIVING = 0x3

AMI_STATIC_A = 0x5
AMI_STATIC_B = 0x6
AMI_DYNAMIC = 0x7
# AMI values 0-4 are driven manually from the gamepad
AMI_MANUAL_MAX = 0x4


# ============================================================================
# MISSION PHASES
# ============================================================================

# (mission_status, steer, speed, torque, direction, estop)
Outputs = Tuple[int, int, int, int, int, int]

_SETTLE: Outputs = (1, 0, 0, TORQUE_CALIBRATION, 1, 0)
_STEER_RIGHT: Outputs = (1, 250, 0, TORQUE_CALIBRATION, 1, 0)
_STEER_LEFT: Outputs = (1, -250, 0, TORQUE_CALIBRATION, 1, 0)
_DRIVE: Outputs = (1, 0, 700, TORQUE_CALIBRATION, 1, 0)
_FINISHED: Outputs = (3, 0, 0, 0, 0, 0)
_ESTOP: Outputs = (1, 0, 0, 0, 0, 1)
_NEUTRAL: Outputs = (0, 0, 0, 0, 0, 0)


@dataclass(frozen=True)
class MissionPhase:
    """Active while mission_timer < until_ms; None marks the final phase"""
    until_ms: Optional[int]
    label: str
    outputs: Outputs


@dataclass(frozen=True)
class MissionSequence:
    active_case: str
    phases: Sequence[MissionPhase]

    def phase_at(self, mission_timer: int) -> MissionPhase:
        for phase in self.phases:
            if phase.until_ms is None or mission_timer < phase.until_ms:
                return phase
        return self.phases[-1]


STATIC_A = MissionSequence("AS_DRIVING_STATIC_A", (
    MissionPhase(1000, "Static A: settle", _SETTLE),
    MissionPhase(2000, "Static A: steer right", _STEER_RIGHT),
    MissionPhase(4000, "Static A: steer left", _STEER_LEFT),
    MissionPhase(5000, "Static A: center", _SETTLE),
    MissionPhase(7000, "Static A: drive", _DRIVE),
    MissionPhase(9000, "Static A: settle", _SETTLE),
    MissionPhase(None, "Static A: complete", _FINISHED),
))

STATIC_B = MissionSequence("AS_DRIVING_STATIC_B", (
    MissionPhase(1000, "Static B: settle", _SETTLE),
    MissionPhase(3000, "Static B: drive", _DRIVE),
    MissionPhase(None, "Static B: estop", _ESTOP),
))

DYNAMIC = MissionSequence("AS_DRIVING_DYNAMIC", (
    MissionPhase(1000, "Dynamic: settle", _SETTLE),
    MissionPhase(2000, "Dynamic: steer right", _STEER_RIGHT),
    MissionPhase(4000, "Dynamic: steer left", _STEER_LEFT),
    MissionPhase(5000, "Dynamic: center", _SETTLE),
    MissionPhase(7000, "Dynamic: drive phase 1", _DRIVE),
    MissionPhase(9000, "Dynamic: settle", _SETTLE),
    MissionPhase(11000, "Dynamic: drive phase 2", _DRIVE),
    MissionPhase(None, "Dynamic: estop", _ESTOP),
))

MISSION_SEQUENCES = {
    AMI_STATIC_A: STATIC_A,
    AMI_STATIC_B: STATIC_B,
    AMI_DYNAMIC: DYNAMIC,
}


# ============================================================================
# CONTROL LOGIC
# ============================================================================

class StateControl(ControlLogic):
    """
    Dispatches on the received AS_STATE every tick.

    - INIT/OFF/READY: outputs cleared, mission status mirrors AMI selection
    - DRIVING: manual (AMI 0-4), timed mission sequence (AMI 5-7),
      neutral outputs for any other AMI
    - anything else: fail-safe, outputs cleared and timer reset
    """

    name = "state"

    def should_tick_mission_timer(self) -> bool:
        return self.ctx.mission_state.as_state == AS_DRIVING

    def _case_name(self, as_state: int) -> str:
        return self.states.name_for(as_state) or f"AS_{as_state}"

    def refresh(self) -> ControlStatus:
        mission = self.ctx.mission_state
        as_state = mission.as_state

        if as_state in (AS_INIT, AS_OFF, AS_READY):
            status = self._evaluate_idle(as_state)
        elif as_state == AS_DRIVING:
            status = self._evaluate_driving()
        else:
            status = self._evaluate_unknown(as_state)
        return status

    def _evaluate_idle(self, as_state: int) -> ControlStatus:
        ami_active = self.ctx.mission_state.ami_state != 0
        self.set_outputs(1 if ami_active else 0, 0, 0, 0, 0, 0)
        self.ctx.mission_timer = 0
        active_case = self._case_name(as_state)
        return self.build_status(
            active_case=active_case,
            status_text="AMI active, mission status set" if ami_active else "AMI idle",
            label=f"{active_case} ({as_state})",
            ready_to_drive=as_state == AS_READY,
        )

    def _evaluate_driving(self) -> ControlStatus:
        ami_state = self.ctx.mission_state.ami_state
        sequence = MISSION_SEQUENCES.get(ami_state)

        if sequence is not None:
            phase = sequence.phase_at(self.ctx.mission_timer)
            self.set_outputs(*phase.outputs)
            active_case, status_text = sequence.active_case, phase.label

        elif ami_state <= AMI_MANUAL_MAX:
            gamepad = self.ctx.gamepad
            stop_pressed = gamepad.buttons_pressed[0]
            self.set_outputs(
                3 if stop_pressed else 1,
                self.axes.steer_request(gamepad.x_axis, gamepad.x2_axis),
                self.axes.speed_request(gamepad.y_axis),
                TORQUE_CALIBRATION,
                1,
                0,
                brake=self.axes.brake_request(gamepad.y_axis),
            )
            active_case = "AS_DRIVING_DEFAULT"
            status_text = "Manual mission stop request" if stop_pressed else "Manual driving request"

        else:
            self.set_outputs(*_NEUTRAL)
            active_case = f"AS_DRIVING_UNKNOWN_AMI_{ami_state}"
            status_text = "Unknown AMI_STATE, outputs neutral"

        return self.build_status(
            active_case=active_case,
            status_text=status_text,
            label=f"{active_case} ({AS_DRIVING})",
            ready_to_drive=True,
        )

    def _evaluate_unknown(self, as_state: int) -> ControlStatus:
        self.set_outputs(*_NEUTRAL)
        self.ctx.mission_timer = 0
        named = self.states.name_for(as_state)
        active_case = named if named else f"AS_UNKNOWN_{as_state}"
        return self.build_status(
            active_case=active_case,
            status_text="Unhandled AS_STATE, outputs cleared" if named else "Unknown AS_STATE",
            label=f"{active_case} ({as_state})",
            ready_to_drive=False,
        )
