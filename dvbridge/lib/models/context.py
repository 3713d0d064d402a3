"""
Shared Runtime Context
One instance per bridge, passed by reference to every component
"""

from dvbridge.lib.models.messages import (
    MissionState, ControlVector, ControlStatus, GamepadInput, GamepadEventData,
    LinkStatus, RxFrameStats, TxStats, SerialLoadStatus
)


class SharedContext:
    """
    Process-wide shared state with one writer per field.

    Writers:
    - mission_state, rx_stats, link: SerialTransport receive path / lifecycle
    - control, control_status, mission_timer: active ControlLogic (mission timer
      task advances mission_timer, the logic resets it; both run in that task)
    - gamepad, gamepad_event: GamepadService
    - tx: TxScheduler
    - serial_load: BridgeService load monitor task

    Readers may see stale values between ticks; no cross-field atomicity.
    """

    def __init__(self):
        self.mission_state = MissionState()
        self.control = ControlVector()
        self.control_status = ControlStatus()
        self.mission_timer = 0
        self.gamepad = GamepadInput()
        self.gamepad_event = GamepadEventData()
        self.link = LinkStatus()
        self.rx_stats = RxFrameStats()
        self.tx = TxStats()
        self.serial_load = SerialLoadStatus()
