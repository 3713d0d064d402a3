"""
Bridge Message Type Definitions
Pydantic models for shared state, telemetry and API payloads
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from enum import Enum
from datetime import datetime


# ============================================================================
# ENUMS
# ============================================================================

class ControlMode(str, Enum):
    STATE = "state"
    RAW = "raw"


class StatusLevel(str, Enum):
    OK = "ok"
    WARN = "warn"
    IDLE = "idle"


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    NO_FRAMES = "no frames configured"
    RUNNING = "running"


# ============================================================================
# DECODED RX STATE
# ============================================================================

class MissionState(BaseModel):
    """Decoded VCU2AI status. Written only by the transport receive path."""
    handshake: bool = False
    go_signal: bool = False
    as_state: int = Field(default=0, ge=0, le=15, description="Autonomous system state")
    ami_state: int = Field(default=0, ge=0, le=15, description="Mission indicator state")


class RxFrame(BaseModel):
    """One decoded received frame, as published on the bus"""
    can_id: int
    data: List[int] = Field(default_factory=list)
    received_at: datetime = Field(default_factory=datetime.now)


class RxFrameStats(BaseModel):
    """Receive statistics for adapter validation"""
    total_frames: int = 0
    last_seen_id: Optional[int] = None
    last_seen_time: Optional[datetime] = None
    counts_by_id: Dict[str, int] = Field(default_factory=dict)
    last_status_frame: str = "-"


# ============================================================================
# CONTROL OUTPUTS
# ============================================================================

class ControlVector(BaseModel):
    """Outgoing control requests. Written only by the active control logic."""
    mission_status: int = 0
    steer_request: int = 0
    speed_request: int = 0
    torque_request: int = 0
    brake_request: int = 0
    direction_request: int = 0
    estop_request: int = 0


class ControlStatus(BaseModel):
    """Result of one control logic evaluation"""
    active_case: str = "AS_OFF"
    status_text: str = "Waiting for RX state"
    label: str = "-"
    as_state: int = 0
    ami_state: int = 0
    handshake: bool = False
    go_signal: bool = False
    mission_status: int = 0
    mission_timer: int = 0
    allow_torque: bool = False
    ready_to_drive: bool = False
    finish_requested: bool = False
    emergency_active: bool = False


# ============================================================================
# GAMEPAD
# ============================================================================

class GamepadInput(BaseModel):
    """Primary gamepad inputs. Written only by the gamepad service."""
    pad_count: int = 0
    x_axis: float = 0.0
    x2_axis: float = 0.0
    y_axis: float = 0.0
    buttons_pressed: List[bool] = Field(default_factory=lambda: [False] * 4)
    press_counts: List[int] = Field(default_factory=lambda: [0] * 4)
    dual_input_active: bool = False


class GamepadEventData(BaseModel):
    """Latest gamepad event, packed into bytes 0-6 of generic frames"""
    event_type: int = 0
    gamepad_index: int = 0
    control_index: int = 0
    data0: int = 0
    data1: int = 0
    data2: int = 0
    data3: int = 0

    def to_bytes(self) -> List[int]:
        return [
            self.event_type,
            self.gamepad_index,
            self.control_index,
            self.data0,
            self.data1,
            self.data2,
            self.data3,
        ]


# ============================================================================
# LINK / TELEMETRY
# ============================================================================

class LinkStatus(BaseModel):
    """Serial link status"""
    connected: bool = Field(default=False, description="Device and writer present")
    state_text: str = "ready to connect"
    level: StatusLevel = StatusLevel.WARN
    baudrate: int = 0
    adapter_version: str = "-"
    rx_config: str = "-"
    auto_stream: bool = False
    queue_depth: int = 0
    queue_drops: int = 0
    last_change: datetime = Field(default_factory=datetime.now)


class TxStats(BaseModel):
    """Periodic transmit statistics. Written only by the scheduler."""
    tx_count: int = 0
    last_tx_frame: str = "-"
    scheduler_state: SchedulerState = SchedulerState.STOPPED
    loop_count: int = 0


class SerialLoadStatus(BaseModel):
    """Serial byte-rate utilization estimate"""
    level: StatusLevel = StatusLevel.IDLE
    utilization: float = 0.0
    rx_bytes_per_sec: int = 0
    tx_bytes_per_sec: int = 0
    text: str = "idle"


class BridgeTelemetry(BaseModel):
    """Everything the UI layer needs in one snapshot"""
    control_mode: ControlMode
    link: LinkStatus
    tx: TxStats
    rx: RxFrameStats
    serial_load: SerialLoadStatus
    mission_state: MissionState
    control: ControlVector
    control_status: ControlStatus
    gamepad: GamepadInput
    gamepad_event: GamepadEventData
    mission_timer: int = 0
    timestamp: datetime = Field(default_factory=datetime.now)


# ============================================================================
# API MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """API health check response"""
    status: str
    link_status: LinkStatus
    uptime_sec: float = 0.0


class ConnectRequest(BaseModel):
    """API request to open the serial link"""
    baudrate: Optional[int] = None


class ControlModeRequest(BaseModel):
    """API request to select the control logic variant"""
    mode: ControlMode
