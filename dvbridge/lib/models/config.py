"""
Bridge Configuration
Pydantic models for bridge_config.yaml plus normalisation with safe defaults
"""

import logging
import math
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dvbridge.lib.errors import ConfigValidationError
from dvbridge.lib.models.messages import ControlMode
from dvbridge.lib.protocol.slcan_protocol import CanId, parse_can_id, format_can_id
from dvbridge.lib.serial.serial_port import SUPPORTED_BAUD_RATES, DEFAULT_BAUD_RATE

logger = logging.getLogger(__name__)


# ============================================================================
# DEFAULTS
# ============================================================================

DEFAULT_SLCAN_BITRATE = "6"
DEFAULT_STATE_ENUM = {
    "AS_INIT": 0,
    "AS_OFF": 1,
    "AS_READY": 2,
    "AS_DRIVING": 3,
    "AS_FINISHED": 4,
    "AS_EMERGENCY": 5,
}
DEFAULT_STATE_SEQUENCE = list(DEFAULT_STATE_ENUM)

_BITRATE_CODE = re.compile(r"^[0-8]$")


# ============================================================================
# MODELS
# ============================================================================

class PeriodicFrameConfig(BaseModel):
    """One scheduled outgoing frame; immutable once loaded"""
    model_config = ConfigDict(frozen=True)

    can_id: int = Field(ge=0, le=0x7FF)
    interval_ms: int = Field(ge=1)

    def describe(self) -> str:
        return f"0x{self.can_id:X}@{self.interval_ms}ms"


DEFAULT_PERIODIC_FRAMES = [
    PeriodicFrameConfig(can_id=CanId.AI2VCU_STATUS, interval_ms=20),
    PeriodicFrameConfig(can_id=CanId.AI2VCU_DRIVE_R, interval_ms=20),
    PeriodicFrameConfig(can_id=CanId.AI2VCU_STEER, interval_ms=20),
    PeriodicFrameConfig(can_id=CanId.AI2VCU_BRAKE, interval_ms=20),
]


class SerialConfig(BaseModel):
    port: str = "/dev/ttyACM0"
    baudrate: int = DEFAULT_BAUD_RATE
    slcan_bitrate: str = DEFAULT_SLCAN_BITRATE


class CanConfig(BaseModel):
    periodic_frames: List[PeriodicFrameConfig] = Field(
        default_factory=lambda: list(DEFAULT_PERIODIC_FRAMES)
    )
    vcu2ai_status_id: int = CanId.VCU2AI_STATUS


class ManualControlConfig(BaseModel):
    """Axis mapping for manual driving"""
    deadband: float = 0.05
    steer_max: float = 300
    speed_max: float = 4000
    brake_max: float = 100


class ControlConfig(BaseModel):
    mode: ControlMode = ControlMode.STATE
    manual: ManualControlConfig = Field(default_factory=ManualControlConfig)


class StateMachineConfig(BaseModel):
    """Named AS states and their activation order"""
    states: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_STATE_ENUM))
    sequence: List[str] = Field(default_factory=lambda: list(DEFAULT_STATE_SEQUENCE))

    def name_for(self, value: int) -> Optional[str]:
        for name, state_value in self.states.items():
            if state_value == value:
                return name
        return None

    def describe(self) -> str:
        return ", ".join(f"{name}={self.states[name]}" for name in self.sequence)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"
    log_dir: Path = Path("/tmp/dvbridge")
    enable_console: bool = True
    enable_file: bool = False
    max_log_size_mb: int = 100
    backup_count: int = 5
    log_serial_traffic: bool = False


class ApiConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class BridgeConfig(BaseModel):
    serial: SerialConfig = Field(default_factory=SerialConfig)
    can: CanConfig = Field(default_factory=CanConfig)
    control: ControlConfig = Field(default_factory=ControlConfig)
    state_machine: StateMachineConfig = Field(default_factory=StateMachineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)


# ============================================================================
# STRICT PARSERS
# ============================================================================

def parse_interval_ms(value: Any) -> int:
    """Positive finite number, rounded and floored at 1 ms"""
    if isinstance(value, bool):
        raise ConfigValidationError(f"Invalid interval: {value!r}")
    try:
        interval = float(value)
    except (TypeError, ValueError):
        raise ConfigValidationError(f"Invalid interval: {value!r}")
    if not math.isfinite(interval) or interval <= 0:
        raise ConfigValidationError(f"Interval must be positive: {value!r}")
    return max(1, round(interval))


def parse_frame_config(raw: Any) -> PeriodicFrameConfig:
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"Frame entry must be a mapping: {raw!r}")
    can_id = parse_can_id(raw.get("id"))
    interval_ms = parse_interval_ms(raw.get("interval_ms", raw.get("intervalMs")))
    return PeriodicFrameConfig(can_id=can_id, interval_ms=interval_ms)


# ============================================================================
# NORMALISATION (invalid entries fall back to defaults)
# ============================================================================

def normalize_periodic_frames(raw: Any) -> List[PeriodicFrameConfig]:
    if not isinstance(raw, list) or not raw:
        return list(DEFAULT_PERIODIC_FRAMES)

    frames = []
    for index, entry in enumerate(raw):
        try:
            frames.append(parse_frame_config(entry))
        except ConfigValidationError as e:
            fallback = DEFAULT_PERIODIC_FRAMES[index] if index < len(DEFAULT_PERIODIC_FRAMES) else None
            logger.warning(
                f"Periodic frame #{index} invalid ({e}), "
                f"using {fallback.describe() if fallback else 'nothing'}"
            )
            if fallback is not None:
                frames.append(fallback)

    return frames or list(DEFAULT_PERIODIC_FRAMES)


def normalize_receive_id(raw: Any) -> int:
    if raw is None:
        return CanId.VCU2AI_STATUS
    try:
        return parse_can_id(raw)
    except ConfigValidationError as e:
        logger.warning(f"Receive filter id invalid ({e}), using {format_can_id(CanId.VCU2AI_STATUS)}")
        return CanId.VCU2AI_STATUS


def normalize_bitrate_code(raw: Any) -> str:
    value = str(raw if raw is not None else DEFAULT_SLCAN_BITRATE)
    if _BITRATE_CODE.match(value):
        return value
    logger.warning(f"SLCAN bitrate code {value!r} invalid, using S{DEFAULT_SLCAN_BITRATE}")
    return DEFAULT_SLCAN_BITRATE


def normalize_baudrate(raw: Any) -> int:
    try:
        baudrate = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_BAUD_RATE
    return baudrate if baudrate in SUPPORTED_BAUD_RATES else DEFAULT_BAUD_RATE


def normalize_state_enum(raw: Any) -> Dict[str, int]:
    states = dict(DEFAULT_STATE_ENUM)
    if not isinstance(raw, dict):
        return states

    for name in DEFAULT_STATE_ENUM:
        value = raw.get(name)
        if isinstance(value, bool) or not isinstance(value, int):
            continue
        if 0 <= value <= 255:
            states[name] = value
    return states


def normalize_state_sequence(raw: Any, states: Dict[str, int]) -> List[str]:
    if not isinstance(raw, list) or not raw:
        return list(DEFAULT_STATE_SEQUENCE)
    filtered = [name for name in raw if isinstance(name, str) and name in states]
    return filtered or list(DEFAULT_STATE_SEQUENCE)


def _non_negative(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number) or number == 0:
        return default
    return max(0.0, number)


def normalize_manual_control(raw: Any) -> ManualControlConfig:
    raw = raw if isinstance(raw, dict) else {}
    defaults = ManualControlConfig()
    deadband = _non_negative(raw.get("deadband"), defaults.deadband)
    return ManualControlConfig(
        deadband=deadband if deadband < 1 else defaults.deadband,
        steer_max=_non_negative(raw.get("steer_max"), defaults.steer_max),
        speed_max=_non_negative(raw.get("speed_max"), defaults.speed_max),
        brake_max=_non_negative(raw.get("brake_max"), defaults.brake_max),
    )


def _as_mapping(raw: Any) -> dict:
    return raw if isinstance(raw, dict) else {}


def normalize_section(model, raw: Any, section: str):
    """Build a flat settings section, keeping defaults for invalid fields"""
    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning(f"{section} section must be a mapping, using defaults")
        return model()

    valid = {}
    for name, value in raw.items():
        if name not in model.model_fields:
            logger.warning(f"Unknown {section} setting {name!r} ignored")
            continue
        try:
            model(**{name: value})
        except ValidationError as e:
            logger.warning(f"{section}.{name} invalid ({e.errors()[0]['msg']}), using default")
            continue
        valid[name] = value
    return model(**valid)


def normalize_control_mode(raw: Any) -> ControlMode:
    return ControlMode.RAW if raw == ControlMode.RAW.value else ControlMode.STATE


def build_config(raw: Optional[dict]) -> BridgeConfig:
    """Normalise a raw config mapping into a BridgeConfig"""
    raw = raw or {}
    serial_raw = _as_mapping(raw.get("serial"))
    can_raw = _as_mapping(raw.get("can"))
    control_raw = _as_mapping(raw.get("control"))
    sm_raw = _as_mapping(raw.get("state_machine"))

    states = normalize_state_enum(sm_raw.get("states"))

    return BridgeConfig(
        serial=SerialConfig(
            port=str(serial_raw.get("port", SerialConfig().port)),
            baudrate=normalize_baudrate(serial_raw.get("baudrate", DEFAULT_BAUD_RATE)),
            slcan_bitrate=normalize_bitrate_code(serial_raw.get("slcan_bitrate")),
        ),
        can=CanConfig(
            periodic_frames=normalize_periodic_frames(can_raw.get("periodic_frames")),
            vcu2ai_status_id=normalize_receive_id(can_raw.get("vcu2ai_status_id")),
        ),
        control=ControlConfig(
            mode=normalize_control_mode(control_raw.get("mode")),
            manual=normalize_manual_control(control_raw.get("manual")),
        ),
        state_machine=StateMachineConfig(
            states=states,
            sequence=normalize_state_sequence(sm_raw.get("sequence"), states),
        ),
        logging=normalize_section(LoggingConfig, raw.get("logging"), "logging"),
        api=normalize_section(ApiConfig, raw.get("api"), "api"),
    )


def load_config(path) -> BridgeConfig:
    """Load bridge_config.yaml; a missing file yields the defaults"""
    path = Path(path)
    if not path.exists():
        logger.warning(f"Config file {path} not found, using defaults")
        return build_config({})

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is not None and not isinstance(raw, dict):
        raise ConfigValidationError(f"Config root must be a mapping: {path}")
    return build_config(raw)
