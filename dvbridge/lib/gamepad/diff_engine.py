"""
Gamepad Differencing Engine
Turns polled controller snapshots into discrete, byte-quantized change events
"""

import math
from collections import defaultdict
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Mapping, Sequence, Tuple

from dvbridge.lib.models.messages import GamepadEventData

AXIS_EPSILON = 0.04
BUTTON_EPSILON = 0.02
NO_CONTROL_INDEX = 0xFF


class GamepadEventType(IntEnum):
    CONNECT = 0x01
    DISCONNECT = 0x02
    BUTTON = 0x10
    AXIS = 0x20


@dataclass(frozen=True)
class ButtonState:
    pressed: bool = False
    value: float = 0.0


@dataclass(frozen=True)
class GamepadSnapshot:
    """Controller state at one poll"""
    axes: Tuple[float, ...] = ()
    buttons: Tuple[ButtonState, ...] = ()


@dataclass(frozen=True)
class GamepadEvent:
    event_type: GamepadEventType
    gamepad_index: int
    control_index: int
    data: Tuple[int, ...] = ()

    def to_event_data(self) -> GamepadEventData:
        data = [_to_byte(value) for value in self.data[:4]]
        data += [0] * (4 - len(data))
        return GamepadEventData(
            event_type=int(self.event_type),
            gamepad_index=_to_byte(self.gamepad_index),
            control_index=_to_byte(self.control_index),
            data0=data[0],
            data1=data[1],
            data2=data[2],
            data3=data[3],
        )


def _to_byte(value: int) -> int:
    return max(0, min(255, int(value)))


def _finite(value: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def axis_to_bytes(value: float) -> Tuple[int, int]:
    """Axis in [-1, 1] as int16 little-endian (lo, hi)"""
    clamped = max(-1.0, min(1.0, _finite(value)))
    scaled = int(math.floor(clamped * 32767 + 0.5))
    twos = scaled & 0xFFFF
    return twos & 0xFF, (twos >> 8) & 0xFF


class GamepadDiffEngine:
    """
    Keeps one snapshot per connected pad and emits events for what changed.

    - First sighting of a pad: CONNECT (no per-control events that poll)
    - Button: pressed flag flipped, or analog value moved >= BUTTON_EPSILON
    - Axis: moved >= AXIS_EPSILON
    - Pad missing from a poll: DISCONNECT and its snapshot is dropped
    Rising edges are counted per button index across all pads.
    """

    def __init__(self):
        self.snapshots: Dict[int, GamepadSnapshot] = {}
        self.press_counts: Dict[int, int] = defaultdict(int)

    def process(self, pads: Mapping[int, GamepadSnapshot]) -> List[GamepadEvent]:
        events: List[GamepadEvent] = []

        for index in sorted(pads):
            current = pads[index]
            previous = self.snapshots.get(index)

            if previous is None:
                events.append(GamepadEvent(
                    GamepadEventType.CONNECT, index, NO_CONTROL_INDEX,
                    (len(current.buttons), len(current.axes))
                ))
            else:
                events.extend(self._button_events(index, previous, current))
                events.extend(self._axis_events(index, previous, current))

            self.snapshots[index] = current

        for index in [i for i in self.snapshots if i not in pads]:
            previous = self.snapshots.pop(index)
            events.append(GamepadEvent(
                GamepadEventType.DISCONNECT, index, NO_CONTROL_INDEX,
                (len(previous.buttons), len(previous.axes))
            ))

        return events

    def _button_events(self, index: int, previous: GamepadSnapshot,
                       current: GamepadSnapshot) -> List[GamepadEvent]:
        events = []
        for button_index, button in enumerate(current.buttons):
            before = _item(previous.buttons, button_index, ButtonState())
            value = _finite(button.value)
            pressed_changed = button.pressed != before.pressed
            analog_changed = abs(value - _finite(before.value)) >= BUTTON_EPSILON
            if not (pressed_changed or analog_changed):
                continue

            if button.pressed and not before.pressed:
                self.press_counts[button_index] += 1

            events.append(GamepadEvent(
                GamepadEventType.BUTTON, index, button_index,
                (1 if button.pressed else 0, int(math.floor(value * 255 + 0.5)))
            ))
        return events

    def _axis_events(self, index: int, previous: GamepadSnapshot,
                     current: GamepadSnapshot) -> List[GamepadEvent]:
        events = []
        for axis_index, value in enumerate(current.axes):
            before = _item(previous.axes, axis_index, 0.0)
            if abs(_finite(value) - _finite(before)) < AXIS_EPSILON:
                continue
            events.append(GamepadEvent(
                GamepadEventType.AXIS, index, axis_index, axis_to_bytes(value)
            ))
        return events


def _item(items: Sequence, index: int, default):
    return items[index] if index < len(items) else default
