"""
Gamepad Service
Polls the controller, feeds primary inputs and change events into shared state
"""

import logging
import math
from typing import Dict, List, Optional, Protocol

from dvbridge.lib.bus.message_bus import MessageBus, Topic
from dvbridge.lib.gamepad.diff_engine import GamepadDiffEngine, GamepadEvent, GamepadSnapshot
from dvbridge.lib.models.context import SharedContext
from dvbridge.lib.models.messages import GamepadInput
from dvbridge.lib.scheduler.async_loop import AsyncLoop

logger = logging.getLogger(__name__)

GAMEPAD_POLL_INTERVAL_MS = 10
DUAL_INPUT_THRESHOLD = 0.2
TRACKED_BUTTONS = 4


class GamepadSource(Protocol):
    def poll(self) -> Dict[int, GamepadSnapshot]: ...

    def close(self): ...


def _finite_axis(axes, index: int) -> float:
    if index >= len(axes):
        return 0.0
    try:
        value = float(axes[index])
    except (TypeError, ValueError):
        return 0.0
    return value if math.isfinite(value) else 0.0


class GamepadService:
    """
    Gamepad service.
    - Polls the source on a fixed cadence
    - Publishes primary pad axes/buttons to ctx.gamepad
    - Differences snapshots into events; the latest lands in ctx.gamepad_event
    """

    def __init__(self, ctx: SharedContext, source: GamepadSource,
                 bus: Optional[MessageBus] = None,
                 poll_interval_ms: int = GAMEPAD_POLL_INTERVAL_MS):
        self.ctx = ctx
        self.source = source
        self.bus = bus
        self.poll_interval_ms = poll_interval_ms
        self.engine = GamepadDiffEngine()
        self.state_text = "waiting"
        self._loop: Optional[AsyncLoop] = None

    def start(self):
        """Start polling"""
        if self._loop is not None:
            return
        self._loop = AsyncLoop(self.poll_interval_ms, self.process, name="gamepad_poll")
        self._loop.start()
        logger.info(f"Gamepad polling @ {self.poll_interval_ms}ms")

    def stop(self):
        """Stop polling and release the source"""
        if self._loop is not None:
            self._loop.stop()
            self._loop = None
        try:
            self.source.close()
        except Exception as e:
            logger.warning(f"Gamepad source close failed: {e}")
        logger.info("Gamepad service stopped")

    def process(self) -> List[GamepadEvent]:
        """One poll: update primary inputs, then emit change events"""
        pads = self.source.poll()
        events = self.engine.process(pads)
        self._update_primary_inputs(pads)

        for event in events:
            self.ctx.gamepad_event = event.to_event_data()
            self.state_text = self._describe(event)
            logger.debug(f"Gamepad event: {self.state_text}")
            if self.bus is not None:
                self.bus.publish(Topic.GAMEPAD_EVENT, self.ctx.gamepad_event)

        if not pads and not self.engine.snapshots:
            self.state_text = "waiting"

        return events

    def _update_primary_inputs(self, pads: Dict[int, GamepadSnapshot]):
        primary = pads[min(pads)] if pads else None
        axes = primary.axes if primary else ()
        buttons = primary.buttons if primary else ()

        x_axis = _finite_axis(axes, 0)
        x2_axis = _finite_axis(axes, 2)
        dual_input = (
            abs(x_axis) >= DUAL_INPUT_THRESHOLD
            and abs(x2_axis) >= DUAL_INPUT_THRESHOLD
            and math.copysign(1, x_axis) != math.copysign(1, x2_axis)
        )
        if dual_input and not self.ctx.gamepad.dual_input_active:
            logger.warning("Both steering sticks active in opposite directions")

        self.ctx.gamepad = GamepadInput(
            pad_count=len(pads),
            x_axis=x_axis,
            x2_axis=x2_axis,
            y_axis=_finite_axis(axes, 1),
            buttons_pressed=[
                bool(buttons[i].pressed) if i < len(buttons) else False
                for i in range(TRACKED_BUTTONS)
            ],
            press_counts=[self.engine.press_counts[i] for i in range(TRACKED_BUTTONS)],
            dual_input_active=dual_input,
        )

    @staticmethod
    def _describe(event: GamepadEvent) -> str:
        kind = event.event_type.name.lower()
        if event.control_index == 0xFF:
            return f"{kind} #{event.gamepad_index}"
        return f"{kind} {event.control_index} on #{event.gamepad_index}: {list(event.data)}"
