"""
Periodic TX Scheduler
One drift-corrected loop per configured outgoing CAN frame
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from dvbridge.lib.models.config import PeriodicFrameConfig
from dvbridge.lib.models.context import SharedContext
from dvbridge.lib.models.messages import SchedulerState
from dvbridge.lib.protocol.slcan_protocol import format_can_id, format_payload, pack_periodic_frame
from dvbridge.lib.scheduler.async_loop import AsyncLoop

logger = logging.getLogger(__name__)


class TxScheduler:
    """
    Periodic transmitter.
    - Each frame config gets its own AsyncLoop at its own interval
    - A firing while disconnected is skipped silently
    - Payloads are built from the shared context at firing time
    """

    def __init__(self, ctx: SharedContext, transport):
        self.ctx = ctx
        self.transport = transport
        self.frames: List[PeriodicFrameConfig] = []
        self._loops: List[AsyncLoop] = []

    @property
    def running(self) -> bool:
        return bool(self._loops)

    def start(self, frames: Sequence[PeriodicFrameConfig]):
        """Replace any running loops with one per frame"""
        self.stop()
        self.frames = list(frames)

        if not self.transport.is_connected():
            return

        if not self.frames:
            self._set_state(SchedulerState.NO_FRAMES)
            logger.warning("TX scheduler: no frames configured")
            return

        for frame in self.frames:
            loop = AsyncLoop(
                frame.interval_ms,
                lambda frame=frame: self.send_periodic_frame(frame),
                name=f"tx:{format_can_id(frame.can_id)}",
            )
            loop.start()
            self._loops.append(loop)

        self._set_state(SchedulerState.RUNNING)
        logger.info(
            f"TX scheduler running ({len(self._loops)} loops: "
            f"{', '.join(frame.describe() for frame in self.frames)})"
        )

    def stop(self):
        """Stop every loop; takes effect before their next firing"""
        was_running = bool(self._loops)
        for loop in self._loops:
            loop.stop()
        self._loops = []
        self._set_state(SchedulerState.STOPPED)
        if was_running:
            logger.info("TX scheduler stopped")

    def reset_counters(self):
        self.ctx.tx = self.ctx.tx.model_copy(update={"tx_count": 0, "last_tx_frame": "-"})

    def send_periodic_frame(self, frame: PeriodicFrameConfig) -> Optional[str]:
        """Build, encode and queue one frame. Returns the line, or None if skipped."""
        if not self.transport.is_connected():
            return None

        line, payload = pack_periodic_frame(frame.can_id, self.ctx)
        self.transport.write(line)

        tx = self.ctx.tx
        tx.tx_count += 1
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        tx.last_tx_frame = f"{timestamp} {format_can_id(frame.can_id)} {format_payload(payload)}"
        return line

    def _set_state(self, state: SchedulerState):
        self.ctx.tx = self.ctx.tx.model_copy(
            update={"scheduler_state": state, "loop_count": len(self._loops)}
        )
