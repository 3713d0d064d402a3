import asyncio

import pytest

from dvbridge.lib.models.config import PeriodicFrameConfig
from dvbridge.lib.models.messages import ControlVector, SchedulerState
from dvbridge.apps.tx_scheduler.tx_scheduler import TxScheduler


class RecordingTransport:
    def __init__(self, connected: bool = True):
        self.connected = connected
        self.lines = []

    def is_connected(self) -> bool:
        return self.connected

    def write(self, line: str, log: bool = True):
        self.lines.append(line)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
async def scheduler(ctx, transport):
    scheduler = TxScheduler(ctx, transport)
    yield scheduler
    scheduler.stop()


async def test_send_periodic_frame(scheduler, transport, ctx):
    ctx.control = ControlVector(steer_request=250)

    line = scheduler.send_periodic_frame(PeriodicFrameConfig(can_id=0x513, interval_ms=20))

    assert line == "t5138FA00000000000000"
    assert transport.lines == [line]
    assert ctx.tx.tx_count == 1
    assert ctx.tx.last_tx_frame.endswith("0x513 FA 00 00 00 00 00 00 00")


async def test_send_skipped_while_disconnected(scheduler, transport, ctx):
    transport.connected = False
    assert scheduler.send_periodic_frame(PeriodicFrameConfig(can_id=0x510, interval_ms=20)) is None
    assert transport.lines == []
    assert ctx.tx.tx_count == 0


async def test_start_requires_connection(scheduler, transport, ctx):
    transport.connected = False
    scheduler.start([PeriodicFrameConfig(can_id=0x510, interval_ms=5)])
    assert not scheduler.running
    assert ctx.tx.scheduler_state == SchedulerState.STOPPED


async def test_no_frames_configured(scheduler, ctx):
    scheduler.start([])
    assert not scheduler.running
    assert ctx.tx.scheduler_state == SchedulerState.NO_FRAMES


async def test_one_loop_per_frame(scheduler, transport, ctx):
    scheduler.start([
        PeriodicFrameConfig(can_id=0x510, interval_ms=5),
        PeriodicFrameConfig(can_id=0x514, interval_ms=5),
    ])
    assert ctx.tx.scheduler_state == SchedulerState.RUNNING
    assert ctx.tx.loop_count == 2

    await asyncio.sleep(0.05)

    ids = {line[1:4] for line in transport.lines}
    assert ids == {"510", "514"}
    assert ctx.tx.tx_count == len(transport.lines)


async def test_stop_halts_transmission(scheduler, transport, ctx):
    scheduler.start([PeriodicFrameConfig(can_id=0x510, interval_ms=5)])
    await asyncio.sleep(0.03)
    scheduler.stop()
    sent = len(transport.lines)

    await asyncio.sleep(0.03)

    assert len(transport.lines) == sent
    assert ctx.tx.scheduler_state == SchedulerState.STOPPED
    assert ctx.tx.loop_count == 0


async def test_restart_replaces_loops(scheduler, transport):
    frames = [PeriodicFrameConfig(can_id=0x510, interval_ms=5)]
    scheduler.start(frames)
    scheduler.start(frames)
    assert len(scheduler._loops) == 1


async def test_reset_counters(scheduler, ctx):
    scheduler.send_periodic_frame(PeriodicFrameConfig(can_id=0x510, interval_ms=20))
    scheduler.reset_counters()
    assert ctx.tx.tx_count == 0
    assert ctx.tx.last_tx_frame == "-"
