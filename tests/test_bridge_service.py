import asyncio

import pytest

from conftest import FakeSerialPort, ScriptedGamepadSource, settle, slcan_adapter
from dvbridge.lib.bus.message_bus import Topic
from dvbridge.lib.errors import SerialLinkError
from dvbridge.lib.models.config import BridgeConfig
from dvbridge.lib.models.messages import ControlMode, MissionState, SchedulerState, StatusLevel
from dvbridge.apps.bridge.bridge_service import BridgeService
from dvbridge.apps.control_raw.raw_control import RawControl


INIT_SEQUENCE = ["V", "C", "S6", "M00000000", "mFFFFFFFF", "X1", "O"]


async def no_sleep(seconds):
    await asyncio.sleep(0)


def make_bridge(port, config=None, **kwargs):
    return BridgeService(config or BridgeConfig(), lambda: port, sleep=no_sleep, **kwargs)


@pytest.fixture
async def bridge(fake_port):
    bridge = make_bridge(fake_port)
    yield bridge
    await bridge.stop()


class TestConnect:
    async def test_init_sequence(self, bridge, fake_port):
        await bridge.connect()
        assert fake_port.lines[:len(INIT_SEQUENCE)] == INIT_SEQUENCE

    async def test_link_after_connect(self, bridge, fake_port):
        await bridge.connect()
        link = bridge.ctx.link

        assert link.connected
        assert link.level == StatusLevel.OK
        assert link.state_text == "connected (channel open)"
        assert link.adapter_version == "V1013"
        assert link.rx_config == "adapter open, VCU2AI_Status 0x520"
        assert fake_port.opened_with == 2000000

    async def test_scheduler_and_polling_start(self, bridge, fake_port):
        await bridge.connect()

        assert bridge.scheduler.running
        assert bridge.ctx.tx.scheduler_state == SchedulerState.RUNNING
        assert bridge.receive_polling

        await asyncio.sleep(0.06)
        assert "A" in fake_port.lines
        assert any(line.startswith("t510") for line in fake_port.lines)

    async def test_second_connect_is_noop(self, bridge, fake_port):
        await bridge.connect()
        await bridge.connect()
        assert fake_port.lines.count("V") == 1

    async def test_explicit_baud_rate(self, bridge, fake_port):
        await bridge.connect(500000)
        assert fake_port.opened_with == 500000
        assert bridge.ctx.link.baudrate == 500000

    async def test_rejected_version_tears_down(self):
        def responder(command):
            return b"\x07" if command == "V" else slcan_adapter(command)

        port = FakeSerialPort(responder)
        bridge = make_bridge(port)

        with pytest.raises(SerialLinkError, match="connect failed"):
            await bridge.connect()

        assert not bridge.transport.is_connected()
        assert bridge.ctx.link.state_text.startswith("connect failed")
        assert not bridge.scheduler.running
        assert not bridge.receive_polling
        assert port.closed
        await bridge.stop()

    async def test_open_failure(self, bridge, fake_port):
        fake_port.open_error = OSError("busy")

        with pytest.raises(SerialLinkError):
            await bridge.connect()

        assert fake_port.lines == []
        assert not bridge.ctx.link.connected

    async def test_no_frames_configured(self, fake_port):
        config = BridgeConfig()
        config = config.model_copy(update={
            "can": config.can.model_copy(update={"periodic_frames": []})
        })
        bridge = make_bridge(fake_port, config)

        with pytest.raises(SerialLinkError, match="no valid TX frame config"):
            await bridge.connect()

        assert fake_port.opened_with is None
        await bridge.stop()


class TestReceive:
    async def test_stream_ack_stops_polling(self, bridge, fake_port):
        await bridge.connect()

        fake_port.feed(b"z\r")
        await settle()

        assert not bridge.receive_polling
        assert bridge.ctx.link.auto_stream

    async def test_status_frame_refreshes_control(self, bridge, fake_port):
        await bridge.connect()

        fake_port.feed(b"t5203010853\r")
        await settle()

        assert bridge.ctx.mission_state == MissionState(
            handshake=True, go_signal=True, as_state=3, ami_state=5
        )
        assert bridge.ctx.control_status.active_case == "AS_DRIVING_STATIC_A"
        assert bridge.ctx.rx_stats.counts_by_id == {"0x520": 1}

    async def test_other_frames_only_counted(self, bridge, fake_port):
        await bridge.connect()

        fake_port.feed(b"t3001FF\r")
        await settle()

        assert bridge.ctx.rx_stats.total_frames == 1
        assert bridge.ctx.mission_state == MissionState()


class TestDisconnect:
    async def test_disconnect_stops_scheduler_and_polling(self, bridge, fake_port):
        await bridge.connect()
        await bridge.disconnect("disconnected by user")

        assert not bridge.scheduler.running
        assert not bridge.receive_polling
        assert bridge.ctx.link.state_text == "disconnected by user"
        assert "C" in fake_port.lines[len(INIT_SEQUENCE):]
        assert fake_port.closed

    async def test_device_loss_stops_scheduler(self, bridge, fake_port):
        await bridge.connect()

        fake_port.fail_read(OSError("device unplugged"))
        await settle(20)

        assert not bridge.transport.is_connected()
        assert not bridge.scheduler.running
        assert bridge.ctx.link.state_text.startswith("serial read failed")

    async def test_reconnect_after_disconnect(self, bridge, fake_port):
        await bridge.connect()
        await bridge.disconnect()
        fake_port.written.clear()

        await bridge.connect()

        assert fake_port.lines[:len(INIT_SEQUENCE)] == INIT_SEQUENCE
        assert bridge.ctx.tx.scheduler_state == SchedulerState.RUNNING


class TestControl:
    async def test_mission_timer_ticks_only_while_driving(self, bridge):
        bridge.tick_mission_timer()
        assert bridge.ctx.mission_timer == 0

        bridge.ctx.mission_state = MissionState(as_state=3, ami_state=5)
        bridge.tick_mission_timer()
        bridge.tick_mission_timer()
        assert bridge.ctx.mission_timer == 20

    async def test_status_published_on_change_only(self, bridge):
        queue = bridge.bus.subscribe(Topic.CONTROL_STATUS)
        bridge.refresh_control()
        bridge.refresh_control()
        assert queue.qsize() == 1

        bridge.ctx.mission_state = MissionState(as_state=3, ami_state=5)
        bridge.tick_mission_timer()
        bridge.tick_mission_timer()
        assert queue.qsize() == 2

    async def test_set_control_mode(self, bridge):
        bridge.ctx.mission_state = MissionState(as_state=3, ami_state=5)
        bridge.ctx.mission_timer = 3000

        status = bridge.set_control_mode(ControlMode.RAW)

        assert isinstance(bridge.control_logic, RawControl)
        assert bridge.control_mode == ControlMode.RAW
        assert status.active_case == "RAW_MANUAL"
        assert bridge.ctx.mission_timer == 0

    async def test_set_same_mode_keeps_logic(self, bridge):
        logic = bridge.control_logic
        bridge.set_control_mode("state")
        assert bridge.control_logic is logic


class TestTelemetry:
    async def test_disconnected_snapshot(self, bridge):
        telemetry = bridge.telemetry()
        assert telemetry.control_mode == ControlMode.STATE
        assert not telemetry.link.connected
        assert telemetry.tx.scheduler_state == SchedulerState.STOPPED
        assert bridge.health().status == "degraded"

    async def test_connected_health(self, bridge):
        await bridge.connect()
        assert bridge.health().status == "ok"
        assert bridge.telemetry().link.connected

    async def test_serial_load_sample(self, bridge):
        bridge.sample_serial_load()
        assert bridge.ctx.serial_load.text == "idle"

        await bridge.connect()
        bridge.sample_serial_load()
        assert bridge.ctx.serial_load.text.endswith("B/s)")
        assert bridge.ctx.serial_load.tx_bytes_per_sec >= 0


async def test_start_and_stop_with_gamepad(fake_port):
    source = ScriptedGamepadSource()
    bridge = make_bridge(fake_port, gamepad_source=source)

    await bridge.start()
    await asyncio.sleep(0.03)
    assert bridge.gamepad.state_text == "waiting"

    await bridge.stop()
    assert source.closed
