"""
Bridge Service
Wires transport, scheduler, gamepad and control logic into one running bridge
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from dvbridge.lib.bus.message_bus import MessageBus, Topic
from dvbridge.lib.control.control_logic import ControlLogic, MISSION_TIMER_TICK_MS
from dvbridge.lib.errors import AckError, BridgeError, SerialLinkError
from dvbridge.lib.models.config import BridgeConfig
from dvbridge.lib.models.context import SharedContext
from dvbridge.lib.models.messages import (
    BridgeTelemetry, ControlMode, ControlStatus, HealthResponse, StatusLevel
)
from dvbridge.lib.protocol.ack_correlator import CLOSE_ACK_TIMEOUT_MS, INIT_ACK_TIMEOUT_MS
from dvbridge.lib.protocol.slcan_protocol import POLL_TOKEN, SlcanCommand, format_can_id
from dvbridge.lib.scheduler.async_loop import AsyncLoop
from dvbridge.apps.control_raw.raw_control import RawControl
from dvbridge.apps.control_state.state_control import StateControl
from dvbridge.apps.gamepad_service.gamepad_service import GamepadService, GamepadSource
from dvbridge.apps.serial_transport.load_monitor import SERIAL_LOAD_SAMPLE_MS, SerialLoadMonitor
from dvbridge.apps.serial_transport.serial_transport import SerialTransport
from dvbridge.apps.tx_scheduler.tx_scheduler import TxScheduler

logger = logging.getLogger(__name__)

RX_POLL_INTERVAL_MS = 20
# Pause the adapter needs after closing / changing bitrate
ADAPTER_SETTLE_S = 0.05


class BridgeService:
    """
    CAN bridge.
    - connect(): opens the port and runs the SLCAN init sequence
    - mission timer task: ticks the timer and re-evaluates control logic
    - load monitor task: samples serial utilization
    - receive poll task: polls with A until the adapter confirms streaming
    """

    def __init__(self, config: BridgeConfig, port_factory: Callable,
                 gamepad_source: Optional[GamepadSource] = None,
                 bus: Optional[MessageBus] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config
        self.ctx = SharedContext()
        self.bus = bus or MessageBus()
        self._sleep = sleep

        self.load_monitor = SerialLoadMonitor()
        self.transport = SerialTransport(
            self.ctx,
            port_factory,
            receive_filter_id=config.can.vcu2ai_status_id,
            bus=self.bus,
            load_monitor=self.load_monitor,
        )
        self.transport.on_status_frame = lambda frame: self.refresh_control()
        self.transport.on_stream_confirmed = self.stop_receive_polling
        self.transport.add_disconnect_listener(self._on_disconnect)

        self.scheduler = TxScheduler(self.ctx, self.transport)
        self.gamepad = GamepadService(self.ctx, gamepad_source, self.bus) if gamepad_source else None

        self.control_mode = config.control.mode
        self.control_logic: ControlLogic = self._build_control_logic(self.control_mode)
        self._last_status: Optional[dict] = None

        self._mission_loop: Optional[AsyncLoop] = None
        self._load_loop: Optional[AsyncLoop] = None
        self._poll_loop: Optional[AsyncLoop] = None
        self._connect_lock = asyncio.Lock()
        self.start_time = datetime.now()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start the always-on tasks (gamepad, mission timer, load monitor)"""
        logger.info(
            f"Starting bridge: mode={self.control_mode.value}, "
            f"rx filter {format_can_id(self.config.can.vcu2ai_status_id)}, "
            f"states [{self.config.state_machine.describe()}]"
        )
        self.start_time = datetime.now()
        self.refresh_control()

        if self.gamepad is not None:
            self.gamepad.start()

        self._mission_loop = AsyncLoop(MISSION_TIMER_TICK_MS, self.tick_mission_timer,
                                       name="mission_timer")
        self._mission_loop.start()

        self.load_monitor.reset()
        self._load_loop = AsyncLoop(SERIAL_LOAD_SAMPLE_MS, self.sample_serial_load,
                                    name="serial_load")
        self._load_loop.start()

        logger.info("Bridge started")

    async def stop(self):
        """Close the link and stop every task"""
        await self.disconnect()

        for loop in (self._mission_loop, self._load_loop):
            if loop is not None:
                loop.stop()
        self._mission_loop = self._load_loop = None

        if self.gamepad is not None:
            self.gamepad.stop()

        logger.info("Bridge stopped")

    # ------------------------------------------------------------------
    # Serial link
    # ------------------------------------------------------------------

    async def connect(self, baudrate: Optional[int] = None):
        """
        Open the serial link and bring the adapter channel up.
        Raises SerialLinkError; on failure the link is fully torn down.
        """
        async with self._connect_lock:
            if self.transport.is_connected():
                return

            if not self.config.can.periodic_frames:
                self.transport.update_link("no valid TX frame config", StatusLevel.WARN)
                raise SerialLinkError("no valid TX frame config")

            await self.transport.connect(baudrate or self.config.serial.baudrate)
            self.scheduler.reset_counters()

            try:
                await self._initialize_adapter()
            except Exception as e:
                message = f"connect failed: {e}"
                await self.transport.disconnect(message)
                raise SerialLinkError(message) from e

    async def disconnect(self, reason: str = "not connected"):
        await self.transport.disconnect(reason)

    async def _initialize_adapter(self):
        transport = self.transport

        transport.update_link("querying adapter...", adapter_version="querying...")
        version = await transport.send_command(
            SlcanCommand.VERSION, wait_for_ack=True, ack_timeout_ms=INIT_ACK_TIMEOUT_MS
        )
        transport.update_link(adapter_version=str(version or "-"))
        logger.info(f"SLCAN adapter version: {version}")

        # Channel may still be open from a previous session
        try:
            await transport.send_command(
                SlcanCommand.CLOSE, wait_for_ack=True, allow_ack_error=True,
                ack_timeout_ms=CLOSE_ACK_TIMEOUT_MS
            )
        except AckError as e:
            logger.debug(f"Initial close ignored: {e}")

        await self._sleep(ADAPTER_SETTLE_S)
        await transport.send_command(SlcanCommand.bitrate(self.config.serial.slcan_bitrate))
        await self._sleep(ADAPTER_SETTLE_S)
        await self._configure_receive_filter()

        await transport.send_command(SlcanCommand.AUTO_STREAM)
        await transport.send_command(SlcanCommand.OPEN)

        self.start_receive_polling()
        self.scheduler.start(self.config.can.periodic_frames)
        transport.update_link("connected (channel open)", StatusLevel.OK)

    async def _configure_receive_filter(self):
        filter_text = format_can_id(self.config.can.vcu2ai_status_id)
        try:
            await self.transport.send_command(SlcanCommand.ACCEPT_MASK_ALL)
            await self.transport.send_command(SlcanCommand.ACCEPT_FILTER_ALL)
            self.transport.update_link(rx_config=f"adapter open, VCU2AI_Status {filter_text}")
        except BridgeError as e:
            logger.warning(f"SLCAN receive filter setup skipped: {e}")
            self.transport.update_link(rx_config=f"adapter RX unknown, VCU2AI_Status {filter_text}")

    def _on_disconnect(self):
        self.scheduler.stop()
        self.stop_receive_polling()

    # ------------------------------------------------------------------
    # Receive polling
    # ------------------------------------------------------------------

    def start_receive_polling(self):
        self.stop_receive_polling()
        if not self.transport.is_connected() or self.transport.auto_stream:
            return
        self._poll_loop = AsyncLoop(RX_POLL_INTERVAL_MS, self.poll_receive, name="rx_poll")
        self._poll_loop.start()
        logger.debug("Receive polling started")

    def stop_receive_polling(self):
        if self._poll_loop is not None:
            self._poll_loop.stop()
            self._poll_loop = None
            logger.debug("Receive polling stopped")

    @property
    def receive_polling(self) -> bool:
        return self._poll_loop is not None

    def poll_receive(self):
        if not self.transport.is_connected() or self.transport.queue_full:
            return
        self.transport.write(POLL_TOKEN, log=False)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def _build_control_logic(self, mode: ControlMode) -> ControlLogic:
        logic_class = RawControl if mode == ControlMode.RAW else StateControl
        return logic_class(self.ctx, self.config.control.manual, self.config.state_machine)

    def set_control_mode(self, mode: ControlMode) -> ControlStatus:
        """Swap the control variant; takes effect on the next evaluation"""
        mode = ControlMode(mode)
        if mode != self.control_mode:
            self.control_logic = self._build_control_logic(mode)
            self.control_mode = mode
            self.ctx.mission_timer = 0
            logger.info(f"Control mode: {mode.value}")
        return self.refresh_control()

    def tick_mission_timer(self):
        if self.control_logic.should_tick_mission_timer():
            self.ctx.mission_timer += MISSION_TIMER_TICK_MS
        self.refresh_control()

    def refresh_control(self) -> ControlStatus:
        status = self.control_logic.refresh()

        # Publish transitions only, not every timer tick
        summary = status.model_dump(exclude={"mission_timer"})
        if summary != self._last_status:
            self._last_status = summary
            logger.debug(f"Control: {status.active_case} - {status.status_text}")
            self.bus.publish(Topic.CONTROL_STATUS, status)
        return status

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def sample_serial_load(self):
        self.ctx.serial_load = self.load_monitor.sample(
            self.transport.is_connected(), self.transport.baudrate
        )

    def telemetry(self) -> BridgeTelemetry:
        ctx = self.ctx
        return BridgeTelemetry(
            control_mode=self.control_mode,
            link=self.transport.link_snapshot(),
            tx=ctx.tx,
            rx=ctx.rx_stats,
            serial_load=ctx.serial_load,
            mission_state=ctx.mission_state,
            control=ctx.control,
            control_status=ctx.control_status,
            gamepad=ctx.gamepad,
            gamepad_event=ctx.gamepad_event,
            mission_timer=ctx.mission_timer,
        )

    def health(self) -> HealthResponse:
        link = self.transport.link_snapshot()
        return HealthResponse(
            status="ok" if link.connected else "degraded",
            link_status=link,
            uptime_sec=(datetime.now() - self.start_time).total_seconds(),
        )
