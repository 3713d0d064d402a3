"""
Serial Transport Service
Owns the SLCAN serial link: bounded write queue, line assembly, ack matching
and receive-frame handling
"""

import asyncio
import codecs
import logging
from collections import deque
from datetime import datetime
from typing import Callable, Deque, List, Optional

from dvbridge.lib.bus.message_bus import MessageBus, Topic
from dvbridge.lib.errors import SerialLinkError
from dvbridge.lib.models.context import SharedContext
from dvbridge.lib.models.messages import (
    LinkStatus, MissionState, RxFrame, RxFrameStats, SerialLoadStatus, StatusLevel
)
from dvbridge.lib.protocol.ack_correlator import (
    AckCorrelator, ACK_TIMEOUT_MS, CLOSE_ACK_TIMEOUT_MS
)
from dvbridge.lib.protocol.slcan_protocol import (
    CanFrame, CanId, POLL_TOKEN, SLCAN_BEL, SLCAN_CR, STREAM_ACK_TOKENS, SlcanCommand,
    VcuStatus, find_frame, format_can_id, format_payload
)
from dvbridge.lib.serial.serial_port import DEFAULT_BAUD_RATE, SUPPORTED_BAUD_RATES
from dvbridge.apps.serial_transport.load_monitor import SerialLoadMonitor

logger = logging.getLogger(__name__)

MAX_SERIAL_QUEUE = 512


class SerialTransport:
    """
    SLCAN serial transport.
    - Opens/closes the byte-stream device and owns its writer/reader handles
    - Queues outgoing lines (oldest dropped when full), drained by one task
    - Assembles inbound bytes into lines; acks go to the correlator, frames
      update receive stats and, for the filter id, the mission state
    """

    def __init__(self, ctx: SharedContext, port_factory: Callable,
                 receive_filter_id: int = CanId.VCU2AI_STATUS,
                 bus: Optional[MessageBus] = None,
                 load_monitor: Optional[SerialLoadMonitor] = None,
                 queue_size: int = MAX_SERIAL_QUEUE):
        self.ctx = ctx
        self.port_factory = port_factory
        self.receive_filter_id = receive_filter_id
        self.bus = bus
        self.load_monitor = load_monitor or SerialLoadMonitor()
        self.correlator = AckCorrelator()

        # Connection handles
        self.baudrate = 0
        self._port = None
        self._writer = None
        self._reader = None
        self._read_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._disconnect_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()

        # Outgoing queue
        self._queue: Deque[str] = deque(maxlen=queue_size)
        self.queue_drops = 0

        # Inbound line assembly
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._read_buffer = ""

        self.auto_stream = False
        # Set while a teardown runs; later disconnect() callers await it
        self._teardown: Optional[asyncio.Future] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._disconnect_listeners: List[Callable[[], None]] = []

        # Hooks
        self.on_status_frame: Optional[Callable[[CanFrame], None]] = None
        self.on_stream_confirmed: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def is_connected(self) -> bool:
        return self._port is not None and self._writer is not None

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def queue_full(self) -> bool:
        return len(self._queue) >= self._queue.maxlen

    def add_disconnect_listener(self, listener: Callable[[], None]):
        """Listener runs first thing on every disconnect"""
        self._disconnect_listeners.append(listener)

    def update_link(self, state_text: Optional[str] = None,
                    level: Optional[StatusLevel] = None, **fields):
        """Publish a new LinkStatus; state_text changes are logged"""
        update = dict(fields)
        if state_text is not None:
            update["state_text"] = state_text
            update["level"] = level or StatusLevel.WARN
        update.update(
            connected=self.is_connected(),
            baudrate=self.baudrate,
            auto_stream=self.auto_stream,
            queue_depth=len(self._queue),
            queue_drops=self.queue_drops,
            last_change=datetime.now(),
        )
        self.ctx.link = self.ctx.link.model_copy(update=update)

        if state_text is not None:
            logger.info(f"Serial link: {state_text}")
        if self.bus is not None:
            self.bus.publish(Topic.LINK_STATUS, self.ctx.link)

    def link_snapshot(self) -> LinkStatus:
        """Current link status with live queue counters"""
        return self.ctx.link.model_copy(update={
            "connected": self.is_connected(),
            "queue_depth": len(self._queue),
            "queue_drops": self.queue_drops,
        })

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def connect(self, baudrate: int = DEFAULT_BAUD_RATE):
        """
        Open the device and start the read task.
        Raises SerialLinkError; nothing stays open on failure.
        """
        if self.is_connected():
            return

        if baudrate not in SUPPORTED_BAUD_RATES:
            logger.warning(f"Unsupported baud rate {baudrate}, using {DEFAULT_BAUD_RATE}")
            baudrate = DEFAULT_BAUD_RATE

        self.update_link("opening port...", StatusLevel.WARN)

        port = self.port_factory()
        writer = reader = None
        try:
            await port.open(baudrate)
            writer = port.get_writer()
            reader = port.get_reader()
        except Exception as e:
            for handle in (writer, reader):
                if handle is not None:
                    try:
                        handle.release()
                    except Exception as release_error:
                        logger.warning(f"Handle release failed: {release_error}")
            try:
                await port.close()
            except Exception as close_error:
                logger.warning(f"Port close failed: {close_error}")
            message = f"connect failed: {e}"
            self.update_link(message, StatusLevel.WARN)
            raise SerialLinkError(message) from e

        self._port, self._writer, self._reader = port, writer, reader
        self.baudrate = baudrate
        self.auto_stream = False
        self.reset_queue()
        self._reset_read_state()
        self.load_monitor.reset()
        self.ctx.rx_stats = RxFrameStats()
        self._read_task = asyncio.create_task(self._read_loop(reader), name="serial_read")

        self.update_link("port open", StatusLevel.WARN, adapter_version="-", rx_config="-")

    async def disconnect(self, reason: str = "not connected",
                         level: StatusLevel = StatusLevel.WARN,
                         send_close: bool = True):
        """
        Tear the connection down. Each step is guarded so a failure cannot skip
        the steps after it. Safe to call when already disconnected. A call made
        while another teardown runs waits for that teardown and keeps its reason.
        """
        if self._teardown is not None:
            if self._teardown_task is not asyncio.current_task():
                await asyncio.shield(self._teardown)
            return
        self._teardown = asyncio.get_running_loop().create_future()
        self._teardown_task = asyncio.current_task()

        try:
            for listener in list(self._disconnect_listeners):
                try:
                    listener()
                except Exception:
                    logger.exception("Disconnect listener failed")

            self.auto_stream = False
            self.load_monitor.reset()
            self.correlator.clear_all("serial disconnected")

            port, writer, reader = self._port, self._writer, self._reader
            read_task, drain_task = self._read_task, self._drain_task

            if send_close and writer is not None:
                try:
                    if reader is not None:
                        await self.send_command(
                            SlcanCommand.CLOSE,
                            wait_for_ack=True,
                            allow_ack_error=True,
                            ack_timeout_ms=CLOSE_ACK_TIMEOUT_MS,
                        )
                    else:
                        logger.debug(f"TX {SlcanCommand.CLOSE}")
                        await self._write_bytes(f"{SlcanCommand.CLOSE}{SLCAN_CR}".encode())
                except Exception as e:
                    logger.debug(f"Close command not acknowledged: {e}")

            self._port = self._writer = self._reader = None
            self._read_task = self._drain_task = None
            self.correlator.clear_all("serial disconnected")
            self.reset_queue()
            self._reset_read_state()

            current = asyncio.current_task()
            if drain_task is not None and drain_task is not current:
                drain_task.cancel()
                await asyncio.gather(drain_task, return_exceptions=True)

            if reader is not None:
                try:
                    await reader.cancel()
                except Exception as e:
                    logger.warning(f"Reader cancel failed: {e}")

            if read_task is not None and read_task is not current:
                await asyncio.gather(read_task, return_exceptions=True)

            if writer is not None:
                try:
                    writer.release()
                except Exception as e:
                    logger.warning(f"Writer release failed: {e}")

            if reader is not None:
                try:
                    reader.release()
                except Exception as e:
                    logger.warning(f"Reader release failed: {e}")

            if port is not None:
                try:
                    await port.close()
                except Exception as e:
                    logger.warning(f"Port close failed: {e}")

            self.update_link(reason, level)
            self.ctx.serial_load = SerialLoadStatus()

        finally:
            teardown, self._teardown, self._teardown_task = self._teardown, None, None
            teardown.set_result(None)

    def _schedule_disconnect(self, reason: str):
        """Disconnect from inside a transport task without awaiting itself"""
        if self._teardown is not None:
            return
        logger.error(f"Serial link failed: {reason}")
        self._disconnect_task = asyncio.get_running_loop().create_task(
            self.disconnect(reason, StatusLevel.WARN, send_close=False)
        )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def reset_queue(self):
        self._queue.clear()
        self.queue_drops = 0

    def write(self, line: str, log: bool = True):
        """Queue line + CR for transmission. Ignored while disconnected."""
        if not self.is_connected():
            return

        if log:
            logger.debug(f"TX {line}")

        if len(self._queue) >= self._queue.maxlen:
            self.queue_drops += 1
        self._queue.append(f"{line}{SLCAN_CR}")

        if self._drain_task is None:
            self._drain_task = asyncio.create_task(self._drain(), name="serial_drain")

    async def _drain(self):
        try:
            while self._queue and self._writer is not None:
                line = self._queue.popleft()
                await self._write_bytes(line.encode())
        except Exception as e:
            self._schedule_disconnect(f"serial write failed: {e}")
        finally:
            if self._drain_task is asyncio.current_task():
                self._drain_task = None

    async def _write_bytes(self, data: bytes):
        writer = self._writer
        if writer is None:
            raise SerialLinkError("SLCAN writer is not available")
        async with self._write_lock:
            await writer.write(data)
        self.load_monitor.record_tx(len(data))

    async def send_command(self, command: str, wait_for_ack: bool = False,
                           allow_ack_error: bool = False,
                           ack_timeout_ms: int = ACK_TIMEOUT_MS):
        """
        Write an SLCAN command directly, bypassing the queue.

        Returns True when not waiting, otherwise the ack value (the version
        string for V, None for a tolerated error). Raises SerialLinkError,
        AckTimeout or AckRejected.
        """
        if self._writer is None:
            raise SerialLinkError("SLCAN writer is not available")

        waiter = None
        if wait_for_ack:
            waiter = self.correlator.register(command, allow_ack_error, ack_timeout_ms)

        try:
            logger.debug(f"TX {command}")
            await self._write_bytes(f"{command}{SLCAN_CR}".encode())
        except Exception as e:
            if waiter is not None:
                self.correlator.discard(waiter)
            if isinstance(e, SerialLinkError):
                raise
            raise SerialLinkError(f"serial write failed: {e}") from e

        if waiter is None:
            return True
        return await waiter.future

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def _reset_read_state(self):
        self._decoder.reset()
        self._read_buffer = ""

    async def _read_loop(self, reader):
        read_error = ""
        try:
            while self._reader is reader:
                data = await reader.read()
                if not data:
                    break
                self.feed_bytes(data)
        except Exception as e:
            if self._reader is reader:
                read_error = str(e) or type(e).__name__
        finally:
            ended_while_active = self._reader is reader
            if ended_while_active:
                self._reader = None
            try:
                reader.release()
            except Exception as e:
                logger.warning(f"Reader release failed: {e}")

            if read_error:
                self._schedule_disconnect(f"serial read failed: {read_error}")
            elif ended_while_active and self.is_connected():
                self._schedule_disconnect("serial device closed")

    def feed_bytes(self, data: bytes):
        """Decode a chunk and hand every completed line on"""
        self.load_monitor.record_rx(len(data))

        for char in self._decoder.decode(data):
            if char == SLCAN_CR:
                line, self._read_buffer = self._read_buffer, ""
                self._process_line(line)

            elif char == "\n":
                if self._read_buffer:
                    line, self._read_buffer = self._read_buffer, ""
                    self._process_line(line)

            elif char == SLCAN_BEL:
                if self._read_buffer:
                    line, self._read_buffer = self._read_buffer, ""
                    self._process_line(line)
                logger.debug("RX <BEL>")
                self.correlator.settle_next(False)

            else:
                self._read_buffer += char

    def _process_line(self, raw_line: str):
        trimmed = raw_line.strip()

        # Bare CR is the adapter's positive acknowledgement
        if not trimmed:
            if self.correlator.pending:
                logger.debug("RX <CR>")
            self.correlator.settle_next(True)
            return

        logger.debug(f"RX {trimmed}")

        if self.correlator.match_line(trimmed):
            return

        self.correlator.allow_implicit_open_ack(trimmed)

        if trimmed in STREAM_ACK_TOKENS:
            if not self.auto_stream:
                self.auto_stream = True
                self.update_link(auto_stream=True)
                logger.info("Adapter streams received frames automatically")
                if self.on_stream_confirmed is not None:
                    self.on_stream_confirmed()
            return

        if trimmed == POLL_TOKEN:
            return

        frame = find_frame(trimmed)
        if frame is None:
            return

        self._record_rx_frame(frame)
        if frame.can_id == self.receive_filter_id:
            self._apply_status_frame(frame)

    def _record_rx_frame(self, frame: CanFrame):
        stats = self.ctx.rx_stats
        key = format_can_id(frame.can_id)
        stats.total_frames += 1
        stats.last_seen_id = frame.can_id
        stats.last_seen_time = received_at = datetime.now()
        stats.counts_by_id[key] = stats.counts_by_id.get(key, 0) + 1

        if self.bus is not None:
            self.bus.publish(Topic.RX_FRAME, RxFrame(
                can_id=frame.can_id, data=list(frame.data), received_at=received_at
            ))

    def _apply_status_frame(self, frame: CanFrame):
        status = VcuStatus.decode(frame.data)
        self.ctx.mission_state = MissionState(
            handshake=status.handshake,
            go_signal=status.go_signal,
            as_state=status.as_state,
            ami_state=status.ami_state,
        )
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        self.ctx.rx_stats.last_status_frame = f"{timestamp} {format_payload(frame.data)}"

        if self.on_status_frame is not None:
            self.on_status_frame(frame)
