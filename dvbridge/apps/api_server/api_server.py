"""
API Server
FastAPI + WebSocket surface over the running bridge
"""

import asyncio
import json
import logging
import uuid
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from dvbridge import __version__
from dvbridge.lib.bus.message_bus import Topic
from dvbridge.lib.errors import SerialLinkError
from dvbridge.lib.models.messages import (
    BridgeTelemetry, ConnectRequest, ControlMode, ControlModeRequest, HealthResponse
)
from dvbridge.apps.bridge.bridge_service import BridgeService

logger = logging.getLogger(__name__)

# Bus topics pushed to every WebSocket client
BROADCAST_TOPICS = (Topic.LINK_STATUS, Topic.CONTROL_STATUS)


def create_app(bridge: BridgeService) -> FastAPI:
    """Build the API app; the bridge starts and stops with it"""
    app = FastAPI(
        title="DV Bridge API",
        description="REST + WebSocket API for the SLCAN CAN bridge",
        version=__version__
    )
    app.state.bridge = bridge

    connections: Dict[str, WebSocket] = {}
    broadcasters: List[asyncio.Task] = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # STARTUP / SHUTDOWN
    # ========================================================================

    @app.on_event("startup")
    async def startup_event():
        """Start the bridge and the status broadcasters"""
        logger.info("Starting DV bridge API server...")
        await bridge.start()
        for topic in BROADCAST_TOPICS:
            broadcasters.append(asyncio.create_task(status_broadcaster(topic)))
        logger.info("All services started successfully")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown"""
        logger.info("Shutting down DV bridge API server...")
        for task in broadcasters:
            task.cancel()
        await asyncio.gather(*broadcasters, return_exceptions=True)
        broadcasters.clear()
        await bridge.stop()
        logger.info("Shutdown complete")

    # ========================================================================
    # REST ENDPOINTS
    # ========================================================================

    @app.get("/api")
    async def api_root():
        """API root endpoint (JSON)"""
        return {"service": "DV Bridge API", "version": __version__, "status": "running"}

    @app.get("/api/v1/health", response_model=HealthResponse)
    async def get_health():
        """Link health and uptime"""
        return bridge.health()

    @app.get("/api/v1/telemetry", response_model=BridgeTelemetry)
    async def get_telemetry():
        """Full bridge state snapshot"""
        return bridge.telemetry()

    @app.post("/api/v1/serial/connect")
    async def post_serial_connect(req: Optional[ConnectRequest] = None):
        """Open the serial link and the SLCAN channel"""
        baudrate = req.baudrate if req else None
        try:
            await bridge.connect(baudrate)
        except SerialLinkError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {"status": "ok", "link_status": bridge.transport.link_snapshot()}

    @app.post("/api/v1/serial/disconnect")
    async def post_serial_disconnect():
        """Close the serial link"""
        await bridge.disconnect("disconnected by user")
        return {"status": "ok", "link_status": bridge.transport.link_snapshot()}

    @app.post("/api/v1/control/mode")
    async def post_control_mode(req: ControlModeRequest):
        """Select state-driven or raw manual control"""
        status = bridge.set_control_mode(req.mode)
        return {"status": "ok", "mode": bridge.control_mode, "control_status": status}

    # ========================================================================
    # WEBSOCKET ENDPOINT
    # ========================================================================

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for live bridge state.

        Client -> Server messages:
            {"type": "telemetry"}
            {"type": "control_mode", "mode": "state" | "raw"}

        Server -> Client messages:
            {"type": "telemetry", "data": {...}}
            {"type": "link_status", "data": {...}}
            {"type": "control_status", "data": {...}}
        """
        await websocket.accept()

        connection_id = str(uuid.uuid4())
        connections[connection_id] = websocket
        logger.info(f"WebSocket connected: {connection_id}")

        try:
            await websocket.send_text(telemetry_message())

            while True:
                data = await websocket.receive_text()
                message = json.loads(data)
                msg_type = message.get("type")

                if msg_type == "telemetry":
                    await websocket.send_text(telemetry_message())

                elif msg_type == "control_mode":
                    try:
                        bridge.set_control_mode(ControlMode(message.get("mode")))
                    except ValueError:
                        logger.warning(f"Unknown control mode: {message.get('mode')}")

                else:
                    logger.warning(f"Unknown message type: {msg_type}")

        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected: {connection_id}")

        except Exception as e:
            logger.error(f"WebSocket error: {e}")

        finally:
            connections.pop(connection_id, None)

    # ========================================================================
    # STATUS BROADCASTER
    # ========================================================================

    def telemetry_message() -> str:
        return json.dumps({
            "type": "telemetry",
            "data": bridge.telemetry().model_dump(mode="json"),
        })

    async def status_broadcaster(topic: str):
        """Forward one bus topic to all connected WebSocket clients"""
        queue = bridge.bus.subscribe(topic)
        try:
            while True:
                status = await queue.get()
                message = json.dumps({"type": topic, "data": status.model_dump(mode="json")})

                for connection_id, websocket in list(connections.items()):
                    try:
                        await websocket.send_text(message)
                    except Exception as e:
                        logger.error(f"Failed to send {topic} to {connection_id}: {e}")

        except asyncio.CancelledError:
            logger.debug(f"Broadcaster for {topic} cancelled")

        finally:
            bridge.bus.unsubscribe(topic, queue)

    return app
