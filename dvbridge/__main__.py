"""
Bridge entry point
python -m dvbridge [--config PATH]
"""

import argparse
import logging

import uvicorn

from dvbridge.lib.models.config import load_config
from dvbridge.lib.serial.serial_port import SerialPort
from dvbridge.lib.util.logging_config import setup_logging
from dvbridge.lib.gamepad.pygame_source import PygameGamepadSource
from dvbridge.apps.bridge.bridge_service import BridgeService
from dvbridge.apps.api_server.api_server import create_app

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="SLCAN CAN bridge")
    parser.add_argument("--config", default="config/bridge_config.yaml",
                        help="path to bridge_config.yaml")
    parser.add_argument("--no-gamepad", action="store_true",
                        help="run without a joystick source")
    args = parser.parse_args()

    config = load_config(args.config)
    setup_logging(config.logging)

    gamepad_source = None if args.no_gamepad else PygameGamepadSource()
    bridge = BridgeService(
        config,
        port_factory=lambda: SerialPort(config.serial.port),
        gamepad_source=gamepad_source,
    )

    logger.info(f"Serving bridge API on {config.api.host}:{config.api.port}")
    uvicorn.run(
        create_app(bridge),
        host=config.api.host,
        port=config.api.port,
        log_level="info"
    )


if __name__ == "__main__":
    main()
