"""
Bridge Error Types
Shared exception hierarchy for transport, protocol and config errors
"""


class BridgeError(Exception):
    """Base class for all bridge errors"""


class SerialLinkError(BridgeError, ConnectionError):
    """Serial device open/read/write failure. Always collapses the link."""


class AckError(BridgeError):
    """SLCAN command acknowledgement failure"""

    def __init__(self, command: str, message: str):
        super().__init__(message)
        self.command = command


class AckTimeout(AckError):
    """No matching acknowledgement line arrived in time"""


class AckRejected(AckError):
    """Adapter answered with an error token"""


class FrameParseError(BridgeError, ValueError):
    """Malformed SLCAN frame line"""


class InvalidCanId(FrameParseError):
    """CAN id outside the 11-bit standard range"""


class ConfigValidationError(BridgeError, ValueError):
    """Configuration value failed validation"""
