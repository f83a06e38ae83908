from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class FileType(str, Enum):
    TEXT = "text"
    SUBGHZ = "subghz"
    RFID = "rfid"
    INFRARED = "infrared"
    NFC = "nfc"
    SCRIPT = "script"
    APPLICATION = "application"
    IBUTTON = "ibutton"
    DIRECTORY = "directory"
    UNKNOWN = "unknown"


class CaptureState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    AWAITING_PROMPT = "awaiting_prompt"


class FileInfo(BaseModel):
    name: str
    is_directory: bool
    path: str
    size: int = 0
    type: FileType


class SerialSettings(BaseModel):
    port: str
    baudrate: int = 230400


class ShellTiming(BaseModel):
    """Delays and deadlines of the shell protocol, in seconds.

    The defaults were measured against real hardware; the device drops
    input when driven at full line rate, so the settle delays are not
    negotiable with the remote side.
    """

    settle_delay: float = Field(0.05, ge=0)
    link_settle: float = Field(0.5, ge=0)
    interrupt_pause: float = Field(0.1, ge=0)
    handshake_attempts: int = Field(3, ge=1)
    handshake_timeout: float = Field(2.0, ge=0)
    handshake_retry_delay: float = Field(0.5, ge=0)
    echo_timeout: float = Field(2.0, ge=0)
    prompt_timeout: float = Field(3.0, ge=0)
    read_timeout: float = Field(5.0, ge=0)
    banner_timeout: float = Field(5.0, ge=0)
    payload_settle: float = Field(0.5, ge=0)
    terminator_settle: float = Field(0.2, ge=0)
    capture_exit_settle: float = Field(0.5, ge=0)
    post_capture_settle: float = Field(0.2, ge=0)
    close_timeout: float = Field(1.0, ge=0)


class FlipperError(Exception):
    """Base Flipper Exception"""


class NotConnectedError(FlipperError):
    def __init__(self) -> None:
        super().__init__("Not connected to Flipper. Call await connect() first.")


class ConnectionFailedError(FlipperError):
    """The byte channel could not be opened"""


class HandshakeError(FlipperError):
    def __init__(self, attempts: int) -> None:
        super().__init__(f"Failed to establish CLI prompt after {attempts} attempts")
        self.attempts = attempts


class ReadTimeoutError(FlipperError, TimeoutError):
    def __init__(self, marker: str, buffer: str, timeout: float) -> None:
        super().__init__(f"Read timeout after {timeout:.3f}s waiting for {marker!r}; buffer: {buffer!r}")
        self.marker = marker
        self.buffer = buffer
        self.timeout = timeout


class CommandError(FlipperError):
    def __init__(self, command: str, reason: Optional[str] = None) -> None:
        message = f"Command failed: {command!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.command = command


class VerificationError(FlipperError):
    def __init__(self, path: str, response: str) -> None:
        super().__init__(f"File verification failed for {path}: {response}")
        self.path = path
        self.response = response


class LoaderError(FlipperError):
    def __init__(self, command: str, response: str) -> None:
        super().__init__(f"{command} failed: {response}")
        self.command = command
        self.response = response


class CaptureStateError(FlipperError):
    def __init__(self, state: CaptureState, action: str) -> None:
        super().__init__(f"Cannot {action} while raw capture is {state.value}")
        self.state = state
        self.action = action
