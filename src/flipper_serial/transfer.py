"""Raw-capture mode of the ``storage write`` command.

The shell leaves its command prompt when ``storage write`` is issued and
treats every following byte as file content until an interrupt byte
arrives, after which it prints the ``>:`` prompt variant. Each stage is a
separate handle exposing only the next legal step:

    RawCapture.begin() -> Capturing.send()/finish() -> AwaitingPrompt.settle()

A handle that has moved on raises ``CaptureStateError`` when reused.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Union
from flipper_serial.core import CaptureState, CaptureStateError
from flipper_serial import protocol

if TYPE_CHECKING:
    from flipper_serial.driver import FlipperSerial

logger = logging.getLogger(__name__)

Payload = Union[str, bytes, bytearray]


class RawCapture:

    def __init__(self, flipper: "FlipperSerial") -> None:
        self._flipper = flipper
        self.state = CaptureState.IDLE

    async def begin(self, path: str) -> "Capturing":
        if self.state is not CaptureState.IDLE:
            raise CaptureStateError(self.state, "begin")
        timing = self._flipper.timing
        await self._flipper.write(protocol.storage_write(path) + protocol.CRLF)
        logger.debug("Waiting for write banner")
        try:
            await self._flipper.read_until(protocol.WRITE_BANNER, timing.banner_timeout)
        except BaseException:
            # the shell may have switched modes with the banner still in flight
            self._flipper.interrupt()
            raise
        self.state = CaptureState.CAPTURING
        return Capturing(self)


class Capturing:

    def __init__(self, capture: RawCapture) -> None:
        self._capture = capture

    def _check(self, action: str) -> None:
        if self._capture.state is not CaptureState.CAPTURING:
            raise CaptureStateError(self._capture.state, action)

    async def send(self, content: Payload) -> None:
        self._check("send")
        flipper = self._capture._flipper
        logger.debug("Writing content (%d)", len(content))
        if isinstance(content, (bytes, bytearray)):
            await flipper.write_bytes(bytes(content), 0)
        else:
            await flipper.write(content, 0)
        await asyncio.sleep(flipper.timing.payload_settle)

    async def finish(self) -> "AwaitingPrompt":
        self._check("finish")
        flipper = self._capture._flipper
        timing = flipper.timing
        await flipper.write(protocol.CRLF, timing.terminator_settle)
        logger.debug("Leaving raw capture")
        await flipper.write_bytes(protocol.INTERRUPT, timing.capture_exit_settle)
        self._capture.state = CaptureState.AWAITING_PROMPT
        return AwaitingPrompt(self._capture)

    def abort(self) -> bool:
        """Best-effort return of the shell to its prompt after a failed transfer.

        Does not yield, so it is safe to call while the task is being cancelled.
        """
        if self._capture.state is not CaptureState.CAPTURING:
            return False
        self._capture.state = CaptureState.IDLE
        logger.debug("Aborting raw capture")
        return self._capture._flipper.interrupt()


class AwaitingPrompt:

    def __init__(self, capture: RawCapture) -> None:
        self._capture = capture

    async def settle(self) -> None:
        if self._capture.state is not CaptureState.AWAITING_PROMPT:
            raise CaptureStateError(self._capture.state, "settle")
        flipper = self._capture._flipper
        await flipper.read_until(protocol.CAPTURE_PROMPT, flipper.timing.read_timeout)
        await asyncio.sleep(flipper.timing.post_capture_settle)
        flipper.clear_buffer()
        self._capture.state = CaptureState.IDLE
