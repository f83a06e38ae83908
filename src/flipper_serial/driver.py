import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple, Union
import serial
import serial_asyncio
from flipper_serial.core import (
    CommandError,
    ConnectionFailedError,
    FileInfo,
    FlipperError,
    HandshakeError,
    LoaderError,
    NotConnectedError,
    ReadTimeoutError,
    SerialSettings,
    ShellTiming,
    VerificationError,
)
from flipper_serial.stream import ResponseBuffer, pump
from flipper_serial.transfer import Capturing, RawCapture
from flipper_serial import protocol

logger = logging.getLogger(__name__)

Opener = Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]

BAD_USB = "Bad USB"


class FlipperSerial:
    """Request/response access to the Flipper CLI over a serial link.

    One command is in flight at a time. Every top-level operation starts by
    discarding whatever the shell printed since the previous one.
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 230400,
        timing: Optional[ShellTiming] = None,
        opener: Opener = serial_asyncio.open_serial_connection,
    ) -> None:
        self.settings = SerialSettings(port=port, baudrate=baudrate)
        self.timing = timing or ShellTiming()
        self._opener = opener
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._reading = False
        self._connected = False
        self._buffer = ResponseBuffer()

    async def __aenter__(self) -> "FlipperSerial":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        if self._connected:
            return True
        try:
            logger.debug("Opening %s at %d baud", self.settings.port, self.settings.baudrate)
            try:
                reader, writer = await self._opener(
                    url=self.settings.port,
                    baudrate=self.settings.baudrate,
                )
            except (OSError, serial.SerialException) as exc:
                raise ConnectionFailedError(f"Cannot open {self.settings.port}: {exc}") from exc

            self._buffer = ResponseBuffer()
            self._reader = reader
            self._reading = True
            self._read_task = asyncio.create_task(pump(reader, self._buffer, lambda: self._reading))
            self._writer = writer

            await asyncio.sleep(self.timing.link_settle)
            self.clear_buffer()
            await self._handshake()
            return True
        except BaseException:
            await self.disconnect()
            raise

    async def _handshake(self) -> None:
        attempts = self.timing.handshake_attempts
        logger.debug("Establishing CLI prompt...")
        for attempt in range(1, attempts + 1):
            try:
                await self.write_bytes(protocol.INTERRUPT, self.timing.interrupt_pause)
                await self.write(protocol.CRLF)
                await self.read_until(protocol.PROMPT, self.timing.handshake_timeout)
            except FlipperError as exc:
                logger.debug("Prompt attempt %d failed: %s", attempt, exc)
                if attempt < attempts:
                    await asyncio.sleep(self.timing.handshake_retry_delay)
                continue
            self._connected = True
            logger.debug("Connection established")
            return
        logger.warning("No CLI prompt from %s after %d attempts", self.settings.port, attempts)
        raise HandshakeError(attempts)

    async def disconnect(self) -> bool:
        logger.debug("Force disconnecting...")
        reader_task = self._read_task
        writer = self._writer

        self._reader = None
        self._writer = None
        self._read_task = None
        self._reading = False
        self._connected = False
        self._buffer.clear()

        if reader_task is not None and reader_task is not asyncio.current_task():
            reader_task.cancel()
        if writer is not None:
            try:
                writer.close()
                await asyncio.wait_for(writer.wait_closed(), timeout=self.timing.close_timeout)
            except Exception as exc:
                logger.debug("Cleanup errors ignored: %s", exc)
        logger.debug("Force disconnect complete")
        return True

    def _ensure_connected(self) -> None:
        if not self._connected or self._writer is None:
            raise NotConnectedError()

    def clear_buffer(self) -> None:
        self._buffer.clear()

    async def read_until(self, marker: str, timeout: Optional[float] = None) -> str:
        if timeout is None:
            timeout = self.timing.read_timeout
        return await self._buffer.read_until(marker, timeout)

    async def write_bytes(self, data: bytes, delay: Optional[float] = None) -> None:
        writer = self._writer
        if writer is None:
            raise NotConnectedError()
        try:
            writer.write(data)
            await writer.drain()
        except (OSError, serial.SerialException) as exc:
            raise ConnectionFailedError(f"Write to {self.settings.port} failed: {exc}") from exc
        await asyncio.sleep(self.timing.settle_delay if delay is None else delay)

    def interrupt(self) -> bool:
        """Queue the interrupt byte without yielding, so it still goes out from a cancelled task."""
        writer = self._writer
        if writer is None:
            return False
        try:
            writer.write(protocol.INTERRUPT)
        except (OSError, serial.SerialException) as exc:
            logger.debug("Interrupt not sent: %s", exc)
            return False
        return True

    async def write(self, data: str, delay: Optional[float] = None) -> None:
        await self.write_bytes(data.encode("utf-8"), delay)

    async def write_command(self, cmd: str) -> None:
        if not cmd:
            return
        logger.debug("Sending command: %s", cmd)
        await self.write(cmd + protocol.CRLF)
        try:
            await self.read_until(cmd, self.timing.echo_timeout)
            await self.read_until(protocol.CAPTURE_PROMPT, self.timing.prompt_timeout)
        except FlipperError as exc:
            logger.debug("Command response error: %s", exc)
            raise CommandError(cmd, str(exc)) from exc

    async def _send(self, cmd: str) -> None:
        self._ensure_connected()
        self.clear_buffer()
        logger.debug("Sending command: %s", cmd)
        await self.write(cmd + protocol.CRLF)

    async def _request(self, cmd: str) -> str:
        await self._send(cmd)
        try:
            await self.read_until(cmd)
            return await self.read_until(protocol.PROMPT)
        except ReadTimeoutError as exc:
            raise CommandError(cmd, str(exc)) from exc

    async def execute(self, cmd: str) -> str:
        return await self._request(cmd)

    async def list_directory(self, path: str) -> List[FileInfo]:
        response = await self._request(protocol.storage_list(path))
        logger.debug("Directory listing raw response: %r", response)
        return protocol.parse_listing(response, path)

    async def read_file(self, path: str) -> str:
        cmd = protocol.storage_read(path)
        await self._send(cmd)
        try:
            await self.read_until(cmd)
            # the size line may follow the echo's own line ending
            if not await self.read_until("\n"):
                await self.read_until("\n")
            return await self.read_until(protocol.PROMPT)
        except ReadTimeoutError as exc:
            raise CommandError(cmd, str(exc)) from exc

    async def stat(self, path: str) -> str:
        cmd = protocol.storage_stat(path)
        await self._send(cmd)
        try:
            await self.read_until(cmd)
            return await self.read_until(protocol.CAPTURE_PROMPT)
        except ReadTimeoutError as exc:
            raise CommandError(cmd, str(exc)) from exc

    async def write_file(self, path: str, content: Union[str, bytes, bytearray]) -> bool:
        self._ensure_connected()
        logger.debug("Starting write operation for: %s", path)
        self.clear_buffer()

        parent = protocol.parent_directory(path)
        if parent:
            await self.write_command(protocol.storage_mkdir(parent))

        capturing: Optional[Capturing] = None
        try:
            capturing = await RawCapture(self).begin(path)
            await capturing.send(content)
            awaiting = await capturing.finish()
            await awaiting.settle()
        except BaseException:
            if capturing is not None:
                capturing.abort()
            logger.debug("Write failed, buffer: %r", self._buffer.text)
            raise

        response = await self.stat(path)
        if protocol.stat_failed(response):
            logger.warning("Verification of %s failed: %s", path, response)
            raise VerificationError(path, response)
        return True

    async def _loader(self, cmd: str) -> str:
        response = await self._request(cmd)
        if protocol.loader_failed(response):
            raise LoaderError(cmd, response)
        return response

    async def loader_list(self) -> List[str]:
        return protocol.response_lines(await self._loader(protocol.loader_list()))

    async def loader_open(self, app_name: str, file_path: Optional[str] = None) -> bool:
        logger.debug("Opening application: %s with file: %s", app_name, file_path)
        await self._loader(protocol.loader_open(app_name, file_path))
        return True

    async def loader_close(self) -> bool:
        await self._loader(protocol.loader_close())
        return True

    async def loader_info(self) -> str:
        return await self._loader(protocol.loader_info())

    async def loader_signal(self, signal: str, arg: Optional[str] = None) -> bool:
        logger.debug("Sending signal: %s with arg: %s", signal, arg)
        await self._loader(protocol.loader_signal(signal, arg))
        return True

    async def open_bad_usb(self) -> bool:
        info = await self.loader_info()
        if "running" in info:
            await self.loader_close()
        await self.loader_open(BAD_USB)
        return True
