import asyncio
import codecs
import logging
from typing import Callable, Optional
import serial
from flipper_serial.core import ReadTimeoutError

logger = logging.getLogger(__name__)


class ResponseBuffer:
    """Text received from the shell, consumed one marker at a time.

    The ingest loop appends and wakes any waiting extraction; extraction
    splits the buffer on the first occurrence of a marker. Only one
    extraction may be outstanding at a time, the shell being strictly
    request/response.
    """

    def __init__(self) -> None:
        self._text = ""
        self._arrived = asyncio.Event()

    def __len__(self) -> int:
        return len(self._text)

    @property
    def text(self) -> str:
        return self._text

    def append(self, text: str) -> None:
        if not text:
            return
        self._text += text
        self._arrived.set()

    def clear(self) -> None:
        self._text = ""

    def take(self, marker: str) -> Optional[str]:
        index = self._text.find(marker)
        if index == -1:
            return None
        response = self._text[:index]
        self._text = self._text[index + len(marker):]
        return response.strip()

    async def read_until(self, marker: str, timeout: float = 5.0) -> str:
        if not marker:
            raise ValueError("marker must be a non-empty string")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            self._arrived.clear()
            response = self.take(marker)
            if response is not None:
                return response

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug("Timeout waiting for %r, buffer: %r", marker, self._text)
                raise ReadTimeoutError(marker, self._text, timeout)
            try:
                await asyncio.wait_for(self._arrived.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass


async def pump(reader: asyncio.StreamReader, buffer: ResponseBuffer, running: Callable[[], bool], chunk_size: int = 1024) -> None:
    """Move everything the device sends into ``buffer`` until EOF or ``running()`` goes false."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    logger.debug("Read loop started")
    while running():
        try:
            chunk = await reader.read(chunk_size)
        except (OSError, serial.SerialException) as exc:
            logger.debug("Read loop stopped on channel fault: %s", exc)
            break
        if not chunk or not running():
            break
        decoded = decoder.decode(chunk)
        logger.debug("Received: %r", decoded)
        buffer.append(decoded)
    logger.debug("Read loop exited")
