import asyncio
import shlex
from typing import Dict, List, Optional, Set
import pytest
from flipper_serial.core import ShellTiming
from flipper_serial.driver import FlipperSerial
from flipper_serial import protocol


PROMPT = "\r\n>: "
APPS = ["Bad USB", "Sub-GHz", "NFC", "Infrared"]


class FakeWriter:

    def __init__(self, shell: "FakeShell") -> None:
        self._shell = shell
        self.closed = False
        self.faults = 0

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("port closed")
        if self.faults:
            self.faults -= 1
            raise OSError(5, "Input/output error")
        self._shell.receive(data)

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True
        self._shell.reader.feed_eof()

    def is_closing(self) -> bool:
        return self.closed

    async def wait_closed(self) -> None:
        pass


class FakeShell:
    """Just enough of the Flipper CLI to drive the client over in-memory streams."""

    def __init__(self, respond: bool = True) -> None:
        self.respond = respond
        self.files: Dict[str, bytes] = {}
        self.dirs: Set[str] = {"/ext"}
        self.commands: List[str] = []
        self.interrupts = 0
        self.running: Optional[str] = None
        self.opened = 0
        self.reader: asyncio.StreamReader
        self.writer: FakeWriter
        self._line = bytearray()
        self._capture_path: Optional[str] = None
        self._capture = bytearray()

    async def open(self, url: str, baudrate: int):
        self.opened += 1
        self.reader = asyncio.StreamReader()
        self.writer = FakeWriter(self)
        self.reader.feed_data(b"\r\nWelcome to Flipper Zero Command Line Interface!\r\n")
        return self.reader, self.writer

    def emit(self, text: str) -> None:
        if self.respond:
            self.reader.feed_data(text.encode("utf-8"))

    def receive(self, data: bytes) -> None:
        for byte in data:
            if self._capture_path is not None:
                if byte == 0x03:
                    self.interrupts += 1
                    self.files[self._capture_path] = bytes(self._capture)
                    self._capture_path = None
                    self._capture.clear()
                    self.emit(PROMPT)
                else:
                    self._capture.append(byte)
                continue
            if byte == 0x03:
                self.interrupts += 1
                self._line.clear()
                self.emit(PROMPT)
            elif byte == 0x0A:
                line = self._line.decode("utf-8")
                self._line.clear()
                self.run(line)
            elif byte != 0x0D:
                self._line.append(byte)

    def run(self, line: str) -> None:
        if not line:
            self.emit(PROMPT)
            return
        self.commands.append(line)
        self.emit(line + "\r\n")
        args = shlex.split(line)
        name = " ".join(args[:2])
        handler = getattr(self, "do_" + name.replace(" ", "_"), None)
        if handler is None:
            output = f"could not find command `{args[0]}`"
        else:
            output = handler(*args[2:])
            if output is None:
                return
        self.emit(output + PROMPT if output else PROMPT.lstrip("\r\n"))

    def do_storage_list(self, path: str) -> str:
        if path not in self.dirs:
            return "Storage error: invalid name/path"
        lines = []
        for d in sorted(self.dirs):
            if protocol.parent_directory(d) == path:
                lines.append(f"[D] {d.rsplit('/', 1)[-1]}")
        for f, content in sorted(self.files.items()):
            if protocol.parent_directory(f) == path:
                lines.append(f"[F] {f.rsplit('/', 1)[-1]} {len(content)}b")
        return "\r\n".join(lines) if lines else "Empty"

    def do_storage_mkdir(self, path: str) -> str:
        if path in self.dirs:
            return "Storage error: already exists"
        self.dirs.add(path)
        return ""

    def do_storage_write(self, path: str) -> None:
        self._capture_path = path
        self.emit(protocol.WRITE_BANNER + "\r\n")
        return None

    def do_storage_read(self, path: str) -> str:
        if path not in self.files:
            return "Storage error: file/dir not exist"
        content = self.files[path]
        return f"Size: {len(content)}\r\n" + content.decode("utf-8", errors="replace")

    def do_storage_stat(self, path: str) -> str:
        if path in self.files:
            return f"File, size: {len(self.files[path])}b"
        if path in self.dirs:
            return "Directory"
        return "Storage error: not found"

    def do_loader_list(self) -> str:
        return "Applications:\r\n" + "\r\n".join(f"\t{app}" for app in APPS)

    def do_loader_open(self, app: str, *args: str) -> str:
        if app not in APPS:
            return f"Error: application \"{app}\" not found"
        if self.running:
            return f"Error: application \"{self.running}\" is already open"
        self.running = app
        return ""

    def do_loader_close(self) -> str:
        if not self.running:
            return "Error: no application open"
        closed, self.running = self.running, None
        return f"Application \"{closed}\" was closed"

    def do_loader_info(self) -> str:
        if self.running:
            return f"Application \"{self.running}\" is running"
        return "No application opened"

    def do_loader_signal(self, signal: str, *args: str) -> str:
        if not self.running:
            return "Error: no application open"
        return f"Signal {signal} sent, result: true"


@pytest.fixture
def timing() -> ShellTiming:
    return ShellTiming(
        settle_delay=0,
        link_settle=0,
        interrupt_pause=0,
        handshake_timeout=0.2,
        handshake_retry_delay=0,
        echo_timeout=1.0,
        prompt_timeout=1.0,
        read_timeout=1.0,
        banner_timeout=1.0,
        payload_settle=0,
        terminator_settle=0,
        capture_exit_settle=0,
        post_capture_settle=0,
        close_timeout=0.1,
    )


@pytest.fixture
def shell() -> FakeShell:
    return FakeShell()


@pytest.fixture
def flipper(shell: FakeShell, timing: ShellTiming) -> FlipperSerial:
    return FlipperSerial("/dev/ttyACM0", timing=timing, opener=shell.open)
