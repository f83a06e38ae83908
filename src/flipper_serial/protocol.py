import re
from typing import List, Optional
from flipper_serial.core import FileInfo, FileType


CRLF = "\r\n"
INTERRUPT = b"\x03"
PROMPT = ">"
CAPTURE_PROMPT = ">:"
WRITE_BANNER = "Just write your text data. New line by Ctrl+Enter, exit by Ctrl+C."
DIRECTORY_MARKER = "[D]"
FILE_MARKER = "[F]"
STAT_FAILURE_KEYWORDS = ("Error", "not found")

FILE_TYPES = {
    "txt": FileType.TEXT,
    "sub": FileType.SUBGHZ,
    "rfid": FileType.RFID,
    "ir": FileType.INFRARED,
    "nfc": FileType.NFC,
    "js": FileType.SCRIPT,
    "fap": FileType.APPLICATION,
    "ibtn": FileType.IBUTTON,
}

_SEPARATORS = re.compile(r"/+")


def storage_list(path: str) -> str:
    return f"storage list {path}"


def storage_read(path: str) -> str:
    return f"storage read {path}"


def storage_write(path: str) -> str:
    return f"storage write {path}"


def storage_mkdir(path: str) -> str:
    return f"storage mkdir {path}"


def storage_stat(path: str) -> str:
    return f"storage stat {path}"


def loader_list() -> str:
    return "loader list"


def loader_open(app_name: str, file_path: Optional[str] = None) -> str:
    if file_path:
        return f'loader open "{app_name}" "{file_path}"'
    return f'loader open "{app_name}"'


def loader_close() -> str:
    return "loader close"


def loader_info() -> str:
    return "loader info"


def loader_signal(signal: str, arg: Optional[str] = None) -> str:
    if arg:
        return f"loader signal {signal} {arg}"
    return f"loader signal {signal}"


def parent_directory(path: str) -> str:
    return path[: path.rfind("/")] if "/" in path else ""


def join_path(parent: str, name: str) -> str:
    return _SEPARATORS.sub("/", f"{parent}/{name}")


def file_type(filename: str) -> FileType:
    ext = filename.rsplit(".", 1)[-1].lower()
    return FILE_TYPES.get(ext, FileType.UNKNOWN)


def response_lines(response: str) -> List[str]:
    """Split a shell response into trimmed lines, dropping blanks and prompt fragments."""
    lines = (line.strip() for line in response.split("\n"))
    return [line for line in lines if line and PROMPT not in line]


def parse_listing_line(line: str, parent: str) -> Optional[FileInfo]:
    is_directory = line.startswith(DIRECTORY_MARKER)
    is_file = line.startswith(FILE_MARKER)
    if not is_directory and not is_file:
        return None

    parts = line[len(DIRECTORY_MARKER):].split()
    if not parts:
        return None
    name = parts[0]
    size = 0
    if is_file and len(parts) > 1:
        digits = re.match(r"\d+", parts[1])
        size = int(digits.group()) if digits else 0

    return FileInfo(
        name=name,
        is_directory=is_directory,
        path=join_path(parent, name),
        size=size,
        type=FileType.DIRECTORY if is_directory else file_type(name),
    )


def parse_listing(response: str, parent: str) -> List[FileInfo]:
    files = []
    for line in response_lines(response):
        info = parse_listing_line(line, parent)
        if info is not None:
            files.append(info)
    return files


def stat_failed(response: str) -> bool:
    return any(keyword in response for keyword in STAT_FAILURE_KEYWORDS)


def loader_failed(response: str) -> bool:
    # Free-form device text; a legitimate response mentioning "error" is a false positive.
    return "error" in response.lower()
