from __future__ import annotations

from dataclasses import dataclass
import os
import re
import secrets
import time
from pathlib import Path
from typing import Optional


NOTE_ID_PATTERN = re.compile(r"[a-zA-Z0-9_-]{1,64}")
NOTE_ID_ALPHABET = "234579abcdefghjkmnpqrstwxyz"
NOTE_ID_LENGTH = 5

EXCERPT_LENGTH = 150

UPLOAD_URL_PREFIX = "/_tmp/"
DEFAULT_UPLOAD_NAME = "upload.bin"
UNSAFE_FILENAME_CHARS = re.compile(r"[\\/:*?\"<>|]")
IMAGE_EXTENSIONS = {
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".webp",
    ".bmp",
    ".svg",
}


class StorageLimitExceeded(Exception):
    """Base class for the configured save-path limits."""

    def __init__(self, limit: int, message: str) -> None:
        super().__init__(message)
        self.limit = limit


class FileCountLimitExceeded(StorageLimitExceeded):
    def __init__(self, limit: int) -> None:
        super().__init__(limit, f"File limit reached {limit}")


class FileSizeLimitExceeded(StorageLimitExceeded):
    def __init__(self, limit: int, size: int) -> None:
        super().__init__(limit, f"File size limit reached {limit} ({size} bytes)")
        self.size = size


@dataclass
class StoredUpload:
    name: str
    url: str
    is_image: bool
    size: int


def generate_note_id(length: int = NOTE_ID_LENGTH) -> str:
    return "".join(secrets.choice(NOTE_ID_ALPHABET) for _ in range(length))


def is_valid_note_id(note_id: str) -> bool:
    return NOTE_ID_PATTERN.fullmatch(note_id) is not None


def note_path(save_path: Path, note_id: str) -> Path:
    """Return the file backing ``note_id``.

    Raises ``ValueError`` for IDs outside ``NOTE_ID_PATTERN``; a valid ID can
    never contain a path separator, so the result always sits directly under
    ``save_path``.
    """

    if not is_valid_note_id(note_id):
        raise ValueError(f"Invalid note id: {note_id!r}")
    return save_path / note_id


def count_files(directory: Path) -> int:
    """Count regular files directly inside ``directory`` (not recursive)."""

    with os.scandir(directory) as entries:
        return sum(1 for entry in entries if entry.is_file())


def check_limits(save_path: Path, size: int, file_limit: int, size_limit: int) -> None:
    if count_files(save_path) >= file_limit:
        raise FileCountLimitExceeded(file_limit)
    if size > size_limit:
        raise FileSizeLimitExceeded(size_limit, size)


def read_note(save_path: Path, note_id: str) -> bytes:
    """Return the stored bytes for ``note_id``; a missing note reads as empty."""

    path = note_path(save_path, note_id)
    if not path.is_file():
        return b""
    return path.read_bytes()


def write_note(
    save_path: Path,
    note_id: str,
    content: bytes,
    file_limit: int,
    size_limit: int,
) -> bool:
    """Overwrite ``note_id`` with ``content``.

    Empty content removes the note instead. Returns ``True`` when a file was
    written and ``False`` when the note was removed (or never existed).
    """

    path = note_path(save_path, note_id)
    check_limits(save_path, len(content), file_limit, size_limit)

    if not content:
        path.unlink(missing_ok=True)
        return False

    path.write_bytes(content)
    return True


def generate_excerpt(text: str, length: int = EXCERPT_LENGTH) -> str:
    excerpt = text[:length]
    if len(text) > length:
        excerpt += "..."
    return excerpt


def sanitize_filename(name: str) -> str:
    cleaned = UNSAFE_FILENAME_CHARS.sub("_", name)
    return cleaned or "file"


def _unique_name(save_path: Path, name: str) -> str:
    if not (save_path / name).exists():
        return name

    candidate = Path(name)
    stem, suffix = candidate.stem, candidate.suffix
    counter = 1
    while (save_path / f"{stem}-{counter}{suffix}").exists():
        counter += 1
    return f"{stem}-{counter}{suffix}"


def build_upload_name(save_path: Path, original_name: Optional[str], timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    safe_name = sanitize_filename(original_name or DEFAULT_UPLOAD_NAME)
    return _unique_name(save_path, f"{ts}_{safe_name}")


def store_upload(
    save_path: Path,
    original_name: Optional[str],
    data: bytes,
    file_limit: int,
    size_limit: int,
) -> StoredUpload:
    """Write an uploaded attachment under ``save_path``.

    Limits are checked before anything touches the disk, so a rejected
    upload leaves no file behind.
    """

    check_limits(save_path, len(data), file_limit, size_limit)

    name = build_upload_name(save_path, original_name)
    (save_path / name).write_bytes(data)

    return StoredUpload(
        name=name,
        url=f"{UPLOAD_URL_PREFIX}{name}",
        is_image=Path(name).suffix.lower() in IMAGE_EXTENSIONS,
        size=len(data),
    )


def resolve_served_file(directory: Path, name: str) -> Path:
    """Resolve ``name`` inside ``directory`` for read-only serving.

    ``../`` sequences are stripped first; anything that still resolves
    outside ``directory`` raises ``ValueError``.
    """

    safe = name.replace("../", "").replace("..\\", "")
    if not safe or safe.startswith(("/", "\\")):
        raise ValueError("File name must be relative")

    root = directory.resolve()
    target = (root / safe).resolve()

    try:
        target.relative_to(root)
    except ValueError as exc:
        raise ValueError("Resolved path escapes the served directory") from exc

    return target
