from __future__ import annotations

import math
import posixpath
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sysnap.utils import StrEnum

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_MAX_FILE_SIZE = 50 * 1024 * 1024

# Amount of leading bytes handed to the content sniffer
SNIFF_SIZE = 8192

# Credential caches, key containers, compiled databases and object code. Matched against the
# end of the lower cased file name, so write-ahead logs like ``.sqlite-wal`` need their own entry.
DENIED_SUFFIXES = frozenset(
    {
        ".kdbx",
        ".kdb",
        ".keytab",
        ".keystore",
        ".keyring",
        ".jks",
        ".p12",
        ".pfx",
        ".gpg",
        ".pgp",
        ".key",
        ".db",
        ".db3",
        ".db-wal",
        ".db-shm",
        ".sqlite",
        ".sqlite3",
        ".sqlite-wal",
        ".sqlite-shm",
        ".ldb",
        ".mdb",
        ".pyc",
        ".pyo",
        ".o",
        ".so",
        ".a",
        ".mo",
        ".bin",
    }
)

MAGIC_SIGNATURES = (
    (b"\x7fELF", "ELF executable"),
    (b"SQLite format 3\x00", "SQLite database"),
    (b"\xfe\xed\xfa\xce", "Mach-O executable"),
    (b"\xfe\xed\xfa\xcf", "Mach-O executable"),
    (b"\xce\xfa\xed\xfe", "Mach-O executable"),
    (b"\xcf\xfa\xed\xfe", "Mach-O executable"),
    (b"\xca\xfe\xba\xbe", "Mach-O universal binary or Java class"),
    (b"\x00asm", "WebAssembly module"),
    (b"\x1f\x8b", "gzip compressed data"),
    (b"\xfd7zXZ\x00", "XZ compressed data"),
    (b"\x28\xb5\x2f\xfd", "Zstandard compressed data"),
    (b"7z\xbc\xaf\x27\x1c", "7-zip archive"),
    (b"PK\x03\x04", "Zip archive"),
    (b"\x89PNG\r\n\x1a\n", "PNG image"),
    (b"\xff\xd8\xff", "JPEG image"),
    (b"GIF87a", "GIF image"),
    (b"GIF89a", "GIF image"),
    (b"%PDF-", "PDF document"),
    (b"\xde\x12\x04\x95", "GNU message catalog"),
)

# Control characters tolerated in UTF-8 text: tab, newline, form feed, carriage return, escape
ALLOWED_CONTROL = frozenset("\t\n\f\r\x1b")
MAX_CONTROL_RATIO = 0.05

ANSI_ESCAPE_RE = re.compile(
    rb"\x1b(?:\[[0-?]*[ -/]*[@-~]|\][^\x07\x1b]*(?:\x07|\x1b\\)|[PX^_][^\x1b]*\x1b\\|[()*+].|[0-~])",
    re.DOTALL,
)

SECRET_NAME_RE = re.compile(
    r"TOKEN|SECRET|PASSWORD|PASSWD|PASSPHRASE|API_?KEY|ACCESS_KEY|SESSION_KEY|PRIVATE|CREDENTIAL|AUTH",
    re.IGNORECASE,
)
REDACTED = "<redacted>"

IEC_UNITS = ("Ki", "Mi", "Gi", "Ti", "Pi", "Ei")


class SkipReason(StrEnum):
    NOT_FOUND = "NotFound"
    PERMISSION_DENIED = "PermissionDenied"
    TOO_LARGE = "TooLarge"
    BINARY_OR_DATA_FILE = "BinaryOrDataFile"
    SECRET = "Secret"


@dataclass(frozen=True)
class Verdict:
    reason: SkipReason | None = None
    detail: str | None = None

    @property
    def admitted(self) -> bool:
        return self.reason is None


ADMIT = Verdict()


def deny(reason: SkipReason, detail: str | None = None) -> Verdict:
    return Verdict(reason=reason, detail=detail)


def sniff(head: bytes) -> str | None:
    """Return a description of ``head`` when it looks like binary or opaque data, ``None`` for text.

    Anything that can not be positively identified as text is reported, so callers fail towards
    exclusion. An empty sample is text.
    """
    if not head:
        return None

    for signature, description in MAGIC_SIGNATURES:
        if head.startswith(signature):
            return description

    if b"\x00" in head:
        return "data (contains NUL bytes)"

    try:
        text = head.decode("utf-8")
    except UnicodeDecodeError as error:
        # Only a full sample may end in the middle of a multi-byte sequence
        if len(head) < SNIFF_SIZE or error.reason != "unexpected end of data":
            return "data (not UTF-8 text)"
        text = head[: error.start].decode("utf-8")

    if text:
        control = sum(1 for char in text if ord(char) < 32 and char not in ALLOWED_CONTROL)
        if control / len(text) > MAX_CONTROL_RATIO:
            return "data (control characters)"

    return None


def is_private_key(head: bytes) -> bool:
    first_line = head.lstrip().split(b"\n", 1)[0]
    return first_line.startswith(b"-----BEGIN") and b"PRIVATE KEY" in first_line


@dataclass(frozen=True)
class AdmissionPolicy:
    """Decides whether the content of a file may be written verbatim into a snapshot."""

    max_size: int = DEFAULT_MAX_FILE_SIZE
    denied_suffixes: frozenset[str] = DENIED_SUFFIXES

    def classify(self, path: str, size: int, head: bytes = b"") -> Verdict:
        """Classify a file by its path, its size in bytes and its first :data:`SNIFF_SIZE` bytes.

        The rules are evaluated in order and the first match wins: denied suffix, size ceiling,
        content sniffing, private key header. This function does no I/O.
        """
        name = posixpath.basename(path).lower()
        for suffix in self.denied_suffixes:
            if name.endswith(suffix):
                return deny(SkipReason.BINARY_OR_DATA_FILE, f"{suffix} file")

        if size > self.max_size:
            return deny(SkipReason.TOO_LARGE)

        if description := sniff(head):
            return deny(SkipReason.BINARY_OR_DATA_FILE, description)

        if is_private_key(head):
            return deny(SkipReason.SECRET, "private key")

        return ADMIT


def strip_ansi(data: bytes) -> bytes:
    """Remove terminal color and cursor control sequences, leaving everything else untouched."""
    return ANSI_ESCAPE_RE.sub(b"", data)


def redact_environment(environ: Mapping[str, str]) -> dict[str, str]:
    return {
        name: REDACTED if SECRET_NAME_RE.search(name) else value for name, value in sorted(environ.items())
    }


def format_size(size: int) -> str:
    """Format a byte count like ``numfmt --to=iec-i --suffix=B`` does, e.g. ``60MiB``."""
    if size < 1024:
        return f"{size}B"

    value = float(size)
    for unit in IEC_UNITS:
        value /= 1024
        if value < 1024:
            break

    if value < 10:
        value = math.ceil(value * 10) / 10
        if value < 10:
            return f"{value:.1f}{unit}B"

    return f"{math.ceil(value)}{unit}B"
