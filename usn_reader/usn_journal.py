"""
USN Change Journal ($UsnJrnl:$J) decoder for NTFS forensic analysis.

The $J stream is sparse: unused regions read back as zeros and records are
packed on 4-byte boundaries. Records are located by skipping zero padding,
decoded as USN_RECORD_V2 and optionally given a full path through a $MFT
lookup (see resolve_display_name for when that path is trusted).
"""

import io
import logging
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Iterator, Protocol

from .mft_parser import MftIndex, MftLookupError

logger = logging.getLogger(__name__)

SCAN_CHUNK_SIZE = 65535
USN_RECORD_HEADER_SIZE = 60
USN_MAJOR_VERSION = 2
USN_MINOR_VERSION = 0

# Windows FILETIME epoch (1601-01-01) expressed in Unix seconds, and ticks per second
_FILETIME_EPOCH_OFFSET = 11644473600
_TICKS_PER_SECOND = 10_000_000
_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# record_length, version major/minor, file ref, parent ref, usn, timestamp,
# reason, source info, security id, file attributes, filename length/offset
_USN_HEADER = struct.Struct("<IHHQQQQIIIIHH")

_ZERO_WORD = b"\x00\x00\x00\x00"


# --- Errors ---

class UsnError(Exception):
    """A journal record could not be decoded. Fatal for the whole scan."""

    def __init__(self, message: str, offset: int | None = None):
        if offset is not None:
            message = f"{message} (record at offset {offset})"
        super().__init__(message)
        self.offset = offset


class VersionMismatch(UsnError):
    """Record is not USN_RECORD_V2 (version 2.0); its field offsets cannot be trusted."""


class MalformedRecord(UsnError):
    """Record length or filename length fields are inconsistent."""


class TruncatedRecord(UsnError):
    """Stream ended inside a record."""


# --- Reason and attribute flags ---

USN_REASON_DATA_OVERWRITE = 0x00000001
USN_REASON_DATA_EXTEND = 0x00000002
USN_REASON_DATA_TRUNCATION = 0x00000004
USN_REASON_NAMED_DATA_OVERWRITE = 0x00000010
USN_REASON_NAMED_DATA_EXTEND = 0x00000020
USN_REASON_NAMED_DATA_TRUNCATION = 0x00000040
USN_REASON_FILE_CREATE = 0x00000100
USN_REASON_FILE_DELETE = 0x00000200
USN_REASON_EA_CHANGE = 0x00000400
USN_REASON_SECURITY_CHANGE = 0x00000800
USN_REASON_RENAME_OLD_NAME = 0x00001000
USN_REASON_RENAME_NEW_NAME = 0x00002000
USN_REASON_INDEXABLE_CHANGE = 0x00004000
USN_REASON_BASIC_INFO_CHANGE = 0x00008000
USN_REASON_HARD_LINK_CHANGE = 0x00010000
USN_REASON_COMPRESSION_CHANGE = 0x00020000
USN_REASON_ENCRYPTION_CHANGE = 0x00040000
USN_REASON_OBJECT_ID_CHANGE = 0x00080000
USN_REASON_REPARSE_POINT_CHANGE = 0x00100000
USN_REASON_STREAM_CHANGE = 0x00200000
USN_REASON_CLOSE = 0x80000000  # handle closed; flushes the reasons accumulated while it was open

# Declaration order is rendering order
USN_REASON_NAMES = {
    USN_REASON_DATA_OVERWRITE: "DataOverwrite",
    USN_REASON_DATA_EXTEND: "DataExtend",
    USN_REASON_DATA_TRUNCATION: "DataTruncation",
    USN_REASON_NAMED_DATA_OVERWRITE: "NamedDataOverwrite",
    USN_REASON_NAMED_DATA_EXTEND: "NamedDataExtend",
    USN_REASON_NAMED_DATA_TRUNCATION: "NamedDataTruncation",
    USN_REASON_FILE_CREATE: "FileCreate",
    USN_REASON_FILE_DELETE: "FileDelete",
    USN_REASON_EA_CHANGE: "EaChange",
    USN_REASON_SECURITY_CHANGE: "SecurityChange",
    USN_REASON_RENAME_OLD_NAME: "RenameOldName",
    USN_REASON_RENAME_NEW_NAME: "RenameNewName",
    USN_REASON_INDEXABLE_CHANGE: "IndexableChange",
    USN_REASON_BASIC_INFO_CHANGE: "BasicInfoChange",
    USN_REASON_HARD_LINK_CHANGE: "HardLinkChange",
    USN_REASON_COMPRESSION_CHANGE: "CompressionChange",
    USN_REASON_ENCRYPTION_CHANGE: "EncryptionChange",
    USN_REASON_OBJECT_ID_CHANGE: "ObjectIdChange",
    USN_REASON_REPARSE_POINT_CHANGE: "ReparsePointChange",
    USN_REASON_STREAM_CHANGE: "StreamChange",
    USN_REASON_CLOSE: "Close",
}

FILE_ATTRIBUTE_READONLY = 0x00000001
FILE_ATTRIBUTE_HIDDEN = 0x00000002
FILE_ATTRIBUTE_SYSTEM = 0x00000004
FILE_ATTRIBUTE_DIRECTORY = 0x00000010
FILE_ATTRIBUTE_ARCHIVE = 0x00000020
FILE_ATTRIBUTE_DEVICE = 0x00000040
FILE_ATTRIBUTE_NORMAL = 0x00000080
FILE_ATTRIBUTE_TEMPORARY = 0x00000100
FILE_ATTRIBUTE_SPARSE_FILE = 0x00000200
FILE_ATTRIBUTE_REPARSE_POINT = 0x00000400
FILE_ATTRIBUTE_COMPRESSED = 0x00000800
FILE_ATTRIBUTE_OFFLINE = 0x00001000
FILE_ATTRIBUTE_NOT_CONTENT_INDEXED = 0x00002000
FILE_ATTRIBUTE_ENCRYPTED = 0x00004000
FILE_ATTRIBUTE_INTEGRITY_STREAM = 0x00008000
FILE_ATTRIBUTE_VIRTUAL = 0x00010000
FILE_ATTRIBUTE_NO_SCRUB_DATA = 0x00020000

FILE_ATTRIBUTE_NAMES = {
    FILE_ATTRIBUTE_READONLY: "ReadOnly",
    FILE_ATTRIBUTE_HIDDEN: "Hidden",
    FILE_ATTRIBUTE_SYSTEM: "System",
    FILE_ATTRIBUTE_DIRECTORY: "Directory",
    FILE_ATTRIBUTE_ARCHIVE: "Archive",
    FILE_ATTRIBUTE_DEVICE: "Device",
    FILE_ATTRIBUTE_NORMAL: "Normal",
    FILE_ATTRIBUTE_TEMPORARY: "Temporary",
    FILE_ATTRIBUTE_SPARSE_FILE: "SparseFile",
    FILE_ATTRIBUTE_REPARSE_POINT: "ReparsePoint",
    FILE_ATTRIBUTE_COMPRESSED: "Compressed",
    FILE_ATTRIBUTE_OFFLINE: "Offline",
    FILE_ATTRIBUTE_NOT_CONTENT_INDEXED: "NotContentIndexed",
    FILE_ATTRIBUTE_ENCRYPTED: "Encrypted",
    FILE_ATTRIBUTE_INTEGRITY_STREAM: "IntegrityStream",
    FILE_ATTRIBUTE_VIRTUAL: "Virtual",
    FILE_ATTRIBUTE_NO_SCRUB_DATA: "NoScrubData",
}

_REASON_MASK = sum(USN_REASON_NAMES)
_ATTRIBUTE_MASK = sum(FILE_ATTRIBUTE_NAMES)


def _flag_names(bits: int, names: dict[int, str]) -> list[str]:
    return [name for flag, name in names.items() if bits & flag]


@dataclass(frozen=True)
class ReasonFlags:
    """USN reason bitmask; bits without a known name are dropped."""
    bits: int = 0

    @classmethod
    def from_bits_truncate(cls, bits: int) -> "ReasonFlags":
        return cls(bits & _REASON_MASK)

    def __contains__(self, flag: int) -> bool:
        return flag != 0 and (self.bits & flag) == flag

    def names(self) -> list[str]:
        return _flag_names(self.bits, USN_REASON_NAMES)

    def __str__(self) -> str:
        return " ".join(self.names())


@dataclass(frozen=True)
class AttributeFlags:
    """File attribute bitmask; bits without a known name are dropped."""
    bits: int = 0

    @classmethod
    def from_bits_truncate(cls, bits: int) -> "AttributeFlags":
        return cls(bits & _ATTRIBUTE_MASK)

    def __contains__(self, flag: int) -> bool:
        return flag != 0 and (self.bits & flag) == flag

    def names(self) -> list[str]:
        return _flag_names(self.bits, FILE_ATTRIBUTE_NAMES)

    def __str__(self) -> str:
        return " ".join(self.names())


# --- Record ---

@dataclass(frozen=True)
class JournalEntry:
    """
    One USN_RECORD_V2. file_reference packs the MFT entry number (low 48 bits)
    and the slot's reuse sequence number (high 16 bits); same for parent_file_reference.
    """
    record_length: int
    version_major: int
    version_minor: int
    file_reference: int
    parent_file_reference: int
    update_sequence_number: int
    timestamp: int          # FILETIME (100ns since 1601-01-01 UTC)
    reason_bits: int
    source_info: int
    security_id: int
    file_attribute_bits: int
    filename_length: int    # bytes
    filename_offset: int
    filename: str

    def unix_timestamp(self) -> int:
        return self.timestamp // _TICKS_PER_SECOND - _FILETIME_EPOCH_OFFSET

    def time(self) -> datetime | None:
        """UTC datetime of the timestamp, or None when it lies outside datetime's range."""
        try:
            return _UNIX_EPOCH + timedelta(seconds=self.unix_timestamp())
        except (OverflowError, ValueError):
            return None

    def time_text(self, fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
        dt = self.time()
        if dt is None:
            return f"(invalid: {self.timestamp})"
        return dt.strftime(fmt)

    def mft_entry_number(self) -> int:
        return self.file_reference & 0xFFFFFFFFFFFF

    def sequence_number(self) -> int:
        return (self.file_reference >> 48) & 0xFFFF

    def parent_mft_entry_number(self) -> int:
        return self.parent_file_reference & 0xFFFFFFFFFFFF

    def parent_sequence_number(self) -> int:
        return (self.parent_file_reference >> 48) & 0xFFFF

    def reasons(self) -> ReasonFlags:
        return ReasonFlags.from_bits_truncate(self.reason_bits)

    def attributes(self) -> AttributeFlags:
        return AttributeFlags.from_bits_truncate(self.file_attribute_bits)

    def pack(self) -> bytes:
        """Encode back to the on-disk layout: header, UTF-16LE filename, zero padding."""
        name = self.filename.encode("utf-16-le", errors="surrogatepass")
        padding = self.record_length - USN_RECORD_HEADER_SIZE - len(name)
        if padding < 0:
            raise ValueError(f"record_length {self.record_length} too small for filename {self.filename!r}")
        header = _USN_HEADER.pack(
            self.record_length, self.version_major, self.version_minor,
            self.file_reference, self.parent_file_reference, self.update_sequence_number,
            self.timestamp, self.reason_bits, self.source_info, self.security_id,
            self.file_attribute_bits, self.filename_length, self.filename_offset,
        )
        return header + name + b"\x00" * padding


def _read_exact(stream: BinaryIO, size: int, record_offset: int, what: str) -> bytes:
    data = stream.read(size)
    if len(data) < size:
        raise TruncatedRecord(f"Stream ended while reading {what}: wanted {size} bytes, got {len(data)}", record_offset)
    return data


def decode_entry(stream: BinaryIO) -> JournalEntry:
    """
    Decode one record at the current stream position and leave the stream
    exactly record_length bytes further on.
    """
    start = stream.tell()
    (
        record_length, major, minor, file_ref, parent_ref, usn, timestamp,
        reason, source_info, security_id, file_attributes, name_len, name_offset,
    ) = _USN_HEADER.unpack(_read_exact(stream, USN_RECORD_HEADER_SIZE, start, "record header"))

    if (major, minor) != (USN_MAJOR_VERSION, USN_MINOR_VERSION):
        raise VersionMismatch(f"Entry version mismatch: expected 2.0, got {major}.{minor}", start)
    if record_length < USN_RECORD_HEADER_SIZE:
        raise MalformedRecord(f"Record length {record_length} is shorter than the {USN_RECORD_HEADER_SIZE}-byte header", start)
    if name_len % 2:
        raise MalformedRecord(f"Filename length {name_len} is not a whole number of UTF-16 code units", start)
    if name_len > record_length - USN_RECORD_HEADER_SIZE:
        raise MalformedRecord(f"Filename length {name_len} overruns record length {record_length}", start)
    if name_offset != USN_RECORD_HEADER_SIZE:
        logger.debug("Record at offset %d has filename offset %d; reading filename after the header", start, name_offset)

    filename = _read_exact(stream, name_len, start, "filename").decode("utf-16-le", errors="replace")
    _read_exact(stream, record_length - USN_RECORD_HEADER_SIZE - name_len, start, "record padding")

    return JournalEntry(
        record_length=record_length,
        version_major=major,
        version_minor=minor,
        file_reference=file_ref,
        parent_file_reference=parent_ref,
        update_sequence_number=usn,
        timestamp=timestamp,
        reason_bits=reason,
        source_info=source_info,
        security_id=security_id,
        file_attribute_bits=file_attributes,
        filename_length=name_len,
        filename_offset=name_offset,
        filename=filename,
    )


# --- Scanning over sparse regions ---

def find_first_record(stream: BinaryIO, start_offset: int | None = None) -> bool:
    """
    Seek to start_offset (if given), then skip zero bytes in large chunks.
    Leaves the stream on the first non-zero byte and returns True, or returns
    False when only zeros remain.
    """
    if start_offset is not None:
        stream.seek(start_offset)
    while True:
        chunk = stream.read(SCAN_CHUNK_SIZE)
        if not chunk:
            return False
        rest = chunk.lstrip(b"\x00")
        if rest:
            stream.seek(-len(rest), io.SEEK_CUR)
            return True


def find_next_record(stream: BinaryIO) -> bool:
    """Skip zero 4-byte words after a record; False on end of stream."""
    while True:
        word = stream.read(4)
        if len(word) < 4:
            return False
        if word != _ZERO_WORD:
            stream.seek(-4, io.SEEK_CUR)
            return True


# --- Path resolution ---

class MftLookup(Protocol):
    """What the resolver needs from a parsed $MFT (MftIndex implements it)."""

    def get_entry_by_id(self, entry_number: int): ...

    def find_best_name_attribute(self, entry): ...

    def get_full_path_for_entry(self, entry) -> str | None: ...


def resolve_display_name(entry: JournalEntry, mft: MftLookup | None) -> str:
    """
    Full path from the MFT when it can be trusted, else the record's own filename.

    MFT slots are reused, so the slot named by the record may now hold a
    different file. The MFT path is only used when the slot's current best
    name equals the record's filename exactly. This is a heuristic, not proof.
    """
    filename = entry.filename
    if mft is None:
        return filename
    try:
        mft_entry = mft.get_entry_by_id(entry.mft_entry_number())
    except MftLookupError as exc:
        logger.debug("No MFT entry for %r: %s", filename, exc)
        return filename

    best = mft.find_best_name_attribute(mft_entry)
    name_in_mft = best.name if best is not None else ""
    if name_in_mft != filename:
        logger.debug("MFT entry %d now named %r, keeping %r", entry.mft_entry_number(), name_in_mft, filename)
        return filename
    return mft.get_full_path_for_entry(mft_entry) or filename


# --- Iteration ---

class ScanState(Enum):
    INIT = "init"
    SCANNING = "scanning"
    DECODING = "decoding"
    EMIT = "emit"
    END = "end"
    FATAL = "fatal"


class UsnJournal:
    """
    Single-pass iterator of (display_name, JournalEntry) over one $J stream.

    Iteration ends cleanly when no further record is found. A decode or I/O
    error is raised from the pull that hit it and ends the iteration for good:
    without a trustworthy record boundary there is no safe point to resume.
    """

    def __init__(self, stream: BinaryIO, mft: MftLookup | None = None, start_offset: int | None = None):
        self._stream = stream
        self._mft = mft
        self._owned: list = []
        self.state = ScanState.INIT
        if find_first_record(stream, start_offset):
            logger.info("Found first record at offset %d", stream.tell())
        else:
            logger.info("No records found in journal")
            self.state = ScanState.END

    @classmethod
    def from_paths(
        cls,
        usn_path: Path | str,
        mft_path: Path | str | None = None,
        start_offset: int | None = None,
    ) -> "UsnJournal":
        """Open the $J file (and $MFT if given); the journal closes them in close()."""
        usn_path = Path(usn_path)
        if not usn_path.is_file():
            raise FileNotFoundError(f"USN Journal file not found: {usn_path}")
        stream = open(usn_path, "rb")
        mft = None
        try:
            if mft_path is not None:
                mft = MftIndex.from_path(mft_path)
            journal = cls(stream, mft, start_offset)
        except BaseException:
            stream.close()
            if mft is not None:
                mft.close()
            raise
        journal._owned = [stream] + ([mft] if mft is not None else [])
        return journal

    def tell(self) -> int:
        return self._stream.tell()

    def close(self) -> None:
        for handle in self._owned:
            handle.close()
        self._owned = []

    def __enter__(self) -> "UsnJournal":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __iter__(self) -> "UsnJournal":
        return self

    def __next__(self) -> tuple[str, JournalEntry]:
        if self.state in (ScanState.END, ScanState.FATAL):
            raise StopIteration
        try:
            self.state = ScanState.SCANNING
            if not find_next_record(self._stream):
                logger.debug("No more records after offset %d", self._stream.tell())
                self.state = ScanState.END
                raise StopIteration
            self.state = ScanState.DECODING
            entry = decode_entry(self._stream)
            name = resolve_display_name(entry, self._mft)
        except (UsnError, OSError) as exc:
            self.state = ScanState.FATAL
            logger.error("Stopping journal scan: %s", exc)
            raise
        self.state = ScanState.EMIT
        return name, entry


def iter_usn_journal(
    usn_path: Path | str,
    *,
    mft_path: Path | str | None = None,
    start_offset: int | None = None,
) -> Iterator[tuple[str, JournalEntry]]:
    """
    Open a $J file (and optionally a $MFT for full paths) and yield (display_name, JournalEntry).

    usn_path: copy of $Extend\\$UsnJrnl:$J from a volume or forensic image.
    start_offset: byte offset to begin scanning from (skips the sparse head faster).
    """
    with UsnJournal.from_paths(usn_path, mft_path, start_offset) as journal:
        yield from journal
