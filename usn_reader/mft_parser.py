"""
$MFT (Master File Table) reader used to expand USN journal names into full paths.
Reads fixed-size FILE records on demand by entry number and parses their $FILE_NAME attributes.
"""

import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)

# NTFS attribute type codes
ATTR_FILE_NAME = 0x30
ATTR_END_MARKER = 0xFFFFFFFF

# File record flags
FR_IN_USE = 0x01
FR_IS_DIRECTORY = 0x02

# $FILE_NAME namespace of DOS 8.3 short names
FILE_NAMESPACE_DOS = 2

DEFAULT_RECORD_SIZE = 1024
_RECORD_SIZE_CANDIDATES = (1024, 2048, 4096)
_RECORD_SIZE_SCAN = 8192
ROOT_ENTRY_NUMBER = 5
MAX_PATH_DEPTH = 255

UNKNOWN_PARENT = "[Unknown]"
ORPHANED_PARENT = "[Orphaned]"


class MftLookupError(LookupError):
    """MFT entry missing, unreadable, or not a FILE record."""


@dataclass
class FileNameAttr:
    """$FILE_NAME attribute."""
    parent_ref: int = 0
    parent_seq: int = 0
    namespace: int = 0
    name: str = ""


@dataclass
class MFTRecord:
    """Single MFT file record with its $FILE_NAME attributes."""
    record_number: int = 0
    sequence: int = 0
    flags: int = 0
    in_use: bool = True
    is_directory: bool = False
    file_names: list[FileNameAttr] = field(default_factory=list)
    parse_error: str = ""


def _parse_file_name(data: bytes, off: int, attr_len: int) -> FileNameAttr | None:
    # resident content offset lives in the attribute header at +0x14
    content_off = off + struct.unpack_from("<H", data, off + 0x14)[0]
    attr_end = off + attr_len
    if content_off + 0x42 > attr_end:
        return None
    parent = struct.unpack_from("<Q", data, content_off)[0]
    name_len, namespace = data[content_off + 64], data[content_off + 65]
    name_end = content_off + 66 + name_len * 2
    name = data[content_off + 66 : name_end].decode("utf-16-le", errors="replace") if name_end <= attr_end else ""
    return FileNameAttr(
        parent_ref=parent & 0xFFFFFFFFFFFF,
        parent_seq=parent >> 48,
        namespace=namespace,
        name=name,
    )


def _apply_usa_fixup(data: bytearray) -> None:
    """
    Apply the NTFS update sequence array fixup in place: the last 2 bytes of each
    512-byte block (except block 0) are replaced by the matching USA entry.
    """
    if len(data) < 0x38:
        return
    usa_offset = struct.unpack_from("<H", data, 0x04)[0]
    usa_count = struct.unpack_from("<H", data, 0x06)[0]
    if usa_count < 1 or usa_offset + 2 * usa_count > len(data):
        return
    for i in range(1, usa_count):
        pos = i * 512 - 2
        if pos + 2 > len(data):
            break
        data[pos : pos + 2] = data[usa_offset + 2 * i : usa_offset + 2 * i + 2]


def parse_mft_record(data: bytes, record_number: int) -> MFTRecord:
    """Parse one FILE record (1024 or 4096 bytes). Problems are reported in parse_error, never raised."""
    rec = MFTRecord(record_number=record_number)
    if len(data) < 0x38:
        rec.parse_error = "Record too short"
        return rec
    buf = bytearray(data)
    _apply_usa_fixup(buf)
    data = bytes(buf)
    if data[0:4] != b"FILE":
        rec.parse_error = f"Invalid signature: {data[0:4]!r}"
        return rec
    rec.sequence = struct.unpack_from("<H", data, 0x10)[0]
    rec.flags = struct.unpack_from("<H", data, 0x16)[0]
    rec.in_use = bool(rec.flags & FR_IN_USE)
    rec.is_directory = bool(rec.flags & FR_IS_DIRECTORY)
    attr_off = struct.unpack_from("<H", data, 0x14)[0]
    # NTFS 3.1+ stores the real MFT record number at 0x2C
    if attr_off >= 0x30:
        internal_num = struct.unpack_from("<I", data, 0x2C)[0]
        if internal_num != 0 or record_number == 0:
            rec.record_number = internal_num
    if attr_off < 0x2A or attr_off >= len(data):
        return rec
    while attr_off + 8 <= len(data):
        type_code, attr_len = struct.unpack_from("<II", data, attr_off)
        if type_code == ATTR_END_MARKER or attr_len < 0x18:
            break
        end_off = attr_off + attr_len
        if end_off > len(data):
            break
        non_resident = data[attr_off + 8] != 0
        if type_code == ATTR_FILE_NAME and not non_resident:
            fn = _parse_file_name(data, attr_off, attr_len)
            if fn:
                rec.file_names.append(fn)
        attr_off = end_off
    return rec


def detect_record_size(fh: BinaryIO) -> int:
    """
    Record size of the $MFT in fh: the distance from the first FILE record to the
    next one. The first record's allocated-size field (+0x1C) is tried before the
    common sizes; without a second FILE record that field is trusted if it is a
    power of two between 512 and 8192, else DEFAULT_RECORD_SIZE.
    """
    fh.seek(0)
    head = fh.read(_RECORD_SIZE_SCAN)
    first = next((off for off in range(0, len(head) - 0x40, 512) if head.startswith(b"FILE", off)), None)
    if first is None:
        return DEFAULT_RECORD_SIZE

    allocated = struct.unpack_from("<I", head, first + 0x1C)[0]
    allocated_ok = 512 <= allocated <= _RECORD_SIZE_SCAN and allocated & (allocated - 1) == 0
    candidates = ((allocated,) if allocated_ok else ()) + _RECORD_SIZE_CANDIDATES
    for size in candidates:
        if head.startswith(b"FILE", first + size):
            return size
    return allocated if allocated_ok else DEFAULT_RECORD_SIZE


class MftIndex:
    """
    Read-only, on-demand view of a $MFT stream addressed by entry number.

    Provides the three lookups the journal path resolver relies on:
    get_entry_by_id(), find_best_name_attribute() and get_full_path_for_entry().
    Full paths are cached per (entry number, sequence number).
    """

    def __init__(self, fh: BinaryIO, *, record_size: int = 0):
        self._fh = fh
        self._owns_handle = False
        self.record_size = record_size if record_size > 0 else detect_record_size(fh)
        self._path_cache: dict[tuple[int, int], str] = {}
        logger.debug("MFT record size: %d", self.record_size)

    @classmethod
    def from_path(cls, path: Path | str, *, record_size: int = 0) -> "MftIndex":
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"$MFT file not found: {path}")
        fh = open(path, "rb")
        try:
            index = cls(fh, record_size=record_size)
        except BaseException:
            fh.close()
            raise
        index._owns_handle = True
        return index

    def close(self) -> None:
        if self._owns_handle:
            self._fh.close()

    def __enter__(self) -> "MftIndex":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get_entry_by_id(self, entry_number: int) -> MFTRecord:
        """Read and parse the FILE record at entry_number. Raises MftLookupError if unusable."""
        offset = entry_number * self.record_size
        self._fh.seek(offset)
        raw = self._fh.read(self.record_size)
        if len(raw) < self.record_size:
            raise MftLookupError(f"MFT entry {entry_number} is beyond the end of the table")
        rec = parse_mft_record(raw, entry_number)
        if rec.parse_error:
            raise MftLookupError(f"MFT entry {entry_number} at offset {offset}: {rec.parse_error}")
        return rec

    @staticmethod
    def find_best_name_attribute(rec: MFTRecord) -> FileNameAttr | None:
        """Long name over DOS 8.3: first non-DOS namespace name, else the first name."""
        for fn in rec.file_names:
            if fn.namespace != FILE_NAMESPACE_DOS:
                return fn
        return rec.file_names[0] if rec.file_names else None

    def get_full_path_for_entry(self, rec: MFTRecord) -> str | None:
        """
        Full path of rec rooted at "\\", built by walking parent references up to the
        root directory. Unresolvable ancestors are replaced by "[Unknown]" and ancestors
        whose slot has been reused (sequence mismatch) by "[Orphaned]".
        Returns None when rec itself has no $FILE_NAME.
        """
        key = (rec.record_number, rec.sequence)
        if key in self._path_cache:
            return self._path_cache[key]
        fn = self.find_best_name_attribute(rec)
        if fn is None:
            return None
        if rec.record_number == ROOT_ENTRY_NUMBER:
            return "\\"

        parts = [fn.name]
        visited = {rec.record_number}
        parent_ref, parent_seq = fn.parent_ref, fn.parent_seq
        while parent_ref != ROOT_ENTRY_NUMBER:
            if parent_ref in visited or len(parts) >= MAX_PATH_DEPTH:
                parts.append(UNKNOWN_PARENT)
                break
            visited.add(parent_ref)
            try:
                parent = self.get_entry_by_id(parent_ref)
            except MftLookupError:
                parts.append(UNKNOWN_PARENT)
                break
            if parent_seq and parent.sequence != parent_seq:
                parts.append(ORPHANED_PARENT)
                break
            parent_fn = self.find_best_name_attribute(parent)
            if parent_fn is None:
                parts.append(UNKNOWN_PARENT)
                break
            parts.append(parent_fn.name)
            parent_ref, parent_seq = parent_fn.parent_ref, parent_fn.parent_seq

        path = "\\" + "\\".join(reversed(parts))
        self._path_cache[key] = path
        return path
