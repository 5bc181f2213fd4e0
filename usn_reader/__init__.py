"""USN Reader - NTFS $UsnJrnl:$J change journal decoder with optional $MFT path resolution."""

from .mft_parser import MftIndex, MftLookupError
from .usn_journal import (
    AttributeFlags,
    JournalEntry,
    MalformedRecord,
    ReasonFlags,
    TruncatedRecord,
    UsnError,
    UsnJournal,
    VersionMismatch,
    decode_entry,
    find_first_record,
    find_next_record,
    iter_usn_journal,
    resolve_display_name,
)

__all__ = [
    "AttributeFlags",
    "JournalEntry",
    "MalformedRecord",
    "MftIndex",
    "MftLookupError",
    "ReasonFlags",
    "TruncatedRecord",
    "UsnError",
    "UsnJournal",
    "VersionMismatch",
    "decode_entry",
    "find_first_record",
    "find_next_record",
    "iter_usn_journal",
    "resolve_display_name",
]
