import struct
from io import BytesIO

import pytest

from _builders import make_mft_image, make_mft_record, make_usn_record, sample_mft
from usn_reader import mft_parser
from usn_reader.mft_parser import (
    FILE_NAMESPACE_DOS,
    MftIndex,
    MftLookupError,
    _apply_usa_fixup,
    detect_record_size,
    parse_mft_record,
)
from usn_reader.usn_journal import UsnJournal


@pytest.fixture
def mft() -> MftIndex:
    return MftIndex(BytesIO(sample_mft()))


def test_detect_record_size():
    assert detect_record_size(BytesIO(sample_mft())) == 1024
    assert detect_record_size(BytesIO(sample_mft(record_size=4096))) == 4096
    assert detect_record_size(BytesIO(b"\x00" * 16)) == 1024


def test_parse_record_fields():
    rec = parse_mft_record(make_mft_record(7, [("report.docx", 1)], parent_ref=6, parent_seq=3, sequence=2), 7)
    assert rec.parse_error == ""
    assert rec.record_number == 7
    assert rec.sequence == 2
    assert rec.in_use and not rec.is_directory
    assert [(fn.name, fn.parent_ref, fn.parent_seq) for fn in rec.file_names] == [("report.docx", 6, 3)]


def test_parse_record_bad_signature():
    assert parse_mft_record(b"BAAD" + b"\x00" * 1020, 3).parse_error.startswith("Invalid signature")
    assert parse_mft_record(b"FILE", 3).parse_error == "Record too short"


def test_usa_fixup_restores_sector_tails():
    data = bytearray(make_mft_record(7, [("a.txt", 1)]))
    struct.pack_into("<HH", data, 0x04, 0x30, 3)
    data[0x30:0x36] = b"\x01\x00\xaa\xbb\xcc\xdd"
    data[510:512] = b"\x01\x00"
    data[1022:1024] = b"\x01\x00"
    _apply_usa_fixup(data)
    assert data[510:512] == b"\xaa\xbb"
    assert data[1022:1024] == b"\xcc\xdd"


def test_get_entry_by_id(mft):
    rec = mft.get_entry_by_id(6)
    assert rec.record_number == 6
    assert rec.is_directory
    assert mft.find_best_name_attribute(rec).name == "Users"


def test_get_entry_by_id_errors(mft):
    with pytest.raises(MftLookupError):
        mft.get_entry_by_id(10)  # zeroed slot
    with pytest.raises(MftLookupError):
        mft.get_entry_by_id(500)  # past the end


def test_best_name_prefers_long_name(mft):
    rec = mft.get_entry_by_id(7)
    assert rec.file_names[0].namespace == FILE_NAMESPACE_DOS
    assert mft.find_best_name_attribute(rec).name == "report.docx"


def test_best_name_falls_back_to_dos_name():
    rec = parse_mft_record(make_mft_record(12, [("PROGRA~1", FILE_NAMESPACE_DOS)]), 12)
    assert MftIndex.find_best_name_attribute(rec).name == "PROGRA~1"
    assert MftIndex.find_best_name_attribute(parse_mft_record(make_mft_record(13, []), 13)) is None


@pytest.mark.parametrize(
    "entry_number, path",
    [
        (5, "\\"),
        (6, "\\Users"),
        (7, "\\Users\\report.docx"),
        (8, "\\[Orphaned]\\stale.txt"),
        (9, "\\[Unknown]\\lost.txt"),
    ],
)
def test_full_paths(mft, entry_number, path):
    assert mft.get_full_path_for_entry(mft.get_entry_by_id(entry_number)) == path


def test_full_path_stops_on_cycles():
    recs = {
        0: make_mft_record(0, [("$MFT", 3)]),
        1: make_mft_record(1, [("loop-a", 1)], parent_ref=2, parent_seq=1),
        2: make_mft_record(2, [("loop-b", 1)], parent_ref=1, parent_seq=1),
    }
    index = MftIndex(BytesIO(make_mft_image(recs, 3)), record_size=1024)
    assert index.get_full_path_for_entry(index.get_entry_by_id(1)) == "\\[Unknown]\\loop-b\\loop-a"


def test_full_path_without_name():
    index = MftIndex(BytesIO(make_mft_image({0: make_mft_record(0, [])}, 1)), record_size=1024)
    assert index.get_full_path_for_entry(index.get_entry_by_id(0)) is None


def test_from_path(tmp_path):
    path = tmp_path / "MFT"
    path.write_bytes(sample_mft())
    with MftIndex.from_path(path) as index:
        assert index.record_size == 1024
        assert index.get_full_path_for_entry(index.get_entry_by_id(7)) == "\\Users\\report.docx"
    with pytest.raises(FileNotFoundError):
        MftIndex.from_path(tmp_path / "missing")


def test_journal_with_mft_index(mft):
    data = (
        make_usn_record("report.docx", file_ref=(2 << 48) | 7)
        + make_usn_record("old-name.txt", file_ref=(1 << 48) | 7)
        + make_usn_record("gone.tmp", file_ref=(1 << 48) | 10)
        + make_usn_record("lost.txt", file_ref=(1 << 48) | 9)
    )
    names = [name for name, _ in UsnJournal(BytesIO(data), mft)]
    assert names == ["\\Users\\report.docx", "old-name.txt", "gone.tmp", "\\[Unknown]\\lost.txt"]


def test_detect_record_size_from_allocated_field():
    rec = make_mft_record(0, [("$MFT", 3)], record_size=2048)
    assert detect_record_size(BytesIO(rec)) == 2048
    assert detect_record_size(BytesIO(rec + rec)) == 2048


def test_from_path_closes_handle_on_failure(tmp_path, monkeypatch):
    path = tmp_path / "MFT"
    path.write_bytes(sample_mft())
    handles = []

    def tracking_open(*args, **kwargs):
        handles.append(open(*args, **kwargs))
        return handles[-1]

    def broken_detect(fh):
        raise OSError("read failed")

    monkeypatch.setattr(mft_parser, "open", tracking_open, raising=False)
    monkeypatch.setattr(mft_parser, "detect_record_size", broken_detect)
    with pytest.raises(OSError, match="read failed"):
        MftIndex.from_path(path)
    assert len(handles) == 1 and handles[0].closed
