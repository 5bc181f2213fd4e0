import pytest

from _builders import make_usn_record, sample_mft
from usn_reader.main import build_parser, main


@pytest.fixture
def journal_file(tmp_path):
    path = tmp_path / "J"
    path.write_bytes(
        b"\x00" * 4096
        + make_usn_record("report.docx", file_ref=(2 << 48) | 7, reason=0x80000002, attributes=0x20)
        + make_usn_record("notes.txt", file_ref=(1 << 48) | 0x2A, reason=0x100, attributes=0x20)
        + b"\x00" * 512
    )
    return path


def test_default_format(journal_file, capsys):
    assert main([str(journal_file)]) == 0
    assert capsys.readouterr().out.splitlines() == [
        "2012-12-14 23:06:40 | report.docx | Archive | DataExtend Close",
        "2012-12-14 23:06:40 | notes.txt | Archive | FileCreate",
    ]


def test_bodyfile_format(journal_file, capsys):
    assert main([str(journal_file), "--format", "bodyfile"]) == 0
    assert capsys.readouterr().out.splitlines() == [
        "0|report.docx (USN: DataExtend Close)|7-2|0|0|0|0|1355526400|1355526400|1355526400|1355526400",
        "0|notes.txt (USN: FileCreate)|42-1|0|0|0|0|1355526400|1355526400|1355526400|1355526400",
    ]


def test_debug_format(journal_file, capsys):
    assert main([str(journal_file), "-f", "debug"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("JournalEntry(record_length=")
    assert "filename='report.docx'" in lines[0]


def test_mft_resolution(journal_file, tmp_path, capsys):
    mft_path = tmp_path / "MFT"
    mft_path.write_bytes(sample_mft())
    assert main([str(journal_file), "--mft", str(mft_path), "-f", "bodyfile"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0].startswith("0|\\Users\\report.docx (USN: ")
    assert out[1].startswith("0|notes.txt (USN: ")


def test_start_offset(journal_file, capsys):
    second = 4096 + len(make_usn_record("report.docx"))
    assert main([str(journal_file), "--start", hex(second)]) == 0
    assert [line.split(" | ")[1] for line in capsys.readouterr().out.splitlines()] == ["notes.txt"]


def test_decode_failure_exit_status(tmp_path, capsys):
    path = tmp_path / "J"
    path.write_bytes(make_usn_record("ok.txt") + make_usn_record("v3", major=3))
    assert main([str(path)]) == 1
    assert capsys.readouterr().out.splitlines() == ["2012-12-14 23:06:40 | ok.txt | Archive | FileCreate"]


def test_missing_file(tmp_path):
    assert main([str(tmp_path / "missing")]) == 1


def test_progress_bar_goes_to_stderr(journal_file, capsys):
    assert main([str(journal_file), "--progress"]) == 0
    captured = capsys.readouterr()
    assert len(captured.out.splitlines()) == 2
    assert "B" in captured.err


def test_parser_rejects_bad_arguments():
    parser = build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["J", "--format", "csv"])
    with pytest.raises(SystemExit):
        parser.parse_args(["J", "--start", "-5"])


@pytest.mark.parametrize(
    "fmt, line",
    [
        ("default", "(invalid: 18446744073709551615) | far.txt | Archive | FileCreate"),
        ("bodyfile", "0|far.txt (USN: FileCreate)|42-1|0|0|0|0|1833029933770|1833029933770|1833029933770|1833029933770"),
    ],
)
def test_out_of_range_timestamp(tmp_path, capsys, fmt, line):
    path = tmp_path / "J"
    path.write_bytes(make_usn_record("far.txt", timestamp=0xFFFFFFFFFFFFFFFF))
    assert main([str(path), "-f", fmt]) == 0
    assert capsys.readouterr().out.splitlines() == [line]
