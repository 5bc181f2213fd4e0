"""USN Reader - print an NTFS $UsnJrnl:$J stream as timeline lines."""

import argparse
import logging
import sys
from pathlib import Path

from tqdm import tqdm

from .usn_journal import JournalEntry, UsnError, UsnJournal

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def format_default(name: str, entry: JournalEntry) -> str:
    return f"{entry.time_text()} | {name} | {entry.attributes()} | {entry.reasons()}"


def format_bodyfile(name: str, entry: JournalEntry) -> str:
    """mactime bodyfile line; the USN timestamp fills all four time columns."""
    ts = entry.unix_timestamp()
    return (
        f"0|{name} (USN: {entry.reasons()})|{entry.mft_entry_number()}-{entry.sequence_number()}"
        f"|0|0|0|0|{ts}|{ts}|{ts}|{ts}"
    )


def format_debug(name: str, entry: JournalEntry) -> str:
    return repr(entry)


FORMATTERS = {
    "default": format_default,
    "bodyfile": format_bodyfile,
    "debug": format_debug,
}


def _offset(text: str) -> int:
    value = int(text, 0)
    if value < 0:
        raise argparse.ArgumentTypeError(f"offset must not be negative: {text}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="usn-reader", description="Decode an NTFS USN change journal ($UsnJrnl:$J).")
    parser.add_argument("file", help="UsnJrnl:$J file to parse")
    parser.add_argument("--mft", help="Path to a $MFT file. If present, resolves full paths to files")
    parser.add_argument("--start", type=_offset, help="Start offset (decimal or 0x-prefixed hex)")
    parser.add_argument("-f", "--format", choices=sorted(FORMATTERS), default="default", help="Output format")
    parser.add_argument("--progress", action="store_true", help="Show a progress bar on stderr")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-v info, -vv debug)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    level = logging.WARNING if args.verbose == 0 else logging.INFO if args.verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
    formatter = FORMATTERS[args.format]

    try:
        journal = UsnJournal.from_paths(args.file, args.mft, args.start)
    except OSError as exc:
        logger.error("%s", exc)
        return 1

    with journal:
        progress = tqdm(
            total=Path(args.file).stat().st_size,
            initial=journal.tell(),
            unit="B",
            unit_scale=True,
            file=sys.stderr,
            disable=not args.progress,
        )
        try:
            for name, entry in journal:
                print(formatter(name, entry))
                progress.update(journal.tell() - progress.n)
        except (UsnError, OSError):
            # already logged by the journal when it stopped
            return 1
        finally:
            progress.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
