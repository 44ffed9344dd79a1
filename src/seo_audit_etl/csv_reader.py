"""seo_audit_etl.csv_reader

One streaming CSV reader for every export format the audit tools produce.

A Dialect declares delimiter, quote char, escape rule and text encoding.
Rows are yielded lazily as SourceRow objects; the stream cannot be
restarted mid-way (reopen the file to retry).  A data row whose field
count differs from the header, or that the csv module cannot parse, is
yielded with a MalformedRowError instead of fields so the caller can count
it and carry on.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from seo_audit_etl.normalize import normalize_header
from seo_audit_etl.shared import ConfigError, MalformedRowError

log = logging.getLogger(__name__)

# largest value the csv module accepts on every platform (C long)
FIELD_SIZE_LIMIT = 2**31 - 1


@dataclass(frozen=True)
class Dialect:
    delimiter: str = ","
    quotechar: str = '"'
    doublequote: bool = True  # "" inside a quoted value → "
    encoding: str = "utf-8-sig"


COMMA_UTF8 = Dialect()
TAB_UTF16LE = Dialect(delimiter="\t", encoding="utf-16-le")
SEMICOLON_UTF8 = Dialect(delimiter=";")


@dataclass
class SourceRow:
    line_number: int
    fields: dict[str, str] | None
    raw: list[str]
    error: MalformedRowError | None = None

    def as_reject(self) -> dict[str, str]:
        """Row shape suitable for RejectWriter.

        Always the same two columns: the rejects file header is fixed by
        the first reject, and malformed rows have no field mapping.
        """
        return {"_line": str(self.line_number), "_raw": "|".join(self.raw)}


def _open(path: Path, dialect: Dialect):
    if not path.is_file():
        raise ConfigError(f"input file not found: {path}")
    return path.open(encoding=dialect.encoding, newline="", errors="replace")


def _reader(fh, dialect: Dialect):
    # crawler exports carry whole page bodies in a cell
    csv.field_size_limit(FIELD_SIZE_LIMIT)
    return csv.reader(
        fh,
        delimiter=dialect.delimiter,
        quotechar=dialect.quotechar,
        doublequote=dialect.doublequote,
        skipinitialspace=False,
    )


def read_header(path: Path, dialect: Dialect = COMMA_UTF8) -> list[str]:
    """Open the file just far enough to read and clean the header row."""
    with _open(Path(path), dialect) as fh:
        try:
            for raw in _reader(fh, dialect):
                if any(cell.strip() for cell in raw):
                    return [normalize_header(h) for h in raw]
        except csv.Error as exc:
            raise ConfigError(f"{path}: unreadable header row: {exc}") from exc
    return []


def iter_rows(path: Path, dialect: Dialect = COMMA_UTF8) -> Iterator[SourceRow]:
    """Yield one SourceRow per non-blank data line.

    A line the csv module cannot parse is yielded as a malformed row and
    reading resumes on the next line.  Reading stops if the reader makes
    no progress past the failing line.
    """
    with _open(Path(path), dialect) as fh:
        reader = _reader(fh, dialect)
        header: list[str] | None = None
        last_error_line = -1
        while True:
            try:
                raw = next(reader)
            except StopIteration:
                return
            except csv.Error as exc:
                line = reader.line_num
                if line == last_error_line:
                    log.error("Stopped reading %s at line %d: %s", path, line, exc)
                    return
                last_error_line = line
                yield SourceRow(line, None, [], MalformedRowError(line, f"unreadable row: {exc}"))
                continue
            if not any(cell.strip() for cell in raw):
                continue
            if header is None:
                header = [normalize_header(h) for h in raw]
                continue
            line = reader.line_num
            if len(raw) != len(header):
                yield SourceRow(
                    line, None, raw,
                    MalformedRowError(
                        line, f"expected {len(header)} fields, got {len(raw)}"
                    ),
                )
                continue
            yield SourceRow(line, dict(zip(header, raw)), raw)
