#!python3
"""
Line state machine parsers for audit files.

The audit XML is not parsed with an XML library: single documents can be
many gigabytes, repeated elements are encoded inconsistently, and files are
often truncated mid-element. Each dialect is instead read line by line by a
small state machine that knows exactly which line shapes may follow the
current one.

This module provides:
- AuditParseError, raised with the offending line number and text
- DialectParser, the shared line loop / header check / result handling
- NormalParser, for nested item records (dialect A)
- iter_file_lines, the in-memory or streaming line source
"""

import logging
import re
from enum import Enum
from pathlib import Path
from typing import IO, Iterable, Iterator, List, Optional, Union

from .config import ParseOptions
from .detector import Dialect, DialectDetector
from .rows import HeaderTable, JoinPolicy, ParsedTable, RecordBuilder, Row


# =========================================================================
# Pre-compiled module-level constants
# =========================================================================

_RE_RECORD_OPEN = re.compile(r'^[ \t]*<([^ >]+)[ >]')
_RE_CLOSE_TAG = re.compile(r'^[ \t]*</([^ >]+)>')
_RE_CREATED_ATTR = re.compile(r'created="([^"]+)"')
_RE_UID_ATTR = re.compile(r'uid="([^"]+)"')
_RE_FIELD_SELF_CLOSED = re.compile(r'^[ \t]*<([-_A-Za-z0-9]+) ?/>$')
_RE_FIELD_SINGLE_LINE = re.compile(r'^[ \t]*<([-_A-Za-z0-9]+)>(.*)</[-_A-Za-z0-9]+>$')
_RE_FIELD_OPEN = re.compile(r'^[ \t]*<([-_A-Za-z0-9]+)>(.*)$')
_RE_MULTILINE_CLOSE = re.compile(r'^([^<>]*)</([-_A-Za-z0-9]+)>$')

CREATED_COLUMN = "FireEyeGeneratedTime"
AUDIT_UID_COLUMN = "Audit UID"

# Longest excerpt of a raw line quoted in an error message
_MAX_QUOTED_LINE = 256


class AuditParseError(ValueError):
    """A structural error in an audit file, tied to a line of the input."""

    def __init__(self, message: str, line_number: Optional[int] = None, line: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.line_number = line_number
        self.line = line

    def __str__(self) -> str:
        text = self.message
        if self.line_number is not None:
            text += f" on line {self.line_number}"
        if self.line is not None:
            quoted = self.line if len(self.line) <= _MAX_QUOTED_LINE else self.line[:_MAX_QUOTED_LINE] + "..."
            text += f": {quoted}"
        return text


def iter_file_lines(
    file_path: Union[str, Path],
    size: int,
    options: Optional[ParseOptions] = None,
) -> Iterator[str]:
    """
    Yield the lines of a file without their ``\\n`` terminator.

    Files smaller than the streaming threshold are read in one go and split,
    larger ones are read line by line with a bounded line length.
    """
    options = options or ParseOptions()
    with open(file_path, 'r', encoding=options.encoding, errors='replace', newline='\n') as f:
        if size < options.streaming_threshold:
            text = f.read()
            lines = text.split("\n")
            if text.endswith("\n"):
                lines.pop()
            yield from lines
            return

        line_number = 0
        limit = options.max_line_length
        while True:
            line = f.readline(limit + 1)
            if not line:
                return
            line_number += 1
            if line.endswith("\n"):
                yield line[:-1]
            elif len(line) > limit:
                raise AuditParseError(
                    f"Line exceeds the maximum supported length of {limit} characters", line_number
                )
            else:
                yield line


class DialectParser:
    """
    Base class of the three dialect state machines.

    A parser instance handles exactly one file. Lines are fed one at a time
    through ``parse_next``; ``finish`` checks that the input ended in the
    finished state and returns the parsed tables.
    """

    dialect: Dialect = None

    def __init__(self, options: Optional[ParseOptions] = None, *, logger: Optional[logging.Logger] = None):
        self.options = options or ParseOptions()
        self.policy = JoinPolicy(self.options.flatten_newlines)
        self.logger = logger or logging.getLogger(__name__)
        self.line_number = 0
        self.finished = False

    @classmethod
    def detect(cls, stream: IO[str]) -> bool:
        """Whether the stream starts with the header of this parser's dialect."""
        return DialectDetector().detect(stream).dialect is cls.dialect

    # ------------------------------------------------------------------
    # Line loop
    # ------------------------------------------------------------------

    def parse_next(self, line: str) -> bool:
        """
        Consume one line. Returns False once the list close tag has been
        seen and nothing more needs to be read.
        """
        if self.finished:
            return False
        self.line_number += 1
        if line.endswith("\r"):
            line = line[:-1]
        if self.line_number <= 2:
            self._check_header(line)
        else:
            self._handle(line)
        return not self.finished

    def parse_lines(self, lines: Iterable[str]) -> List[ParsedTable]:
        for line in lines:
            if not self.parse_next(line):
                break
        return self.finish()

    def parse_file(self, file_path: Union[str, Path], size: Optional[int] = None) -> List[ParsedTable]:
        if size is None:
            size = Path(file_path).stat().st_size
        return self.parse_lines(iter_file_lines(file_path, size, self.options))

    def finish(self) -> List[ParsedTable]:
        """Validate the end of input and return the non-empty tables in discovery order."""
        if not self.finished:
            if self.line_number == 2:
                # Nothing but the two header lines
                tables = []
            else:
                raise AuditParseError(
                    f"Unexpected end of file while {self._state_description()}", self.line_number
                )
        else:
            tables = [table for table in self._tables() if table.rows]
        for table in tables:
            table.headers.freeze()
        return tables

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def error(self, message: str, line: Optional[str] = None) -> AuditParseError:
        return AuditParseError(message, self.line_number, line)

    def _check_header(self, line: str):
        if self.line_number == 1:
            if not line.strip().startswith("<?xml"):
                raise self.error("Unexpected 1st line, expected an XML declaration", line)
            return
        marker = line.strip().lower()
        if marker.startswith("<issuelist"):
            raise self.error("Issues list files do not hold audit records", line)
        if not marker.startswith("<itemlist"):
            raise self.error("Unexpected 2nd line, expected '<itemList'", line)
        self._header_done()

    def _header_done(self):
        raise NotImplementedError

    def _handle(self, line: str):
        raise NotImplementedError

    def _tables(self) -> List[ParsedTable]:
        raise NotImplementedError

    def _state_description(self) -> str:
        raise NotImplementedError


# =========================================================================
# Dialect A: nested item records
# =========================================================================

class NormalState(Enum):
    EXPECTING_RECORD_OPEN = "expecting a record open, '</itemList>' or a debug block"
    EXPECTING_FIELD_OPEN_OR_RECORD_CLOSE = "expecting a field or the record close tag"
    EXPECTING_FIELD_OPEN_OR_GROUP_CLOSE = "expecting a field, a group close tag or multi-line text"
    EXPECTING_FIELD_CLOSE = "expecting the close tag of a multi-line field"
    EXPECTING_DEBUG_CLOSE = "expecting '</debug>'"
    FINISHED = "finished"


class NormalParser(DialectParser):
    """
    Parser for nested item audits (``<itemList>`` of ``<SomeItem>`` records).

    Nested sub-groups become dot-joined column names, e.g.
    ``PartitionList.Partition.PartitionType``. Every record of a file has
    the same element name, captured from the first record.
    """

    dialect = Dialect.NORMAL

    def __init__(self, options: Optional[ParseOptions] = None, *, logger: Optional[logging.Logger] = None):
        super().__init__(options, logger=logger)
        self.state = NormalState.EXPECTING_RECORD_OPEN
        self.record_type: Optional[str] = None
        self.table: Optional[ParsedTable] = None
        self.path: List[str] = []
        self.multiline_field: Optional[str] = None
        self._builder: Optional[RecordBuilder] = None
        self._handlers = {
            NormalState.EXPECTING_RECORD_OPEN: self._on_record_open,
            NormalState.EXPECTING_FIELD_OPEN_OR_RECORD_CLOSE: self._on_field,
            NormalState.EXPECTING_FIELD_OPEN_OR_GROUP_CLOSE: self._on_group_content,
            NormalState.EXPECTING_FIELD_CLOSE: self._on_multiline,
            NormalState.EXPECTING_DEBUG_CLOSE: self._on_debug,
        }

    def _header_done(self):
        self.state = NormalState.EXPECTING_RECORD_OPEN

    def _handle(self, line: str):
        self._handlers[self.state](line)

    def _tables(self) -> List[ParsedTable]:
        return [self.table] if self.table is not None else []

    def _state_description(self) -> str:
        return self.state.value

    # ------------------------------------------------------------------
    # Column helpers
    # ------------------------------------------------------------------

    def _column(self, name: str) -> str:
        if self.path:
            return ".".join(self.path) + "." + name
        return name

    def _add(self, name: str, value: str, separate: bool = True):
        self._builder.add(self._column(name), value, separate)

    def _pop_group(self, line: str):
        if not self.path:
            raise self.error("Text found outside of any field", line)
        self.path.pop()

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    def _on_record_open(self, line: str):
        marker = line.strip().lower()
        if marker == "</itemlist>":
            self.state = NormalState.FINISHED
            self.finished = True
            return
        if marker.startswith("<debug"):
            self.state = NormalState.EXPECTING_DEBUG_CLOSE
            return

        m = _RE_RECORD_OPEN.match(line)
        if m is None:
            raise self.error("Expected a record open tag '<RecordType ...>' or '</itemList>'", line)
        tag = m.group(1)
        if self.record_type is None:
            self.record_type = tag
            self.table = ParsedTable(tag, HeaderTable())
            self.logger.debug(f"Record type for this file is [cyan]{tag}[/]")
        elif tag != self.record_type:
            raise self.error(f"Expected record open tag '<{self.record_type}>'", line)

        self.path = []
        self.multiline_field = None
        self._builder = RecordBuilder(self.table.headers, self.policy, Row())
        if self.options.capture_record_attributes:
            created = _RE_CREATED_ATTR.search(line)
            if created:
                self._builder.add(CREATED_COLUMN, created.group(1))
            uid = _RE_UID_ATTR.search(line)
            if uid:
                self._builder.add(AUDIT_UID_COLUMN, uid.group(1))
        self.state = NormalState.EXPECTING_FIELD_OPEN_OR_RECORD_CLOSE

    def _on_group_content(self, line: str):
        """
        First line after a bare ``<Name>`` open tag.

        The element is either a sub-group (fields follow) or a multi-line
        value whose text starts on this line.
        """
        self.state = NormalState.EXPECTING_FIELD_OPEN_OR_RECORD_CLOSE
        name = self.multiline_field

        m = _RE_MULTILINE_CLOSE.match(line)
        if m is not None and m.group(1).strip():
            self._pop_group(line)
            if m.group(2) != name:
                raise self.error(
                    f"Multi-line field close '</{m.group(2)}>' did not match open field '<{name}>'", line
                )
            self._add(name, m.group(1))
            self.multiline_field = None
            return

        if "<" not in line:
            self._pop_group(line)
            self._add(name, line + "\n")
            self.state = NormalState.EXPECTING_FIELD_CLOSE
            return

        self._on_field(line)

    def _on_field(self, line: str):
        m = _RE_CLOSE_TAG.match(line)
        if m is not None:
            tag = m.group(1)
            if not self.path:
                if tag != self.record_type:
                    raise self.error(f"Expected record close tag '</{self.record_type}>'", line)
                self._close_record()
                return
            if tag != self.path[-1]:
                raise self.error(f"Expected sub-field close tag '</{self.path[-1]}>'", line)
            self.path.pop()
            return

        m = _RE_FIELD_SELF_CLOSED.match(line)
        if m is not None:
            self._add(m.group(1), "")
            return

        m = _RE_FIELD_SINGLE_LINE.match(line)
        if m is not None:
            self._add(m.group(1), m.group(2))
            return

        m = _RE_FIELD_OPEN.match(line)
        if m is not None:
            name, text = m.group(1), m.group(2)
            self.multiline_field = name
            if text.strip():
                self._add(name, text + "\n")
                self.state = NormalState.EXPECTING_FIELD_CLOSE
            else:
                self.path.append(name)
                self.state = NormalState.EXPECTING_FIELD_OPEN_OR_GROUP_CLOSE
            return

        raise self.error(
            f"Expected record close '</{self.record_type}>', a sub-field close, "
            f"a single-line field '<Name>value</Name>', a self-closing field '<Name />' "
            f"or a field open '<Name>'",
            line,
        )

    def _on_multiline(self, line: str):
        m = _RE_MULTILINE_CLOSE.match(line)
        if m is None:
            self._add(self.multiline_field, line + "\n", separate=False)
            return
        if m.group(2) != self.multiline_field:
            raise self.error(
                f"Multi-line field close '</{m.group(2)}>' did not match open field '<{self.multiline_field}>'",
                line,
            )
        self._add(self.multiline_field, m.group(1), separate=False)
        self.multiline_field = None
        self.state = NormalState.EXPECTING_FIELD_OPEN_OR_RECORD_CLOSE

    def _on_debug(self, line: str):
        if line.strip().lower() == "</debug>":
            self.state = NormalState.EXPECTING_RECORD_OPEN

    def _close_record(self):
        row = self._builder.row
        if row:
            self.table.rows.append(row)
        self._builder = None
        self.state = NormalState.EXPECTING_RECORD_OPEN
