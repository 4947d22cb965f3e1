#!python3
"""
Parsers for the two event-list audit dialects.

Both dialects are lists of ``<eventItem>`` records carrying the same
attributes (sequence number, uid, hits). Rows are grouped per event type,
each type with its own header table pre-seeded with the synthetic
``Hostname`` and ``AgentID`` columns.

- EventBufferParser (dialect B): one typed sub-block per event whose
  children are flat fields named after the data.
- StateAgentInspectorParser (dialect C): timestamp, eventType and a list of
  explicit ``<name>`` / ``<value>`` detail pairs.
"""

import logging
import re
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .config import ParseOptions
from .detector import Dialect
from .parsers import DialectParser
from .rows import EventRow, HeaderTable, ParsedTable, RecordBuilder


# =========================================================================
# Pre-compiled module-level constants
# =========================================================================

_RE_EVENT_OPEN = re.compile(r'^[ \t]*<eventItem.*>$')
_RE_EVENT_CLOSE = re.compile(r'^[ \t]*</eventItem>$')
_RE_SEQUENCE_ATTR = re.compile(r'sequence_num="(\d+)"')
_RE_UID_ATTR = re.compile(r'uid="(\d+)"')
_RE_HITS_ATTR = re.compile(r'hits="([^"]+)"')

# EventBuffer
_RE_TYPE_OPEN = re.compile(r'^[ \t]*<([A-Za-z0-9]+)>$')
_RE_TYPE_CLOSE = re.compile(r'^[ \t]*</([A-Za-z0-9]+)>$')
_RE_FIELD_SELF_CLOSED = re.compile(r'^[ \t]*<([A-Za-z0-9]+) ?/>$')
_RE_FIELD_SINGLE_LINE = re.compile(r'^[ \t]*<([A-Za-z0-9]+)>(.*)</[A-Za-z0-9]+>$')
_RE_FIELD_OPEN = re.compile(r'^[ \t]*<([A-Za-z0-9]+)>(.*)')
_RE_FIELD_CLOSE = re.compile(r'(.*)</([A-Za-z0-9]+)>$')

# StateAgentInspector
_RE_TIMESTAMP = re.compile(r'^[ \t]*<timestamp>(.*)</timestamp>$')
_RE_TIMESTAMP_EMPTY = re.compile(r'^[ \t]*<timestamp ?/>$')
_RE_EVENT_TYPE = re.compile(r'^[ \t]*<eventType>(.*)</eventType>$')
_RE_DETAILS_OPEN = re.compile(r'^[ \t]*<details>$')
_RE_DETAILS_CLOSE = re.compile(r'^[ \t]*</details>$')
_RE_DETAIL_OPEN = re.compile(r'^[ \t]*<detail>$')
_RE_DETAIL_CLOSE = re.compile(r'^[ \t]*</detail>$')
_RE_NAME = re.compile(r'^[ \t]*<name>(.*)</name>$')
_RE_VALUE_SINGLE_LINE = re.compile(r'^[ \t]*<value>(.*)</value>$')
_RE_VALUE_EMPTY = re.compile(r'^[ \t]*<value ?/>$')
_RE_VALUE_OPEN = re.compile(r'^[ \t]*<value>(.*)$')
_RE_VALUE_CLOSE = re.compile(r'^(.*)</value>$')

UID_COLUMN = "UID"
SEQUENCE_COLUMN = "Sequence Number"
EVENT_TIME_PREFIX = "EventBufferTime_"
EVENT_TABLE_PREFIX = "EventItem_"
SEEDED_COLUMNS = ["Hostname", "AgentID"]


def upper_first(value: str) -> str:
    """Upper-case the first character only (``urlMonitorEvent`` -> ``UrlMonitorEvent``)."""
    return value[:1].upper() + value[1:]


def format_hits(hits: str) -> Tuple[str, str]:
    """
    Reformat a ``hits`` attribute into two array-like strings.

    ``[a, b, c] [d, e, f]`` becomes ``["a","d"]`` (first id of each group)
    and ``[["a","b","c"],["d","e","f"]]`` (every group).
    """
    compact = hits.replace("] [", "|").replace(" ", "").replace("]", "").replace("[", "")
    firsts = []
    groups = []
    for group in compact.split("|"):
        ids = group.split(",")
        firsts.append('"' + ids[0] + '"')
        groups.append("[" + ",".join('"' + i + '"' for i in ids) + "]")
    return "[" + ",".join(firsts) + "]", "[" + ",".join(groups) + "]"


class EventListParser(DialectParser):
    """
    Shared event-list handling: event open/close, attribute capture and
    the per-event-type tables.
    """

    def __init__(self, options: Optional[ParseOptions] = None, *, logger: Optional[logging.Logger] = None):
        super().__init__(options, logger=logger)
        self.state = None
        self.event_type: Optional[str] = None
        self.multiline_field: Optional[str] = None
        self._tables_by_type: Dict[str, ParsedTable] = {}
        self._row: Optional[EventRow] = None
        self._builder: Optional[RecordBuilder] = None
        self._attributes: List[Tuple[str, str]] = []
        self._handlers = {}

    @property
    def event_types(self) -> List[str]:
        return list(self._tables_by_type)

    def _handle(self, line: str):
        self._handlers[self.state](line)

    def _tables(self) -> List[ParsedTable]:
        return list(self._tables_by_type.values())

    def _state_description(self) -> str:
        return self.state.value

    # ------------------------------------------------------------------
    # Shared event handling
    # ------------------------------------------------------------------

    def _open_event(self, line: str) -> bool:
        """
        Handle the line expected between events. Returns False when the
        list close tag ended the file.
        """
        if line.strip().lower() == "</itemlist>":
            self.finished = True
            return False
        if not _RE_EVENT_OPEN.match(line):
            raise self.error("Expected '<eventItem ...>' or '</itemList>'", line)

        self._row = EventRow()
        self._builder = None
        self._attributes = []
        uid = _RE_UID_ATTR.search(line)
        if uid:
            self._attributes.append((UID_COLUMN, uid.group(1)))
        sequence = _RE_SEQUENCE_ATTR.search(line)
        if sequence:
            self._attributes.append((SEQUENCE_COLUMN, sequence.group(1)))
        hits = _RE_HITS_ATTR.search(line)
        if hits:
            first_ids, all_ids = format_hits(hits.group(1))
            primary, secondary = self.options.hits_columns
            self._attributes.append((primary, first_ids))
            self._attributes.append((secondary, all_ids))
        return True

    def _start_event_type(self, raw_type: str):
        """Select (or create) the table of an event type and flush pending attributes into the row."""
        self.event_type = upper_first(raw_type)
        table = self._tables_by_type.get(self.event_type)
        if table is None:
            table = ParsedTable(
                EVENT_TABLE_PREFIX + self.event_type,
                HeaderTable(SEEDED_COLUMNS),
                event_type=self.event_type,
            )
            self._tables_by_type[self.event_type] = table
            self.logger.debug(f"New event type [cyan]{self.event_type}[/] on line {self.line_number}")
        self._builder = RecordBuilder(table.headers, self.policy, self._row)
        for name, value in self._attributes:
            self._builder.add(name, value)
        self._attributes = []

    def _close_event(self, line: str):
        if not _RE_EVENT_CLOSE.match(line):
            raise self.error("Expected event close tag '</eventItem>'", line)
        if self._row and self.event_type is not None:
            self._tables_by_type[self.event_type].rows.append(self._row)
        self._row = None
        self._builder = None

    def _rename_field(self, name: str) -> str:
        field = upper_first(name)
        if field == "Hostname":
            return "DNSHostname"
        return field


# =========================================================================
# Dialect B: EventBuffer
# =========================================================================

class EventBufferState(Enum):
    EXPECTING_EVENT_OPEN_OR_END = "expecting '<eventItem ...>' or '</itemList>'"
    EXPECTING_TYPE_OPEN = "expecting an event type open tag"
    EXPECTING_FIELD_OPEN_OR_TYPE_CLOSE = "expecting a field or the event type close tag"
    EXPECTING_FIELD_CLOSED = "expecting the close tag of a multi-line field"
    EXPECTING_EVENT_CLOSE = "expecting '</eventItem>'"
    FINISHED = "finished"


class EventBufferParser(EventListParser):
    """Parser for ``generator="eventbuffer"`` audits."""

    dialect = Dialect.EVENT_BUFFER

    def __init__(self, options: Optional[ParseOptions] = None, *, logger: Optional[logging.Logger] = None):
        super().__init__(options, logger=logger)
        self.state = EventBufferState.EXPECTING_EVENT_OPEN_OR_END
        self._handlers = {
            EventBufferState.EXPECTING_EVENT_OPEN_OR_END: self._on_event_open,
            EventBufferState.EXPECTING_TYPE_OPEN: self._on_type_open,
            EventBufferState.EXPECTING_FIELD_OPEN_OR_TYPE_CLOSE: self._on_field,
            EventBufferState.EXPECTING_FIELD_CLOSED: self._on_multiline,
            EventBufferState.EXPECTING_EVENT_CLOSE: self._on_event_close,
        }

    def _header_done(self):
        self.state = EventBufferState.EXPECTING_EVENT_OPEN_OR_END

    def _rename_field(self, name: str) -> str:
        field = super()._rename_field(name)
        if field == "Timestamp":
            return EVENT_TIME_PREFIX + self.event_type
        return field

    def _on_event_open(self, line: str):
        if self._open_event(line):
            self.state = EventBufferState.EXPECTING_TYPE_OPEN
        else:
            self.state = EventBufferState.FINISHED

    def _on_type_open(self, line: str):
        m = _RE_TYPE_OPEN.match(line)
        if m is None:
            raise self.error("Expected an event type open tag '<eventType>'", line)
        self._start_event_type(m.group(1))
        self.state = EventBufferState.EXPECTING_FIELD_OPEN_OR_TYPE_CLOSE

    def _on_field(self, line: str):
        m = _RE_TYPE_CLOSE.match(line)
        if m is not None:
            if upper_first(m.group(1)) != self.event_type:
                raise self.error(f"Event type close did not match '{self.event_type}'", line)
            self.state = EventBufferState.EXPECTING_EVENT_CLOSE
            return

        m = _RE_FIELD_SINGLE_LINE.match(line)
        if m is not None:
            self._builder.add(self._rename_field(m.group(1)), m.group(2))
            return

        m = _RE_FIELD_OPEN.match(line)
        if m is not None:
            field = self._rename_field(m.group(1))
            text = m.group(2)
            self._builder.add(field, text + "\n" if text else "")
            self.multiline_field = field
            self.state = EventBufferState.EXPECTING_FIELD_CLOSED
            return

        m = _RE_FIELD_SELF_CLOSED.match(line)
        if m is not None:
            self._builder.add(self._rename_field(m.group(1)), "")
            return

        raise self.error(
            f"Expected the event type close '</{self.event_type}>', a single-line field, "
            f"a self-closing field or a multi-line field open",
            line,
        )

    def _on_multiline(self, line: str):
        m = _RE_FIELD_CLOSE.match(line)
        if m is None:
            self._builder.add(self.multiline_field, line + "\n", separate=False)
            return
        field = self._rename_field(m.group(2))
        if field != self.multiline_field:
            raise self.error(f"Multi-line field close did not match '{self.multiline_field}'", line)
        self._builder.add(field, m.group(1), separate=False)
        self.multiline_field = None
        self.state = EventBufferState.EXPECTING_FIELD_OPEN_OR_TYPE_CLOSE

    def _on_event_close(self, line: str):
        self._close_event(line)
        self.state = EventBufferState.EXPECTING_EVENT_OPEN_OR_END


# =========================================================================
# Dialect C: StateAgentInspector
# =========================================================================

class InspectorState(Enum):
    EXPECTING_EVENT_OPEN_OR_END = "expecting '<eventItem ...>' or '</itemList>'"
    EXPECTING_TIMESTAMP = "expecting '<timestamp>'"
    EXPECTING_EVENT_TYPE = "expecting '<eventType>'"
    EXPECTING_DETAILS_OPEN = "expecting '<details>'"
    EXPECTING_DETAIL_OPEN_OR_DETAILS_CLOSE = "expecting '<detail>' or '</details>'"
    EXPECTING_DETAIL_NAME = "expecting '<name>'"
    EXPECTING_DETAIL_VALUE = "expecting '<value>'"
    EXPECTING_DETAIL_VALUE_CLOSE = "expecting '</value>'"
    EXPECTING_DETAIL_CLOSE = "expecting '</detail>'"
    EXPECTING_EVENT_CLOSE = "expecting '</eventItem>'"
    FINISHED = "finished"


class StateAgentInspectorParser(EventListParser):
    """Parser for ``generator="stateagentinspector"`` audits."""

    dialect = Dialect.STATE_AGENT_INSPECTOR

    def __init__(self, options: Optional[ParseOptions] = None, *, logger: Optional[logging.Logger] = None):
        super().__init__(options, logger=logger)
        self.state = InspectorState.EXPECTING_EVENT_OPEN_OR_END
        self._timestamp = ""
        self._handlers = {
            InspectorState.EXPECTING_EVENT_OPEN_OR_END: self._on_event_open,
            InspectorState.EXPECTING_TIMESTAMP: self._on_timestamp,
            InspectorState.EXPECTING_EVENT_TYPE: self._on_event_type,
            InspectorState.EXPECTING_DETAILS_OPEN: self._on_details_open,
            InspectorState.EXPECTING_DETAIL_OPEN_OR_DETAILS_CLOSE: self._on_detail_open,
            InspectorState.EXPECTING_DETAIL_NAME: self._on_name,
            InspectorState.EXPECTING_DETAIL_VALUE: self._on_value,
            InspectorState.EXPECTING_DETAIL_VALUE_CLOSE: self._on_value_continued,
            InspectorState.EXPECTING_DETAIL_CLOSE: self._on_detail_close,
            InspectorState.EXPECTING_EVENT_CLOSE: self._on_event_close,
        }

    def _header_done(self):
        self.state = InspectorState.EXPECTING_EVENT_OPEN_OR_END

    def _on_event_open(self, line: str):
        if self._open_event(line):
            self._timestamp = ""
            self.state = InspectorState.EXPECTING_TIMESTAMP
        else:
            self.state = InspectorState.FINISHED

    def _on_timestamp(self, line: str):
        m = _RE_TIMESTAMP.match(line)
        if m is not None:
            self._timestamp = m.group(1)
        elif _RE_TIMESTAMP_EMPTY.match(line):
            self._timestamp = ""
        else:
            raise self.error("Expected '<timestamp>...</timestamp>' or '<timestamp />'", line)
        self.state = InspectorState.EXPECTING_EVENT_TYPE

    def _on_event_type(self, line: str):
        m = _RE_EVENT_TYPE.match(line)
        if m is None:
            raise self.error("Expected '<eventType>...</eventType>'", line)
        self._start_event_type(m.group(1))
        if self._timestamp:
            self._builder.add(EVENT_TIME_PREFIX + self.event_type, self._timestamp)
        self.state = InspectorState.EXPECTING_DETAILS_OPEN

    def _on_details_open(self, line: str):
        if not _RE_DETAILS_OPEN.match(line):
            raise self.error("Expected details open tag '<details>'", line)
        self.state = InspectorState.EXPECTING_DETAIL_OPEN_OR_DETAILS_CLOSE

    def _on_detail_open(self, line: str):
        if _RE_DETAILS_CLOSE.match(line):
            self.state = InspectorState.EXPECTING_EVENT_CLOSE
            return
        if not _RE_DETAIL_OPEN.match(line):
            raise self.error("Expected detail open tag '<detail>' or details close tag '</details>'", line)
        self.state = InspectorState.EXPECTING_DETAIL_NAME

    def _on_name(self, line: str):
        m = _RE_NAME.match(line)
        if m is None:
            raise self.error("Expected detail name '<name>...</name>'", line)
        self.multiline_field = self._rename_field(m.group(1))
        self.state = InspectorState.EXPECTING_DETAIL_VALUE

    def _on_value(self, line: str):
        m = _RE_VALUE_SINGLE_LINE.match(line)
        if m is not None:
            self._builder.add(self.multiline_field, m.group(1))
            self.state = InspectorState.EXPECTING_DETAIL_CLOSE
            return
        if _RE_VALUE_EMPTY.match(line):
            self._builder.add(self.multiline_field, "")
            self.state = InspectorState.EXPECTING_DETAIL_CLOSE
            return
        m = _RE_VALUE_OPEN.match(line)
        if m is None:
            raise self.error("Expected detail value '<value>...</value>', '<value />' or '<value>'", line)
        text = m.group(1)
        self._builder.add(self.multiline_field, text + "\n" if text else "")
        self.state = InspectorState.EXPECTING_DETAIL_VALUE_CLOSE

    def _on_value_continued(self, line: str):
        m = _RE_VALUE_CLOSE.match(line)
        if m is None:
            self._builder.add(self.multiline_field, line + "\n", separate=False)
            return
        self._builder.add(self.multiline_field, m.group(1), separate=False)
        self.state = InspectorState.EXPECTING_DETAIL_CLOSE

    def _on_detail_close(self, line: str):
        if not _RE_DETAIL_CLOSE.match(line):
            raise self.error("Expected detail close tag '</detail>'", line)
        self.multiline_field = None
        self.state = InspectorState.EXPECTING_DETAIL_OPEN_OR_DETAILS_CLOSE

    def _on_event_close(self, line: str):
        self._close_event(line)
        self.state = InspectorState.EXPECTING_EVENT_OPEN_OR_END
