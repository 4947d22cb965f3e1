#!python3
"""
Row accumulation primitives shared by the dialect parsers.

- HeaderTable: column name to id, ids handed out in first-seen order
- Row / EventRow: per-record accumulated values
- JoinPolicy: separator and value normalisation for repeated fields
- ParsedTable: header table plus rows for one output file
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple, Union


DEFAULT_SEPARATOR = "\r\n"
FLATTENED_SEPARATOR = "|"


def normalize_timestamp(value: str) -> str:
    """
    Rewrite ISO-8601 timestamps to ``YYYY-MM-DD HH:MM:SS[.fff]``.

    Only two fixed-width shapes are recognised, with and without
    fractional seconds (``2020-10-05T18:01:05.123Z`` and
    ``2020-10-05T18:01:05Z``). Anything else passes through unchanged.
    """
    length = len(value)
    if length in (23, 24):
        if (value[4] == '-' and value[7] == '-' and value[13] == ':'
                and value[16] == ':' and value[19] == '.'):
            return value[0:10] + " " + value[11:23]
    elif length in (19, 20):
        if value[4] == '-' and value[7] == '-' and value[13] == ':' and value[16] == ':':
            return value[0:10] + " " + value[11:19]
    return value


@dataclass(frozen=True)
class JoinPolicy:
    """How repeated values are joined and how raw values are normalised."""
    flatten_newlines: bool = False

    @property
    def separator(self) -> str:
        return FLATTENED_SEPARATOR if self.flatten_newlines else DEFAULT_SEPARATOR

    @property
    def line_separator(self) -> str:
        """Separator between the lines of a multi-value cell once written."""
        return FLATTENED_SEPARATOR if self.flatten_newlines else "\n"

    def prepare(self, value: str) -> str:
        value = normalize_timestamp(value)
        if self.flatten_newlines:
            value = value.replace("\r\n", "|").replace("\n", "|").replace("\r", "|")
        return value


class HeaderTable:
    """
    Columns discovered in one file (or one event type).

    Ids are assigned in first-seen order and never change. Emission order
    is decided later by the column assembler.
    """

    __slots__ = ('_ids', '_frozen')

    def __init__(self, seed: Optional[List[str]] = None):
        self._ids: Dict[str, int] = {}
        self._frozen = False
        for name in seed or ():
            self.column_id(name)

    def column_id(self, name: str) -> int:
        """Return the id for ``name``, assigning the next one on first sight."""
        column = self._ids.get(name)
        if column is None:
            if self._frozen:
                raise KeyError(f"Header table is frozen, cannot add column '{name}'")
            column = len(self._ids)
            self._ids[name] = column
        return column

    def get(self, name: str) -> Optional[int]:
        return self._ids.get(name)

    def names(self) -> List[str]:
        """Column names in discovery order."""
        return list(self._ids)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def __repr__(self) -> str:
        return f"HeaderTable({self.names()!r})"


class Row:
    """
    One record under construction, keyed by column id.

    Values are kept as fragment lists and joined on read so that long
    multi-line fields do not get copied on every appended line.
    """

    __slots__ = ('_values',)

    def __init__(self):
        self._values: Dict[int, List[str]] = {}

    def append(self, column: int, value: str, separator: Optional[str] = None) -> None:
        """
        Append ``value`` to ``column``.

        When the column already holds a value and ``separator`` is given,
        the separator is inserted first. A ``None`` separator continues the
        current value (multi-line fields).
        """
        fragments = self._values.get(column)
        if fragments is None:
            self._values[column] = [value]
            return
        if separator is not None:
            fragments.append(separator)
        fragments.append(value)

    def get(self, column: int, default: str = "") -> str:
        fragments = self._values.get(column)
        if fragments is None:
            return default
        return "".join(fragments)

    def __contains__(self, column: object) -> bool:
        return column in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __bool__(self) -> bool:
        return bool(self._values)

    def items(self) -> Iterator[Tuple[int, str]]:
        for column, fragments in self._values.items():
            yield column, "".join(fragments)


class EventRow:
    """
    One event record as an ordered list of ``[column, fragments]`` pairs.

    Event records are narrow, so a linear scan beats hashing here.
    """

    __slots__ = ('_pairs',)

    def __init__(self):
        self._pairs: List[Tuple[int, List[str]]] = []

    def _find(self, column: int) -> Optional[List[str]]:
        for existing, fragments in self._pairs:
            if existing == column:
                return fragments
        return None

    def append(self, column: int, value: str, separator: Optional[str] = None) -> None:
        fragments = self._find(column)
        if fragments is None:
            self._pairs.append((column, [value]))
            return
        if separator is not None:
            fragments.append(separator)
        fragments.append(value)

    def get(self, column: int, default: str = "") -> str:
        fragments = self._find(column)
        if fragments is None:
            return default
        return "".join(fragments)

    def __contains__(self, column: object) -> bool:
        return self._find(column) is not None

    def __len__(self) -> int:
        return len(self._pairs)

    def __bool__(self) -> bool:
        return bool(self._pairs)

    def items(self) -> Iterator[Tuple[int, str]]:
        for column, fragments in self._pairs:
            yield column, "".join(fragments)


AnyRow = Union[Row, EventRow]


class RecordBuilder:
    """Resolves column names through a header table and applies the join policy."""

    __slots__ = ('headers', 'policy', 'row')

    def __init__(self, headers: HeaderTable, policy: JoinPolicy, row: AnyRow):
        self.headers = headers
        self.policy = policy
        self.row = row

    def add(self, name: str, value: str, separate: bool = True) -> None:
        """
        Append a value to the named column of the current row.

        ``separate`` selects between a repeated field (joined with the policy
        separator) and the continuation of a multi-line value.
        """
        column = self.headers.column_id(name)
        self.row.append(
            column,
            self.policy.prepare(value),
            self.policy.separator if separate else None,
        )


@dataclass
class ParsedTable:
    """
    Everything one output CSV is built from.

    ``name`` is the record type for nested audits and
    ``EventItem_<EventType>`` for event dialects.
    """
    name: str
    headers: HeaderTable
    rows: List[AnyRow] = field(default_factory=list)
    event_type: Optional[str] = None

    @property
    def audit_type(self) -> str:
        return self.event_type or self.name

    def __len__(self) -> int:
        return len(self.rows)
