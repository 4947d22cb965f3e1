#!python3
"""
Column schema assembly for parsed audit tables.

Turns the columns discovered by a parser into the final CSV column order,
using the mandatory / optional / per-audit lists of a SchemaConfig, and
renders the rows in that order.
"""

import logging
from typing import Dict, Iterator, List, Optional

from .config import EXCEL_MAX_CELL_LENGTH, ParseOptions
from .config_loader import SchemaConfig
from .rows import JoinPolicy, ParsedTable
from .utils import FileIdentity


EVENT_TYPE_COLUMN = "EventBufferType"

# Columns of the "log" audit combined into msg_full
LOG_AUDIT_TYPE = "log"
LOG_ARGS_COLUMN = "args.arg"
LOG_MESSAGE_COLUMN = "msg"
LOG_FULL_MESSAGE_COLUMN = "msg_full"


def truncate_cell(value: str, limit: int = EXCEL_MAX_CELL_LENGTH) -> str:
    """Cut cells over ``limit`` characters to ``limit`` characters followed by ``...``."""
    if len(value) > limit:
        return value[:limit] + "..."
    return value


def expand_log_message(message: str, args: str, separator: str) -> str:
    """Substitute ``^1``, ``^2``, ... in a log message with its arguments."""
    for index, arg in enumerate(args.split(separator), start=1):
        if arg.endswith("\r"):
            arg = arg[:-1]
        message = message.replace(f"^{index}", arg, 1)
    return message


class ColumnAssembler:
    """
    Computes column order and renders rows for one parsed table.

    Column order:
      1. mandatory columns, always present
      2. optional columns that were discovered (``EventBufferType`` is
         always present for event tables)
      3. the audit type's explicit ``Header_Order``
      4. unless omitted, the remaining discovered columns sorted
         case-insensitively, minus the audit type's ``Headers_Omitted``

    A column never appears twice.
    """

    def __init__(
        self,
        schema: Optional[SchemaConfig] = None,
        options: Optional[ParseOptions] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ):
        self.schema = schema or SchemaConfig()
        self.options = options or ParseOptions()
        self.logger = logger or logging.getLogger(__name__)

    def build_headers(self, table: ParsedTable) -> List[str]:
        ordered: List[str] = []
        placed = set()

        def place(name: str):
            if name not in placed:
                placed.add(name)
                ordered.append(name)

        for name in self.schema.mandatory_headers:
            place(name)
        for name in self.schema.optional_headers:
            if name in table.headers or (table.event_type is not None and name == EVENT_TYPE_COLUMN):
                place(name)

        audit_config = self.schema.find_audit_config(table.name)
        if audit_config is not None:
            for name in audit_config.header_order:
                place(name)
        else:
            self.logger.debug(f"No header configuration for [cyan]{table.name}[/]")

        if not self.schema.omit_unlisted:
            omitted = set(audit_config.headers_omitted) if audit_config is not None else set()
            remaining = [
                name for name in table.headers
                if name not in placed and name not in omitted
            ]
            for name in sorted(remaining, key=lambda n: (n.lower(), n)):
                place(name)

        if self._wants_full_message(table, ordered):
            place(LOG_FULL_MESSAGE_COLUMN)
        return ordered

    def iter_rows(self, table: ParsedTable, headers: List[str], identity: FileIdentity) -> Iterator[List[str]]:
        """Yield the cells of every row, in source order, following ``headers``."""
        constants: Dict[str, str] = {
            "Hostname": identity.hostname,
            "AgentID": identity.agent_id,
        }
        if table.event_type is not None:
            constants[EVENT_TYPE_COLUMN] = table.event_type

        # Position -> constant value, or column id, or None for undiscovered columns
        plan = []
        for name in headers:
            if name in constants:
                plan.append((constants[name], None))
            else:
                plan.append((None, table.headers.get(name)))

        full_message = LOG_FULL_MESSAGE_COLUMN in headers and self._wants_full_message(table, headers)
        args_id = table.headers.get(LOG_ARGS_COLUMN)
        msg_id = table.headers.get(LOG_MESSAGE_COLUMN)
        full_index = headers.index(LOG_FULL_MESSAGE_COLUMN) if full_message else -1
        separator = JoinPolicy(self.options.flatten_newlines).line_separator
        excel = self.options.excel_friendly
        cell_limit = self.options.excel_max_cell_length

        for row in table.rows:
            cells = []
            for constant, column in plan:
                if constant is not None:
                    cells.append(constant)
                elif column is not None:
                    cells.append(row.get(column))
                else:
                    cells.append("")
            if full_message:
                cells[full_index] = expand_log_message(row.get(msg_id), row.get(args_id), separator)
            if excel:
                cells = [truncate_cell(cell, cell_limit) for cell in cells]
            yield cells

    def render(self, table: ParsedTable, identity: FileIdentity) -> List[List[str]]:
        """Header line followed by every data row."""
        headers = self.build_headers(table)
        return [headers] + list(self.iter_rows(table, headers, identity))

    @staticmethod
    def _wants_full_message(table: ParsedTable, headers: List[str]) -> bool:
        return (
            table.event_type is None
            and table.name.lower() == LOG_AUDIT_TYPE
            and LOG_ARGS_COLUMN in headers
            and LOG_MESSAGE_COLUMN in headers
        )
