#!python3
"""
Atomic CSV output for parsed audit tables.

Every table is written to ``<final name>.incomplete`` first and renamed
once complete, so a half-written file is never mistaken for a finished
one. A failed rename (typically a destination held open by a spreadsheet
application) leaves the temporary file in place for recovery.
"""

import csv
import logging
import os
from itertools import islice
from pathlib import Path
from typing import Iterable, List, Optional, Union

from .config import ParseOptions
from .utils import FileIdentity, output_file_name


TEMP_SUFFIX = ".incomplete"


class OutputRenameError(OSError):
    """The completed temporary file could not be moved to its final name."""

    def __init__(self, temp_path: Path, final_path: Path, reason: OSError):
        super().__init__(f"Could not rename '{temp_path}' to '{final_path}': {reason}")
        self.temp_path = temp_path
        self.final_path = final_path
        self.reason = reason


class CsvTableWriter:
    """Writes rendered tables into one output directory."""

    def __init__(
        self,
        output_dir: Union[str, Path],
        options: Optional[ParseOptions] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ):
        self.output_dir = Path(output_dir)
        self.options = options or ParseOptions()
        self.logger = logger or logging.getLogger(__name__)

    def final_path(self, identity: FileIdentity, table_name: str) -> Path:
        return self.output_dir / output_file_name(identity, table_name)

    def exists(self, identity: FileIdentity, table_name: str) -> bool:
        """Whether the table was already written by an earlier run."""
        if self.final_path(identity, table_name).exists():
            return True
        if self.options.excel_friendly:
            return (self.output_dir / output_file_name(identity, table_name, part=1)).exists()
        return False

    def write_table(
        self,
        identity: FileIdentity,
        table_name: str,
        headers: List[str],
        rows: Iterable[List[str]],
        row_count: int,
    ) -> List[Path]:
        """
        Write one table and return the final path(s).

        In excel-friendly mode tables with more than ``excel_max_rows`` data
        rows are split into numbered ``_spcsv<N>`` files, each with the
        header line.
        """
        max_rows = self.options.excel_max_rows
        if not self.options.excel_friendly or row_count <= max_rows:
            return [self._write_atomic(self.final_path(identity, table_name), headers, rows)]

        written = []
        row_iter = iter(rows)
        parts = (row_count + max_rows - 1) // max_rows
        for part in range(1, parts + 1):
            path = self.output_dir / output_file_name(identity, table_name, part=part)
            written.append(self._write_atomic(path, headers, islice(row_iter, max_rows)))
        self.logger.debug(f"Split [cyan]{table_name}[/] into [magenta]{parts}[/] files")
        return written

    def _write_atomic(self, final_path: Path, headers: List[str], rows: Iterable[List[str]]) -> Path:
        temp_path = final_path.with_name(final_path.name + TEMP_SUFFIX)
        with open(temp_path, 'w', encoding='utf-8', newline='') as f:
            writer = csv.writer(f, delimiter=self.options.delimiter, lineterminator="\n")
            writer.writerow(headers)
            writer.writerows(rows)
        try:
            os.replace(temp_path, final_path)
        except OSError as e:
            raise OutputRenameError(temp_path, final_path, e) from e
        return final_path
