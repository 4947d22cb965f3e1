#!python3
"""
Configuration dataclasses for auditparser.

This module provides typed configuration containers using dataclasses
for the per-file parse options and the batch orchestrator settings.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple


# Files at or above this size are streamed line by line instead of being
# read into memory in one go.
STREAMING_THRESHOLD_BYTES = 100_000_000

# Longest line accepted by the streaming reader (20 MiB).
MAX_LINE_LENGTH = 20 * 1024 * 1024

# Cumulative input volume after which the parse cache is written to disk.
CACHE_FLUSH_BYTES = 500_000_000

# Excel-friendly output limits
EXCEL_MAX_CELL_LENGTH = 32000
EXCEL_MAX_ROWS = 999999


@dataclass
class ParseOptions:
    """
    Options shared by every parser invocation of a batch.

    Used by the dialect parsers, the column assembler and the output writer.
    """
    # Row value policies
    flatten_newlines: bool = False
    capture_record_attributes: bool = True
    hits_columns: Tuple[str, str] = ("Extra1", "Extra2")

    # Synthetic column overrides
    hostname_override: Optional[str] = None
    agent_id_override: Optional[str] = None

    # Output options
    excel_friendly: bool = False
    excel_max_rows: int = EXCEL_MAX_ROWS
    excel_max_cell_length: int = EXCEL_MAX_CELL_LENGTH
    csv_name_format: int = 1
    delimiter: str = ","

    # Input options
    encoding: str = "utf-8"
    streaming_threshold: int = STREAMING_THRESHOLD_BYTES
    max_line_length: int = MAX_LINE_LENGTH

    def __post_init__(self):
        """Validate the csv name format and the hits column pair."""
        if self.csv_name_format not in (1, 2):
            raise ValueError(f"Unsupported csv name format: {self.csv_name_format}")
        if len(self.hits_columns) != 2:
            raise ValueError("hits_columns must name exactly two columns")
        self.hits_columns = tuple(self.hits_columns)


@dataclass
class BatchConfig:
    """
    Configuration for a batch run.

    Used by BatchOrchestrator for pool sizing, resumability and
    file selection.
    """
    # Worker pool
    threads: Optional[int] = None
    debug: bool = False
    memory_limit_percent: float = 75.0
    sort_by_size: bool = True

    # Resumability
    force_reparse: bool = False
    wipe_output: bool = False
    cache_flush_bytes: int = CACHE_FLUSH_BYTES
    cache_file_name: str = "_ParseCache.json"

    # File selection
    recursive: bool = False
    select: Optional[List[str]] = None
    avoid: Optional[List[str]] = None

    # Oversized files are handed to an external splitter when set
    split_threshold: Optional[int] = None
    split_dir_name: str = "xmlsplit"

    # Presentation
    disable_progress: bool = False

    excluded_suffixes: List[str] = field(default_factory=lambda: [".json", ".incomplete"])

    def __post_init__(self):
        """Wiping the output directory implies reparsing everything."""
        if self.wipe_output:
            self.force_reparse = True
        if self.threads is not None and self.threads < 1:
            raise ValueError(f"threads must be at least 1, got {self.threads}")
