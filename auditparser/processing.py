#!python3
"""
Per-file processing for auditparser.

Everything that happens to one input file inside a worker thread lives
here: locating it, probing its dialect, running the matching parser,
assembling the columns and writing the CSV tables.

Contents
--------
- ``ParseStatus`` – outcome of one file, with its cache status and counter
- ``FileTask`` / ``ParseResult`` – what a worker receives and returns
- ``ProcessingContext`` – read-only state shared by all workers of a batch
- ``create_parser`` – dialect to parser factory
- ``process_file`` – the worker entry point; never raises for file-scoped
  problems
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from .cache import (
    STATUS_EMPTY,
    STATUS_FAILED_ERROR,
    STATUS_FAILED_NOT_EXIST,
    STATUS_FAILED_RENAME,
    STATUS_FAILED_SPLIT_PENDING,
    STATUS_ISSUES,
    STATUS_PARSED,
    STATUS_SPLIT,
)
from .config import ParseOptions
from .config_loader import SchemaConfig
from .detector import Dialect, DialectDetector
from .event_parsers import EventBufferParser, StateAgentInspectorParser
from .output import CsvTableWriter, OutputRenameError
from .parsers import AuditParseError, DialectParser, NormalParser
from .schema import ColumnAssembler
from .utils import derive_file_identity


# ============================================================================
# RESULT TYPES
# ============================================================================

class ParseStatus(Enum):
    """Outcome of processing one file."""
    PARSED = "Parsed"
    CACHED = "Cached"
    EMPTY = "Empty"
    SPLIT = "Split"
    SPLIT_PENDING = "SplitPending"
    ISSUES = "Issues"
    FAILED_ERROR = "FailedError"
    FAILED_RENAME = "FailedRename"
    FAILED_NOT_EXIST = "FailedNotExist"

    @property
    def cache_status(self) -> str:
        """Status string stored in the parse cache."""
        return _CACHE_STATUS[self]

    @property
    def counter(self) -> str:
        """BatchStats counter incremented for this outcome."""
        return _COUNTERS[self]

    @property
    def is_failure(self) -> bool:
        return self.counter == "failed"


_CACHE_STATUS = {
    ParseStatus.PARSED: STATUS_PARSED,
    ParseStatus.CACHED: STATUS_PARSED,
    ParseStatus.EMPTY: STATUS_EMPTY,
    ParseStatus.SPLIT: STATUS_SPLIT,
    ParseStatus.SPLIT_PENDING: STATUS_FAILED_SPLIT_PENDING,
    ParseStatus.ISSUES: STATUS_ISSUES,
    ParseStatus.FAILED_ERROR: STATUS_FAILED_ERROR,
    ParseStatus.FAILED_RENAME: STATUS_FAILED_RENAME,
    ParseStatus.FAILED_NOT_EXIST: STATUS_FAILED_NOT_EXIST,
}

_COUNTERS = {
    ParseStatus.PARSED: "parsed",
    ParseStatus.CACHED: "cached",
    ParseStatus.EMPTY: "empty",
    ParseStatus.SPLIT: "split",
    ParseStatus.SPLIT_PENDING: "failed",
    ParseStatus.ISSUES: "issues",
    ParseStatus.FAILED_ERROR: "failed",
    ParseStatus.FAILED_RENAME: "failed",
    ParseStatus.FAILED_NOT_EXIST: "failed",
}


@dataclass
class FileTask:
    """One input file queued for processing."""
    path: Path
    size: int
    # Cache key: the path relative to the input directory
    name: str
    dialect: Optional[Dialect] = None


@dataclass(frozen=True)
class ParseResult:
    """What a worker hands back to the coordinator for one task."""
    task: FileTask
    status: ParseStatus
    outputs: Tuple[Path, ...] = ()
    message: str = ""


# ============================================================================
# PROCESSING CONTEXT
# ============================================================================

@dataclass
class ProcessingContext:
    """Read-only configuration shared by every worker of a batch."""

    output_dir: Path
    options: ParseOptions = field(default_factory=ParseOptions)
    schema: SchemaConfig = field(default_factory=SchemaConfig)
    input_dir: Optional[Path] = None
    split_dir_name: str = "xmlsplit"
    force: bool = False
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))

    def __post_init__(self):
        self.output_dir = Path(self.output_dir)
        if self.input_dir is not None:
            self.input_dir = Path(self.input_dir)


# ============================================================================
# FACTORY
# ============================================================================

_PARSERS = {
    Dialect.NORMAL: NormalParser,
    Dialect.EVENT_BUFFER: EventBufferParser,
    Dialect.STATE_AGENT_INSPECTOR: StateAgentInspectorParser,
}


def create_parser(
    dialect: Dialect,
    options: Optional[ParseOptions] = None,
    logger: Optional[logging.Logger] = None,
) -> DialectParser:
    """Return a fresh parser for a data dialect.

    Raises:
        ValueError: If the dialect carries no records
    """
    if not dialect.is_data:
        raise ValueError(f"No parser for dialect {dialect.value}")
    return _PARSERS[dialect](options, logger=logger)


# ============================================================================
# WORKER ENTRY POINT
# ============================================================================

def resolve_task_path(task: FileTask, ctx: ProcessingContext) -> Optional[Path]:
    """Path to read for a task, falling back to the split directory of the input."""
    if task.path.is_file():
        return task.path
    if ctx.input_dir is not None:
        candidate = ctx.input_dir / ctx.split_dir_name / task.path.name
        if candidate.is_file():
            return candidate
    return None


def process_file(task: FileTask, ctx: ProcessingContext) -> ParseResult:
    """Process one file and report its outcome.

    File-scoped problems (structural errors, I/O errors, failed renames) are
    converted into a failed ``ParseResult``; nothing is raised for them.
    """
    logger = ctx.logger
    path = resolve_task_path(task, ctx)
    if path is None:
        logger.debug(f"[-] File not found: [cyan]{task.name}[/]")
        return ParseResult(task, ParseStatus.FAILED_NOT_EXIST, message="File does not exist")

    try:
        detection = DialectDetector(encoding=ctx.options.encoding, logger=logger).detect_file(path)
        task.dialect = detection.dialect
        if detection.dialect is Dialect.ISSUES_FILE:
            return ParseResult(task, ParseStatus.ISSUES, message="Issues list")
        if detection.dialect is Dialect.MALFORMED_HEADER:
            return ParseResult(task, ParseStatus.FAILED_ERROR, message=f"Malformed header: {detection.details}")

        parser = create_parser(detection.dialect, ctx.options, logger)
        tables = parser.parse_file(path, path.stat().st_size)
        if not tables:
            logger.debug(f"No records in [cyan]{task.name}[/]")
            return ParseResult(task, ParseStatus.EMPTY, message="No records")

        identity = derive_file_identity(path, ctx.options, ctx.split_dir_name)
        assembler = ColumnAssembler(ctx.schema, ctx.options, logger=logger)
        writer = CsvTableWriter(ctx.output_dir, ctx.options, logger=logger)
        outputs: List[Path] = []
        existing = 0
        for table in tables:
            if not ctx.force and writer.exists(identity, table.name):
                logger.debug(f"Output for [cyan]{table.name}[/] of {task.name} already exists")
                existing += 1
                continue
            headers = assembler.build_headers(table)
            outputs.extend(writer.write_table(
                identity, table.name, headers,
                assembler.iter_rows(table, headers, identity), len(table),
            ))

    except AuditParseError as e:
        return ParseResult(task, ParseStatus.FAILED_ERROR, message=str(e))
    except OutputRenameError as e:
        return ParseResult(task, ParseStatus.FAILED_RENAME, message=str(e))
    except OSError as e:
        return ParseResult(task, ParseStatus.FAILED_ERROR, message=f"I/O error: {e}")
    except Exception as e:
        logger.exception(f"[-] Unexpected error while processing {task.name}")
        return ParseResult(task, ParseStatus.FAILED_ERROR, message=f"{type(e).__name__}: {e}")

    if existing == len(tables):
        return ParseResult(task, ParseStatus.CACHED, message="Output already exists")
    record_count = sum(len(table) for table in tables)
    logger.debug(
        f"Parsed [cyan]{task.name}[/] ({detection.dialect.value}): "
        f"[magenta]{record_count:,}[/] records in [magenta]{len(tables)}[/] tables"
    )
    return ParseResult(task, ParseStatus.PARSED, tuple(outputs))
