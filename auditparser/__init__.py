#!python3
"""
auditparser - Convert line-oriented endpoint audit XML into flat CSV tables.

This package provides modular components for audit parsing:

Modules:
- config: Configuration dataclasses for parse options and batch runs
- config_loader: Column schema configuration (JSON / YAML)
- detector: Dialect detection from the first two lines of a file
- rows: Header tables, rows and join policy shared by the parsers
- parsers: Normal-style parser and the parser base class
- event_parsers: EventBuffer and StateAgentInspector parsers
- schema: Column order assembly and row rendering
- output: Atomic CSV writer
- cache: Resumable parse cache
- processing: Per-file worker pipeline
- parallel: Batch orchestrator with memory-aware thread pool
"""

import logging

__version__ = "1.0.0"

from .config import (
    ParseOptions,
    BatchConfig,
)
from .config_loader import (
    ConfigLoader,
    SchemaConfig,
    AuditHeaderConfig,
)
from .detector import (
    Dialect,
    DetectionResult,
    DialectDetector,
)
from .rows import (
    HeaderTable,
    Row,
    EventRow,
    JoinPolicy,
    ParsedTable,
    normalize_timestamp,
)
from .parsers import (
    AuditParseError,
    DialectParser,
    NormalParser,
)
from .event_parsers import (
    EventBufferParser,
    StateAgentInspectorParser,
)
from .schema import ColumnAssembler
from .output import CsvTableWriter, OutputRenameError
from .cache import ParseCache, CacheEntry
from .processing import (
    FileTask,
    ParseResult,
    ParseStatus,
    ProcessingContext,
    create_parser,
    process_file,
)
from .parallel import (
    BatchOrchestrator,
    BatchStats,
    calculate_optimal_workers,
)
from .utils import (
    init_logger,
    create_silent_logger,
    select_files,
    avoid_files,
    format_size,
    FileIdentity,
    derive_file_identity,
)
from .console import (
    console,
    get_rich_logger,
    set_quiet_mode,
    is_quiet,
)

# Configure NullHandler for library-safe logging
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    '__version__',
    # Configuration
    'ParseOptions',
    'BatchConfig',
    'ConfigLoader',
    'SchemaConfig',
    'AuditHeaderConfig',
    # Detection
    'Dialect',
    'DetectionResult',
    'DialectDetector',
    # Rows
    'HeaderTable',
    'Row',
    'EventRow',
    'JoinPolicy',
    'ParsedTable',
    'normalize_timestamp',
    # Parsers
    'AuditParseError',
    'DialectParser',
    'NormalParser',
    'EventBufferParser',
    'StateAgentInspectorParser',
    # Schema and output
    'ColumnAssembler',
    'CsvTableWriter',
    'OutputRenameError',
    # Cache
    'ParseCache',
    'CacheEntry',
    # Processing
    'FileTask',
    'ParseResult',
    'ParseStatus',
    'ProcessingContext',
    'create_parser',
    'process_file',
    # Batch orchestration
    'BatchOrchestrator',
    'BatchStats',
    'calculate_optimal_workers',
    # Utility functions
    'init_logger',
    'create_silent_logger',
    'select_files',
    'avoid_files',
    'format_size',
    'FileIdentity',
    'derive_file_identity',
    # Rich console output
    'console',
    'get_rich_logger',
    'set_quiet_mode',
    'is_quiet',
]
