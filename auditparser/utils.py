#!python3
"""
Utility functions for auditparser.

This module contains:
- Logging initialization
- File selection/filtering utilities
- Host / agent / payload identity derived from audit file names
- Output file naming
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Union

from .config import ParseOptions
from .console import get_rich_logger


HOSTNAME_PLACEHOLDER = "HOSTNAMEPLACEHOLDER"
AGENT_ID_PLACEHOLDER = "AGENTIDPLACEHOLDER0000"
SPLIT_MARKER = "_spxml"
SPLIT_DIR_NAME = "xmlsplit"
EXCEL_SPLIT_MARKER = "_spcsv"

# Collected audits are usually stored in a "<22 char agent id>_<hostname>" directory
_RE_AGENT_DIRECTORY = re.compile(r'([A-Za-z0-9]{22})_(.+)')


def init_logger(debug_mode, log_file=None, name='auditparser'):
    """Initialize the package logger.

    Args:
        debug_mode: Enable debug-level logging with verbose format
        log_file: Optional path to log file for persistent logging
        name: Logger name (default: 'auditparser')

    Returns:
        Configured logger instance
    """
    return get_rich_logger(name=name, debug=debug_mode, log_file=log_file)


def create_silent_logger(name='auditparser_worker'):
    """Create a logger that suppresses all output.

    Args:
        name: Logger name

    Returns:
        Logger instance that discards all messages
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.CRITICAL + 1)
    logger.handlers.clear()
    logger.propagate = False
    logger.addHandler(logging.NullHandler())
    return logger


def select_files(path_list, select_files_list):
    """Keep the files whose path contains one of the filters (case-insensitive)."""
    if not select_files_list:
        return list(path_list)

    filters = [file_filter.lower() for file_filter in select_files_list]
    return [p for p in path_list if any(f in str(p).lower() for f in filters)]


def avoid_files(path_list, avoid_files_list):
    """Drop the files whose path contains one of the filters (case-insensitive)."""
    if not avoid_files_list:
        return list(path_list)

    filters = [file_filter.lower() for file_filter in avoid_files_list]
    return [p for p in path_list if all(f not in str(p).lower() for f in filters)]


def format_size(size):
    """Format byte size for human-readable display."""
    if size >= 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024 * 1024):.1f} GB"
    elif size >= 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    elif size >= 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size} bytes"


################################################################
# FILE IDENTITY AND OUTPUT NAMING
################################################################

@dataclass(frozen=True)
class FileIdentity:
    """Values of the synthetic columns and the output name prefix of one input file."""
    hostname: str
    agent_id: str
    payload: str

    @property
    def prefix(self) -> str:
        return f"{self.hostname}-{self.agent_id}-{self.payload}"


def derive_file_identity(
    file_path: Union[str, Path],
    options: Optional[ParseOptions] = None,
    split_dir_name: str = SPLIT_DIR_NAME,
) -> FileIdentity:
    """
    Work out hostname, agent id and payload name from an audit file name.

    Standard names look like ``<hostname>-<agentid>-<payload>-<suffix>.xml``
    (the hostname may itself contain dashes). Anything else falls back to
    placeholders, or to the ``<agentid>_<hostname>`` parent directory name
    when there is one. Pieces written to the split directory take that name
    from the directory holding it.
    """
    options = options or ParseOptions()
    path = Path(file_path)
    base_name = path.name[:-4] if path.name.endswith(".xml") else path.name
    parts = base_name.split("-")

    if ".urn_uuid_" in base_name or len(parts) < 4:
        hostname = HOSTNAME_PLACEHOLDER
        agent_id = AGENT_ID_PLACEHOLDER
        directory = path.parent
        if directory.name == split_dir_name:
            directory = directory.parent
        m = _RE_AGENT_DIRECTORY.search(directory.name)
        if m:
            agent_id, hostname = m.group(1), m.group(2)

        if SPLIT_MARKER in base_name:
            payload = base_name
            placeholder_prefix = f"{HOSTNAME_PLACEHOLDER}-{AGENT_ID_PLACEHOLDER}-"
            if payload.startswith(placeholder_prefix):
                payload = payload[len(placeholder_prefix):]
            if payload.endswith("-UNCONFIRMED"):
                payload = payload[:-len("-UNCONFIRMED")]
        else:
            payload = base_name.replace("-", "_")
    else:
        hostname = "-".join(parts[:-3])
        agent_id = parts[-3]
        payload = parts[-2]
        if options.csv_name_format == 2:
            split_at = payload.find(SPLIT_MARKER)
            payload = "0" + payload[split_at:] if split_at != -1 else "0"

    if options.hostname_override:
        hostname = options.hostname_override
    if options.agent_id_override:
        agent_id = options.agent_id_override
    return FileIdentity(hostname, agent_id, payload)


def output_file_name(identity: FileIdentity, table_name: str, part: Optional[int] = None) -> str:
    """``<host>-<agent>-<payload>-<table>.csv``, or the numbered ``_spcsv<N>`` variant of a split table."""
    if part is None:
        return f"{identity.prefix}-{table_name}.csv"
    return f"{identity.prefix}{EXCEL_SPLIT_MARKER}{part}-{table_name}.csv"


def list_files(root: Union[str, Path], recursive: bool = False, excluded_suffixes: Iterable[str] = ()) -> List[Path]:
    """List regular files under ``root`` (or ``root`` itself when it is a file), sorted by path."""
    root = Path(root)
    if root.is_file():
        return [root]
    pattern = root.rglob("*") if recursive else root.glob("*")
    excluded = tuple(s.lower() for s in excluded_suffixes)
    return sorted(p for p in pattern if p.is_file() and not p.name.lower().endswith(excluded))
