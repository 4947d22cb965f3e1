#!python3
"""
Rich-based console output for auditparser.

This module provides styled terminal output using the Rich library:
- Console output with colors and formatting
- Logger wired to the shared console
- Batch summary table and per-file outcome tree
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree
from rich.theme import Theme

AUDITPARSER_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "file": "cyan",
    "count": "bold magenta",
    "time": "yellow",
    "header": "bold cyan",
    "progress.description": "cyan",
    "progress.percentage": "green",
    "progress.remaining": "yellow",
    "rule.title": "cyan",
    "status.parsed": "green",
    "status.cached": "cyan",
    "status.empty": "dim",
    "status.issues": "yellow",
    "status.split": "blue",
    "status.failed": "bold red",
    "stat.label": "dim",
    "stat.value": "bold cyan",
})

# Global console instance for consistent output
console = Console(theme=AUDITPARSER_THEME, highlight=False)


# ============================================================================
# QUIET MODE SUPPORT
# ============================================================================

_quiet_mode: bool = False


def set_quiet_mode(quiet: bool = True):
    """Enable/disable quiet mode globally.

    When quiet mode is active the end-of-batch summary table and failure
    tree are not printed. Log records are unaffected.
    """
    global _quiet_mode
    _quiet_mode = quiet


def is_quiet() -> bool:
    """Check if quiet mode is active."""
    return _quiet_mode


# ============================================================================
# LOGGING
# ============================================================================

def get_rich_logger(name: str = "auditparser", debug: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """
    Create a logger with Rich handler for styled console output.

    Args:
        name: Logger name
        debug: Enable debug level logging
        log_file: Optional file path for persistent logging

    Returns:
        Configured logger with Rich handler
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    rich_handler = RichHandler(
        console=console,
        show_path=False,
        show_time=False,
        show_level=False,
        markup=True,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    rich_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(rich_handler)

    if log_file:
        file_format = "%(asctime)s %(levelname)-8s %(message)s"
        if debug:
            file_format = "%(asctime)s %(levelname)-8s %(module)s:%(lineno)s %(funcName)s %(message)s"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if debug else logging.INFO)
        file_handler.setFormatter(logging.Formatter(file_format, datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(file_handler)

    return logger


# ============================================================================
# SUMMARY RENDERABLES
# ============================================================================

# Display order and style of the batch outcome counters
SUMMARY_ROWS = [
    ("Parsed", "parsed", "status.parsed"),
    ("Cached", "cached", "status.cached"),
    ("Empty", "empty", "status.empty"),
    ("Issues", "issues", "status.issues"),
    ("Split", "split", "status.split"),
    ("Failed", "failed", "status.failed"),
]


def build_summary_table(counts: Dict[str, int], title: Optional[str] = None) -> Table:
    """
    Build the end-of-batch table of files per outcome.

    Args:
        counts: Mapping of counter key (parsed, cached, ...) to file count
        title: Optional table title

    Returns:
        Rich Table renderable
    """
    table = Table(title=title, show_header=True, header_style="header", box=None, padding=(0, 2))
    table.add_column("Outcome", style="stat.label")
    table.add_column("Files", justify="right")
    for label, key, style in SUMMARY_ROWS:
        count = counts.get(key, 0)
        if key == "split" and not count:
            continue
        table.add_row(label, f"[{style}]{count:,}[/]")
    return table


def build_failure_tree(label: str, failures: List[Dict[str, Any]]) -> Tree:
    """
    Build a Rich Tree listing failed files grouped by parent directory.

    Args:
        label: Root label for the tree
        failures: List of dicts with keys: name, status, message

    Returns:
        Rich Tree renderable
    """
    tree = Tree(f"[bold]{label}[/]")
    by_dir: Dict[str, list] = {}
    for failure in failures:
        by_dir.setdefault(str(Path(failure["name"]).parent), []).append(failure)

    for dir_path, files in sorted(by_dir.items()):
        branch = tree if len(by_dir) == 1 else tree.add(f"[dim]{dir_path}/[/]")
        for failure in files:
            branch.add(
                f"[cyan]{escape(Path(failure['name']).name)}[/] [status.failed]{failure['status']}[/] "
                f"[dim]{escape(failure['message'])}[/]"
            )
    return tree
