#!python3
"""
Audit dialect detection for auditparser.

Audit files come in three structurally different layouts that all start
with an XML declaration followed by an item-list open tag. The generator
attribute on the item-list line tells them apart:

- Normal: nested item records (``<itemList ...>``)
- EventBuffer: flat event records (``generator="eventbuffer"``)
- StateAgentInspector: name/value detail records
  (``generator="stateagentinspector"``)

Companion files that only carry collection issues start with an
``<issueList`` line instead and hold no data.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Optional, Union


# =========================================================================
# Markers
# =========================================================================

DECLARATION_PREFIX = "<?xml"
ITEM_LIST_PREFIX = "<itemlist"
ISSUE_LIST_PREFIX = "<issuelist"
EVENTBUFFER_MARKER = 'generator="eventbuffer"'
STATEAGENTINSPECTOR_MARKER = 'generator="stateagentinspector"'


class Dialect(Enum):
    """Classification of an audit file."""
    NORMAL = "Normal"
    EVENT_BUFFER = "EventBuffer"
    STATE_AGENT_INSPECTOR = "StateAgentInspector"
    ISSUES_FILE = "IssuesFile"
    MALFORMED_HEADER = "MalformedHeader"

    @property
    def is_data(self) -> bool:
        """True for the three dialects that carry records."""
        return self in (Dialect.NORMAL, Dialect.EVENT_BUFFER, Dialect.STATE_AGENT_INSPECTOR)


@dataclass
class DetectionResult:
    """Result of probing the first two lines of a file."""

    dialect: Dialect

    # Raw header lines as read (without line terminators)
    first_line: Optional[str] = None
    second_line: Optional[str] = None

    # Human-readable description of the classification
    details: str = ""

    def __str__(self) -> str:
        if self.details:
            return f"{self.dialect.value} ({self.details})"
        return self.dialect.value


class DialectDetector:
    """
    Classifies audit files from their first two lines.

    The probe never reads more than two lines and has no side effect other
    than advancing the stream it is given.
    """

    def __init__(self, *, encoding: str = "utf-8", logger: Optional[logging.Logger] = None):
        self.encoding = encoding
        self.logger = logger or logging.getLogger(__name__)

    def detect(self, stream: IO[str]) -> DetectionResult:
        """Classify an open text stream positioned at its first line."""
        first_line = stream.readline()
        if not first_line:
            return DetectionResult(Dialect.MALFORMED_HEADER, details="file is empty")
        first_line = first_line.rstrip("\r\n")
        if not first_line.strip().startswith(DECLARATION_PREFIX):
            return DetectionResult(
                Dialect.MALFORMED_HEADER, first_line,
                details=f"line 1 does not start with '{DECLARATION_PREFIX}'"
            )

        second_line = stream.readline()
        if not second_line:
            return DetectionResult(Dialect.MALFORMED_HEADER, first_line, details="missing line 2")
        second_line = second_line.rstrip("\r\n")
        return self.classify(first_line, second_line)

    def classify(self, first_line: str, second_line: str) -> DetectionResult:
        """Classify from the item-list line once the declaration line is known good."""
        marker = second_line.lower().strip()
        if marker.startswith(ISSUE_LIST_PREFIX):
            return DetectionResult(Dialect.ISSUES_FILE, first_line, second_line, details="issues list")
        if not marker.startswith(ITEM_LIST_PREFIX):
            return DetectionResult(
                Dialect.MALFORMED_HEADER, first_line, second_line,
                details=f"unexpected 2nd line: {second_line[:80]}"
            )
        if EVENTBUFFER_MARKER in marker:
            return DetectionResult(Dialect.EVENT_BUFFER, first_line, second_line)
        if STATEAGENTINSPECTOR_MARKER in marker:
            return DetectionResult(Dialect.STATE_AGENT_INSPECTOR, first_line, second_line)
        return DetectionResult(Dialect.NORMAL, first_line, second_line)

    def detect_file(self, file_path: Union[str, Path]) -> DetectionResult:
        """Open a file, classify it and close it again."""
        with open(file_path, 'r', encoding=self.encoding, errors='replace', newline='\n') as f:
            result = self.detect(f)
        self.logger.debug(f"Detected {file_path}: {result}")
        return result
