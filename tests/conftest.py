"""
Shared pytest fixtures for the auditparser test suite.
"""

import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from auditparser import (
    BatchConfig,
    ParseOptions,
    SchemaConfig,
    create_silent_logger,
)


AGENT_ID = "AbCdEfGhIjKlMnOpQrStUv"


# =============================================================================
# Sample audit documents
# =============================================================================

NORMAL_AUDIT_LINES = [
    '<?xml version="1.0" encoding="UTF-8"?>',
    '<itemList generator="w32processes-memory" generatorVersion="1.0">',
    '  <ProcessItem created="2020-10-05T18:01:05Z" uid="1001">',
    '    <pid>4</pid>',
    '    <name>System</name>',
    '    <SectionList>',
    '      <MemorySection>',
    '        <name>ntdll.dll</name>',
    '      </MemorySection>',
    '      <MemorySection>',
    '        <name>kernel32.dll</name>',
    '      </MemorySection>',
    '    </SectionList>',
    '    <arguments />',
    '  </ProcessItem>',
    '  <ProcessItem created="2020-10-05T18:01:06.250Z" uid="1002">',
    '    <pid>88</pid>',
    '    <name>svchost.exe</name>',
    '    <description>first line',
    'second line',
    'last line</description>',
    '  </ProcessItem>',
    '</itemList>',
]

EVENTBUFFER_AUDIT_LINES = [
    '<?xml version="1.0" encoding="UTF-8"?>',
    '<itemList generator="eventbuffer" generatorVersion="1.0">',
    '  <eventItem sequence_num="10" uid="500" hits="[1, 2, 3] [4, 5, 6]">',
    '    <dnsLookupEvent>',
    '      <timestamp>2020-10-05T18:01:05.123Z</timestamp>',
    '      <hostname>example.com</hostname>',
    '      <pid>100</pid>',
    '    </dnsLookupEvent>',
    '  </eventItem>',
    '  <eventItem sequence_num="11" uid="501">',
    '    <processEvent>',
    '      <timestamp>2020-10-05T18:01:06Z</timestamp>',
    '      <process>cmd.exe</process>',
    '      <processCmdLine>cmd.exe /c',
    'echo hi</processCmdLine>',
    '    </processEvent>',
    '  </eventItem>',
    '  <eventItem sequence_num="12" uid="502">',
    '    <dnsLookupEvent>',
    '      <timestamp>2020-10-05T18:01:07Z</timestamp>',
    '      <hostname>example.org</hostname>',
    '      <pid>101</pid>',
    '    </dnsLookupEvent>',
    '  </eventItem>',
    '</itemList>',
]

INSPECTOR_AUDIT_LINES = [
    '<?xml version="1.0" encoding="UTF-8"?>',
    '<itemList generator="stateagentinspector" generatorVersion="1.0">',
    '  <eventItem sequence_num="1" uid="700">',
    '    <timestamp>2020-10-05T18:01:05.123Z</timestamp>',
    '    <eventType>fileWriteEvent</eventType>',
    '    <details>',
    '      <detail>',
    '        <name>fullPath</name>',
    '        <value>C:\\temp\\a.txt</value>',
    '      </detail>',
    '      <detail>',
    '        <name>hostname</name>',
    '        <value />',
    '      </detail>',
    '      <detail>',
    '        <name>textAtLowestOffset</name>',
    '        <value>line one',
    'line two</value>',
    '      </detail>',
    '    </details>',
    '  </eventItem>',
    '</itemList>',
]

ISSUES_AUDIT_LINES = [
    '<?xml version="1.0" encoding="UTF-8"?>',
    '<issueList generator="w32processes-memory">',
    '  <issue number="1" level="Warning">',
    '    <summary>Could not read process memory</summary>',
    '  </issue>',
    '</issueList>',
]

HEADER_ONLY_AUDIT_LINES = [
    '<?xml version="1.0" encoding="UTF-8"?>',
    '<itemList generator="w32ports">',
]


def audit_file_name(payload: str, hostname: str = "HOST1", agent_id: str = AGENT_ID) -> str:
    """Standard collected audit file name."""
    return f"{hostname}-{agent_id}-{payload}-20201005.xml"


def write_audit(directory: Path, name: str, lines, newline: str = "\n") -> Path:
    path = Path(directory) / name
    path.write_bytes((newline.join(lines) + newline).encode("utf-8"))
    return path


# =============================================================================
# Logger / configuration fixtures
# =============================================================================

@pytest.fixture
def test_logger():
    """Logger that discards every message."""
    return create_silent_logger("auditparser_test")


@pytest.fixture
def default_options():
    return ParseOptions()


@pytest.fixture
def flatten_options():
    return ParseOptions(flatten_newlines=True)


@pytest.fixture
def default_schema():
    return SchemaConfig()


@pytest.fixture
def batch_config():
    """Batch configuration suited to tests: no progress bar, two workers."""
    return BatchConfig(threads=2, disable_progress=True)


# =============================================================================
# Audit file fixtures
# =============================================================================

@pytest.fixture
def input_dir(tmp_path):
    directory = tmp_path / "input"
    directory.mkdir()
    return directory


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / "output"


@pytest.fixture
def normal_audit_file(input_dir):
    return write_audit(input_dir, audit_file_name("w32processes"), NORMAL_AUDIT_LINES)


@pytest.fixture
def eventbuffer_audit_file(input_dir):
    return write_audit(input_dir, audit_file_name("eventbuffer"), EVENTBUFFER_AUDIT_LINES)


@pytest.fixture
def inspector_audit_file(input_dir):
    return write_audit(input_dir, audit_file_name("stateagentinspector"), INSPECTOR_AUDIT_LINES)


@pytest.fixture
def issues_audit_file(input_dir):
    return write_audit(input_dir, audit_file_name("w32processes_issues"), ISSUES_AUDIT_LINES)


@pytest.fixture
def header_only_audit_file(input_dir):
    return write_audit(input_dir, audit_file_name("w32ports"), HEADER_ONLY_AUDIT_LINES)


@pytest.fixture
def populated_input_dir(
    input_dir,
    normal_audit_file,
    eventbuffer_audit_file,
    inspector_audit_file,
    issues_audit_file,
    header_only_audit_file,
):
    """Input directory holding one file of every kind."""
    return input_dir


# =============================================================================
# Raw sample / helper fixtures
# =============================================================================

@pytest.fixture
def normal_lines():
    return list(NORMAL_AUDIT_LINES)


@pytest.fixture
def eventbuffer_lines():
    return list(EVENTBUFFER_AUDIT_LINES)


@pytest.fixture
def inspector_lines():
    return list(INSPECTOR_AUDIT_LINES)


@pytest.fixture
def make_audit(input_dir):
    """Factory writing an audit file into the input directory.

    Usage: ``make_audit("w32disks", lines)`` writes a standard collected
    file name; pass ``name=`` for a literal file name.
    """
    def _make(payload=None, lines=(), *, name=None, newline="\n", directory=None):
        file_name = name or audit_file_name(payload)
        return write_audit(directory or input_dir, file_name, lines, newline)
    return _make


@pytest.fixture
def agent_id():
    return AGENT_ID
