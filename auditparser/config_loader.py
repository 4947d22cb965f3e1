#!python3
"""
Column schema configuration loader for auditparser.

This module provides:
- Schema document parsing (JSON or YAML)
- Validation of the header lists
- Default values when no document is given
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import orjson
import yaml


DEFAULT_MANDATORY_HEADERS = ["Tag", "Notes", "Hostname", "AgentID"]
DEFAULT_OPTIONAL_HEADERS = [
    "Audit UID",
    "UID",
    "Sequence Number",
    "FireEyeGeneratedTime",
    "EventBufferType",
]


@dataclass
class AuditHeaderConfig:
    """Explicit column order and omit-list for one audit type."""
    name: str
    item_name: str
    header_order: List[str] = field(default_factory=list)
    headers_omitted: List[str] = field(default_factory=list)


@dataclass
class SchemaConfig:
    """Column ordering rules shared by every table of a batch."""
    omit_unlisted: bool = False
    mandatory_headers: List[str] = field(default_factory=lambda: list(DEFAULT_MANDATORY_HEADERS))
    optional_headers: List[str] = field(default_factory=lambda: list(DEFAULT_OPTIONAL_HEADERS))
    audit_configs: List[AuditHeaderConfig] = field(default_factory=list)

    def __post_init__(self):
        self._by_item_name: Dict[str, AuditHeaderConfig] = {}
        for audit_config in self.audit_configs:
            # First entry wins when two configs share an item name
            self._by_item_name.setdefault(audit_config.item_name.lower(), audit_config)

    def find_audit_config(self, item_name: str) -> Optional[AuditHeaderConfig]:
        """Return the audit config whose item name matches, ignoring case."""
        return self._by_item_name.get(item_name.lower())


class ConfigLoader:
    """
    Loads a SchemaConfig from a JSON or YAML document.

    The document uses the keys ``Omit_Nonordered_Headers``,
    ``Mandatory_Headers``, ``Optional_Headers`` and ``Audit_Header_Configs``
    (a list of ``{Name, Item_Name, Header_Order, Headers_Omitted}``).
    Missing keys fall back to the built-in defaults.
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def load_document(self, config_path: Union[str, Path]) -> Dict[str, Any]:
        """
        Read the raw schema document.

        The format is picked from the file extension; unknown extensions are
        tried as JSON first, then as YAML.

        Raises:
            FileNotFoundError: If the document doesn't exist
            ValueError: If the document cannot be decoded
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Schema configuration file not found: {config_path}")

        suffix = config_file.suffix.lower()
        with open(config_file, 'rb') as f:
            content = f.read()

        if suffix == '.json':
            try:
                document = orjson.loads(content)
            except orjson.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in schema configuration file {config_file}: {e}")
        elif suffix in ('.yaml', '.yml'):
            try:
                document = yaml.safe_load(content.decode('utf-8'))
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in schema configuration file {config_file}: {e}")
        else:
            try:
                document = orjson.loads(content)
            except orjson.JSONDecodeError:
                try:
                    document = yaml.safe_load(content.decode('utf-8'))
                except yaml.YAMLError:
                    raise ValueError(
                        f"Unable to parse schema configuration file: {config_file}. "
                        f"Supported formats: .json, .yaml, .yml"
                    )

        if document is None:
            document = {}
        if not isinstance(document, dict):
            raise ValueError(
                f"Invalid schema configuration file format: {config_file}. "
                f"Expected a dictionary/object at root level."
            )
        return document

    def parse_config(self, document: Dict[str, Any]) -> SchemaConfig:
        """Build a SchemaConfig from a decoded document."""
        audit_configs = []
        for index, entry in enumerate(document.get('Audit_Header_Configs') or []):
            if not isinstance(entry, dict):
                raise ValueError(f"Audit_Header_Configs[{index}] must be an object")
            item_name = entry.get('Item_Name') or entry.get('Name')
            if not item_name:
                raise ValueError(f"Audit_Header_Configs[{index}] has no Item_Name")
            audit_configs.append(AuditHeaderConfig(
                name=entry.get('Name', item_name),
                item_name=item_name,
                header_order=self._string_list(entry, 'Header_Order', index),
                headers_omitted=self._string_list(entry, 'Headers_Omitted', index),
            ))

        mandatory = document.get('Mandatory_Headers')
        optional = document.get('Optional_Headers')
        return SchemaConfig(
            omit_unlisted=bool(document.get('Omit_Nonordered_Headers', False)),
            mandatory_headers=list(mandatory) if mandatory is not None else list(DEFAULT_MANDATORY_HEADERS),
            optional_headers=list(optional) if optional is not None else list(DEFAULT_OPTIONAL_HEADERS),
            audit_configs=audit_configs,
        )

    def load(self, config_path: Optional[Union[str, Path]] = None) -> SchemaConfig:
        """Load and parse a schema document, or return the defaults when no path is given."""
        if config_path is None:
            self.logger.debug("No schema configuration given, using defaults")
            return SchemaConfig()
        config = self.parse_config(self.load_document(config_path))
        self.logger.info(
            f"[+] Loaded schema configuration from [cyan]{config_path}[/] "
            f"([magenta]{len(config.audit_configs)}[/] audit types)"
        )
        return config

    @staticmethod
    def _string_list(entry: Dict[str, Any], key: str, index: int) -> List[str]:
        values = entry.get(key) or []
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise ValueError(f"Audit_Header_Configs[{index}].{key} must be a list of strings")
        return values
