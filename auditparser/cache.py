#!python3
"""
Resumable parse cache for auditparser.

Remembers the last status of every input file (keyed by name and size)
per output directory, so a later run can skip files that were already
parsed, found empty or recognised as issues files.

Document layout::

    {
      "Version": "1.0.0",
      "OutputDirectories": [
        {
          "OutputDirectory": "/abs/output",
          "XMLFiles": [{"Name": "...", "Size": 123, "Status": "parsed"}],
          "ArchiveFiles": []
        }
      ]
    }

The cache object is owned by the batch coordinator; workers never touch it.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import orjson


# =========================================================================
# Status values stored in the document
# =========================================================================

STATUS_PARSED = "parsed"
STATUS_SPLIT = "split"
STATUS_ISSUES = "ignored/issues"
STATUS_EMPTY = "ignored/empty"
STATUS_FAILED_RENAME = "failed/rename"
STATUS_FAILED_ERROR = "failed/error"
STATUS_FAILED_NOT_EXIST = "failed/notexist"
STATUS_FAILED_SPLIT_PENDING = "failed/splitpending"

# Statuses that let a later run skip the file, and the counter they feed
SKIP_COUNTERS = {
    STATUS_PARSED: "cached",
    STATUS_SPLIT: "cached",
    STATUS_ISSUES: "issues",
    STATUS_EMPTY: "empty",
}


@dataclass
class CacheEntry:
    """Last known status of one input file."""
    name: str
    size: int
    status: str

    @property
    def skip_counter(self) -> Optional[str]:
        """Counter to bump when a run skips this file, or None when it must be parsed."""
        return SKIP_COUNTERS.get(self.status)

    def to_dict(self) -> Dict[str, Any]:
        return {"Name": self.name, "Size": self.size, "Status": self.status}


class ParseCache:
    """
    Cache entries for one output directory, backed by a JSON document that
    may hold entries for other output directories too.
    """

    def __init__(
        self,
        cache_path: Union[str, Path],
        output_dir: Union[str, Path],
        *,
        version: str = "",
        logger: Optional[logging.Logger] = None,
    ):
        self.cache_path = Path(cache_path)
        self.output_dir = str(Path(output_dir).resolve())
        self.version = version
        self.logger = logger or logging.getLogger(__name__)
        self._document: Dict[str, Any] = {"Version": version, "OutputDirectories": []}
        self._section: Dict[str, Any] = {}
        self._entries: Dict[str, CacheEntry] = {}
        self._dirty = False
        self._select_section()

    @classmethod
    def load(
        cls,
        cache_path: Union[str, Path],
        output_dir: Union[str, Path],
        *,
        version: str = "",
        logger: Optional[logging.Logger] = None,
    ) -> "ParseCache":
        """
        Load the cache document, or start an empty one when the file is
        missing or blank.

        Raises:
            ValueError: If the document exists but cannot be decoded
        """
        cache = cls(cache_path, output_dir, version=version, logger=logger)
        path = Path(cache_path)
        if not path.exists():
            cache.logger.debug(f"No parse cache at {path}, starting a new one")
            return cache

        content = path.read_bytes()
        if not content.strip():
            return cache
        try:
            document = orjson.loads(content)
        except orjson.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in parse cache {path}: {e}")
        if not isinstance(document, dict) or not isinstance(document.get("OutputDirectories", []), list):
            raise ValueError(f"Invalid parse cache format: {path}")

        document.setdefault("OutputDirectories", [])
        if document.get("Version") != version:
            cache.logger.debug(f"Parse cache version {document.get('Version')!r} updated to {version!r}")
            document["Version"] = version
            cache._dirty = True
        cache._document = document
        cache._select_section()
        cache.logger.debug(f"Loaded [magenta]{len(cache)}[/] parse cache entries from [cyan]{path}[/]")
        return cache

    def _select_section(self):
        """Find (or create) the entry list of this cache's output directory."""
        for section in self._document["OutputDirectories"]:
            if section.get("OutputDirectory") == self.output_dir:
                break
        else:
            section = {"OutputDirectory": self.output_dir, "XMLFiles": [], "ArchiveFiles": []}
            self._document["OutputDirectories"].append(section)

        section.setdefault("XMLFiles", [])
        section.setdefault("ArchiveFiles", [])
        self._section = section
        self._entries = {}
        for item in section["XMLFiles"]:
            try:
                entry = CacheEntry(str(item["Name"]), int(item["Size"]), str(item["Status"]))
            except (KeyError, TypeError, ValueError):
                raise ValueError(f"Invalid parse cache entry in {self.cache_path}: {item!r}")
            self._entries[entry.name] = entry

    # ------------------------------------------------------------------
    # Lookups and updates
    # ------------------------------------------------------------------

    def get(self, name: str, size: int) -> Optional[CacheEntry]:
        """Entry for a file name, provided the recorded size still matches."""
        entry = self._entries.get(name)
        if entry is None or entry.size != size:
            return None
        return entry

    def record(self, name: str, size: int, status: str) -> CacheEntry:
        entry = CacheEntry(name, size, status)
        self._entries[name] = entry
        self._dirty = True
        return entry

    def entries(self) -> List[CacheEntry]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    @property
    def dirty(self) -> bool:
        return self._dirty

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> None:
        """Write the document to a temporary file and move it over the cache file."""
        self._section["XMLFiles"] = [entry.to_dict() for entry in self._entries.values()]
        self._document["Version"] = self.version
        temp_path = self.cache_path.with_name(self.cache_path.name + ".tmp")
        with open(temp_path, 'wb') as f:
            f.write(orjson.dumps(self._document, option=orjson.OPT_INDENT_2))
        os.replace(temp_path, self.cache_path)
        self._dirty = False
        self.logger.debug(f"Saved [magenta]{len(self)}[/] parse cache entries to [cyan]{self.cache_path}[/]")
