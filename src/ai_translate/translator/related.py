"""Related strings: neighbor text units sent to the model as context."""

import threading
from collections import defaultdict
from enum import Enum
from typing import NamedTuple, Optional

import structlog

from ai_translate.tm.models import AssetTextUnit, TranslatableUnit
from ai_translate.tm.store import TranslationMemory
from ai_translate.translator.types import RelatedStringInput

logger = structlog.get_logger()

CHARACTER_LIMIT = 10000
# Estimated JSON cost of one entry (keys, quotes, separators)
JSON_OVERHEAD = 30


class RelatedStringsType(str, Enum):
    """How neighbors of a text unit are selected."""

    USAGES = "USAGES"
    ID_PREFIX = "ID_PREFIX"
    NONE = "NONE"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "RelatedStringsType":
        if value is None:
            return cls.NONE
        return cls(value.upper())


class FilePosition(NamedTuple):
    path: str
    line: Optional[int]

    @classmethod
    def parse(cls, usage: str) -> "FilePosition":
        """Parse ``path:line`` (line optional)."""
        path, sep, line = usage.rpartition(":")
        if sep and line.isdigit():
            return cls(path, int(line))
        return cls(usage, None)


def get_prefix(name: str) -> str:
    """Part of a string id before the first dot."""
    return name.split(".", 1)[0]


def filter_by_char_limit(
    related_strings: list[RelatedStringInput], char_limit: int = CHARACTER_LIMIT
) -> list[RelatedStringInput]:
    """Return the longest prefix of ``related_strings`` fitting in ``char_limit``."""
    total = 0
    count = 0
    for rs in related_strings:
        char_count = len(rs.source or "") + len(rs.description or "") + JSON_OVERHEAD
        if total + char_count > char_limit:
            break
        total += char_count
        count += 1
    return list(related_strings[:count])


class _AssetExtractionIndex:
    """Sibling text units of one asset extraction, indexed for one mode."""

    def __init__(self, asset_text_units: list[AssetTextUnit], type: RelatedStringsType):
        self.by_id: dict[int, AssetTextUnit] = {}
        for atu in asset_text_units:
            self.by_id.setdefault(atu.id, atu)

        self.by_usage_path: dict[str, list[AssetTextUnit]] = {}
        self.by_id_prefix: dict[str, list[AssetTextUnit]] = {}

        if type == RelatedStringsType.USAGES:
            groups: dict[str, list[tuple[int, AssetTextUnit]]] = defaultdict(list)
            for atu in asset_text_units:
                for usage in atu.usages:
                    position = FilePosition.parse(usage)
                    key = position.line if position.line is not None else atu.id
                    groups[position.path].append((key, atu))
            self.by_usage_path = {
                path: [atu for _, atu in sorted(entries, key=lambda e: e[0])]
                for path, entries in groups.items()
            }
        elif type == RelatedStringsType.ID_PREFIX:
            prefixes: dict[str, list[AssetTextUnit]] = defaultdict(list)
            for atu in asset_text_units:
                prefixes[get_prefix(atu.name)].append(atu)
            self.by_id_prefix = dict(prefixes)


class RelatedStringsProvider:
    """Lazily index asset extractions and return related strings of a unit.

    One provider lives for one orchestration run. Indexes are computed once
    per asset extraction, under a single lock, the first time a unit of that
    extraction is looked up.
    """

    def __init__(
        self,
        tm: TranslationMemory,
        type: RelatedStringsType = RelatedStringsType.NONE,
        char_limit: int = CHARACTER_LIMIT,
    ):
        self.tm = tm
        self.type = type
        self.char_limit = char_limit
        self._indexes: dict[int, _AssetExtractionIndex] = {}
        self._lock = threading.Lock()

    def _get_index(self, asset_extraction_id: int) -> _AssetExtractionIndex:
        with self._lock:
            index = self._indexes.get(asset_extraction_id)
            if index is None:
                asset_text_units = self.tm.find_asset_text_units(asset_extraction_id)
                index = _AssetExtractionIndex(asset_text_units, self.type)
                self._indexes[asset_extraction_id] = index
                logger.debug(
                    "related_strings_indexed",
                    asset_extraction_id=asset_extraction_id,
                    asset_text_units=len(asset_text_units),
                    type=self.type.value,
                )
            return index

    def get_related_strings(self, unit: TranslatableUnit) -> list[RelatedStringInput]:
        if self.type == RelatedStringsType.NONE:
            return []

        if unit.asset_extraction_id is None or unit.asset_text_unit_id is None:
            logger.warning("related_strings_no_asset", tm_text_unit_id=unit.tm_text_unit_id)
            return []

        index = self._get_index(unit.asset_extraction_id)
        asset_text_unit = index.by_id.get(unit.asset_text_unit_id)

        if asset_text_unit is None:
            # Extraction changed since the unit was read
            logger.warning(
                "related_strings_unit_not_indexed",
                tm_text_unit_id=unit.tm_text_unit_id,
                asset_text_unit_id=unit.asset_text_unit_id,
            )
            return []

        if self.type == RelatedStringsType.USAGES:
            related = self._by_usages(index, asset_text_unit)
        else:
            related = self._by_id_prefix(index, asset_text_unit)

        filtered = filter_by_char_limit(related, self.char_limit)
        logger.debug(
            "related_strings",
            type=self.type.value,
            count=len(related),
            filtered=len(filtered),
        )
        return filtered

    @staticmethod
    def _by_usages(
        index: _AssetExtractionIndex, asset_text_unit: AssetTextUnit
    ) -> list[RelatedStringInput]:
        related = []
        for usage in asset_text_unit.usages:
            path = FilePosition.parse(usage).path
            for atu in index.by_usage_path.get(path, []):
                related.append(RelatedStringInput(source=atu.content, description=atu.comment))
        return related

    @staticmethod
    def _by_id_prefix(
        index: _AssetExtractionIndex, asset_text_unit: AssetTextUnit
    ) -> list[RelatedStringInput]:
        return [
            RelatedStringInput(source=atu.content, description=atu.comment)
            for atu in index.by_id_prefix.get(get_prefix(asset_text_unit.name), [])
        ]
