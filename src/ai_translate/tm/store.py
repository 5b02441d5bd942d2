"""Translation memory read/write API used by the pipeline.

The real translation memory lives behind a relational store. The pipeline
only depends on the ``TranslationMemory`` protocol; ``JsonTranslationMemory``
is a file-backed implementation used by the CLI and the tests.
"""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

import structlog
from pydantic import BaseModel, Field

from ai_translate.tm.models import (
    AssetTextUnit,
    Repository,
    StatusFilter,
    TextUnitStatus,
    TranslatableUnit,
    VariantComment,
)

logger = structlog.get_logger()


class VariantWrite(BaseModel):
    """A new current-variant assignment."""

    repository_id: int
    locale: str
    tm_text_unit_id: int
    target: str
    target_comment: Optional[str] = None
    status: TextUnitStatus
    included_in_localized_file: bool = True
    comments: list[VariantComment] = Field(default_factory=list)


class CurrentVariantResult(BaseModel):
    """Outcome of a variant write."""

    tm_text_unit_id: int
    variant_id: int
    current_variant_updated: bool
    comments: list[VariantComment] = Field(default_factory=list)


class TranslationMemory(Protocol):
    """Read/write API of the translation memory."""

    def get_repository(self, name: str) -> Optional[Repository]:
        ...

    def search(
        self,
        repository_id: int,
        locale: str,
        status_filter: StatusFilter,
        tm_text_unit_ids: Optional[list[int]] = None,
        limit: Optional[int] = None,
    ) -> list[TranslatableUnit]:
        ...

    def find_asset_text_units(self, asset_extraction_id: int) -> list[AssetTextUnit]:
        ...

    def add_current_variant(self, write: VariantWrite) -> CurrentVariantResult:
        ...


class StoredTextUnit(BaseModel):
    """Source side of a text unit."""

    tm_text_unit_id: int
    repository_id: int
    name: str = ""
    source: Optional[str] = None
    comment: Optional[str] = None
    asset_id: Optional[int] = None
    asset_extraction_id: Optional[int] = None
    asset_text_unit_id: Optional[int] = None
    used: bool = True


class StoredVariant(BaseModel):
    """A translation of a text unit in one locale."""

    id: int
    tm_text_unit_id: int
    locale: str
    content: str
    comment: Optional[str] = None
    status: TextUnitStatus = TextUnitStatus.APPROVED
    included_in_localized_file: bool = True
    comments: list[VariantComment] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)


class TMData(BaseModel):
    """Serialized content of a JSON translation memory."""

    repositories: list[Repository] = Field(default_factory=list)
    text_units: list[StoredTextUnit] = Field(default_factory=list)
    asset_text_units: list[AssetTextUnit] = Field(default_factory=list)
    variants: list[StoredVariant] = Field(default_factory=list)
    # "<tm_text_unit_id>|<locale>" → variant id
    current_variants: dict[str, int] = Field(default_factory=dict)


def _current_key(tm_text_unit_id: int, locale: str) -> str:
    return f"{tm_text_unit_id}|{locale}"


def _keeps_current(current: StoredVariant, write: VariantWrite) -> bool:
    if current.content != write.target:
        return False
    if not current.included_in_localized_file:
        return True
    return (
        current.status == write.status
        and current.included_in_localized_file == write.included_in_localized_file
    )


class JsonTranslationMemory:
    """Translation memory kept in memory and persisted to a JSON file."""

    FILENAME = "tm.json"

    def __init__(self, data: Optional[TMData] = None):
        self.data = data or TMData()
        self._lock = threading.Lock()
        self._variants_by_id = {v.id: v for v in self.data.variants}

    # -- read ---------------------------------------------------------------

    def get_repository(self, name: str) -> Optional[Repository]:
        for repository in self.data.repositories:
            if repository.name == name:
                return repository
        return None

    def current_variant(self, tm_text_unit_id: int, locale: str) -> Optional[StoredVariant]:
        variant_id = self.data.current_variants.get(_current_key(tm_text_unit_id, locale))
        if variant_id is None:
            return None
        return self._variants_by_id.get(variant_id)

    def search(
        self,
        repository_id: int,
        locale: str,
        status_filter: StatusFilter,
        tm_text_unit_ids: Optional[list[int]] = None,
        limit: Optional[int] = None,
    ) -> list[TranslatableUnit]:
        """Return used text units of a repository, projected for one locale."""
        ids = set(tm_text_unit_ids) if tm_text_unit_ids is not None else None
        results: list[TranslatableUnit] = []

        with self._lock:
            for text_unit in self.data.text_units:
                if text_unit.repository_id != repository_id or not text_unit.used:
                    continue
                if ids is not None and text_unit.tm_text_unit_id not in ids:
                    continue

                variant = self.current_variant(text_unit.tm_text_unit_id, locale)
                if not self._matches(status_filter, variant):
                    continue

                results.append(self._to_unit(text_unit, variant, locale))
                if limit is not None and len(results) >= limit:
                    break

        return results

    @staticmethod
    def _matches(status_filter: StatusFilter, variant: Optional[StoredVariant]) -> bool:
        if status_filter == StatusFilter.ALL:
            return True
        if status_filter == StatusFilter.UNTRANSLATED:
            return variant is None
        if status_filter == StatusFilter.TRANSLATED:
            return variant is not None
        if status_filter == StatusFilter.REVIEW_NEEDED:
            return variant is not None and variant.status == TextUnitStatus.REVIEW_NEEDED
        # FOR_TRANSLATION
        return (
            variant is None
            or variant.status == TextUnitStatus.TRANSLATION_NEEDED
            or not variant.included_in_localized_file
        )

    @staticmethod
    def _to_unit(
        text_unit: StoredTextUnit, variant: Optional[StoredVariant], locale: str
    ) -> TranslatableUnit:
        return TranslatableUnit(
            tm_text_unit_id=text_unit.tm_text_unit_id,
            tm_text_unit_variant_id=variant.id if variant else None,
            name=text_unit.name,
            source=text_unit.source,
            comment=text_unit.comment,
            target=variant.content if variant else None,
            target_comment=variant.comment if variant else None,
            target_locale=locale,
            asset_id=text_unit.asset_id,
            asset_extraction_id=text_unit.asset_extraction_id,
            asset_text_unit_id=text_unit.asset_text_unit_id,
            included_in_localized_file=variant.included_in_localized_file if variant else True,
            status=variant.status if variant else None,
            variant_comments=list(variant.comments) if variant else [],
        )

    def find_asset_text_units(self, asset_extraction_id: int) -> list[AssetTextUnit]:
        with self._lock:
            return [
                atu
                for atu in self.data.asset_text_units
                if atu.asset_extraction_id == asset_extraction_id
            ]

    # -- write --------------------------------------------------------------

    def add_current_variant(self, write: VariantWrite) -> CurrentVariantResult:
        """Make ``write.target`` the current variant.

        The current variant is kept, and no change reported, when the write
        matches its target, status and inclusion, or when it has the same
        target and is not included in the localized file (its status is kept).
        """
        with self._lock:
            current = self.current_variant(write.tm_text_unit_id, write.locale)

            if current is not None and _keeps_current(current, write):
                logger.debug(
                    "current_variant_unchanged",
                    tm_text_unit_id=write.tm_text_unit_id,
                    locale=write.locale,
                )
                return CurrentVariantResult(
                    tm_text_unit_id=write.tm_text_unit_id,
                    variant_id=current.id,
                    current_variant_updated=False,
                )

            variant = StoredVariant(
                id=max(self._variants_by_id, default=0) + 1,
                tm_text_unit_id=write.tm_text_unit_id,
                locale=write.locale,
                content=write.target,
                comment=write.target_comment,
                status=write.status,
                included_in_localized_file=write.included_in_localized_file,
                comments=list(write.comments),
            )
            self.data.variants.append(variant)
            self._variants_by_id[variant.id] = variant
            self.data.current_variants[_current_key(write.tm_text_unit_id, write.locale)] = (
                variant.id
            )

        return CurrentVariantResult(
            tm_text_unit_id=write.tm_text_unit_id,
            variant_id=variant.id,
            current_variant_updated=True,
            comments=variant.comments,
        )

    # -- persistence --------------------------------------------------------

    def save(self, data_dir: Path) -> None:
        """Save the translation memory to tm.json."""
        data_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            payload = self.data.model_dump(mode="json")
        with open(data_dir / self.FILENAME, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2, default=str)

    @classmethod
    def load(cls, data_dir: Path) -> Optional["JsonTranslationMemory"]:
        """Load tm.json if it exists."""
        tm_file = data_dir / cls.FILENAME
        if not tm_file.exists():
            return None
        with open(tm_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls(TMData.model_validate(data))
