"""Named glossaries stored as CSV files."""

import csv
from pathlib import Path
from typing import Optional, Protocol

import structlog
from pydantic import BaseModel, Field

from ai_translate.errors import GlossaryNotFoundError
from ai_translate.glossary.trie import GlossaryTerm, GlossaryTrie

logger = structlog.get_logger()

FIELDNAMES = [
    "term_id",
    "source",
    "comment",
    "locale",
    "target",
    "target_comment",
    "do_not_translate",
    "case_sensitive",
]


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "y")


class GlossaryEntry(BaseModel):
    """One CSV row: a term and, optionally, its translation in one locale."""

    term_id: int = Field(description="Shared by all rows of the same term")
    source: str = Field(description="Source term")
    comment: Optional[str] = Field(default=None, description="Source description")
    locale: Optional[str] = Field(default=None, description="Locale of the target, if any")
    target: Optional[str] = Field(default=None, description="Translation in that locale")
    target_comment: Optional[str] = None
    do_not_translate: bool = False
    case_sensitive: bool = False


class Glossary:
    """Manage a glossary made of per-locale term rows."""

    def __init__(self, name: str, entries: Optional[list[GlossaryEntry]] = None):
        self.name = name
        self.entries: list[GlossaryEntry] = entries or []

    def __len__(self) -> int:
        return len({e.term_id for e in self.entries})

    def add(self, entry: GlossaryEntry) -> None:
        """Add an entry, replacing a row with the same term and locale."""
        self.entries = [
            e
            for e in self.entries
            if not (e.term_id == entry.term_id and e.locale == entry.locale)
        ]
        self.entries.append(entry)

    def trie_for_locale(self, locale: str) -> GlossaryTrie:
        """Build the trie of every term, with targets resolved for ``locale``.

        Terms without a row for the locale are still matched so the model is
        told about them (and do-not-translate terms keep their source).
        """
        terms: dict[int, GlossaryTerm] = {}
        for entry in self.entries:
            matches_locale = entry.locale == locale
            if entry.term_id in terms and not matches_locale:
                continue
            terms[entry.term_id] = GlossaryTerm(
                term_id=entry.term_id,
                source=entry.source,
                comment=entry.comment,
                target=entry.target if matches_locale else None,
                target_comment=entry.target_comment if matches_locale else None,
                do_not_translate=entry.do_not_translate,
                case_sensitive=entry.case_sensitive,
            )
        return GlossaryTrie(list(terms.values()))

    def to_csv(self, path: Path) -> None:
        """Export glossary to CSV file."""
        path = Path(path)
        with open(path, "w", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
            writer.writeheader()
            for entry in self.entries:
                writer.writerow(entry.model_dump())

    @classmethod
    def from_csv(cls, path: Path, name: Optional[str] = None) -> "Glossary":
        """Import glossary from CSV file.

        Args:
            path: Path to CSV file
            name: Glossary name, defaults to the file stem

        Returns:
            New Glossary instance
        """
        path = Path(path)
        entries = []

        with open(path, "r", encoding="utf-8") as f:
            reader = csv.DictReader(f)
            for row in reader:
                entries.append(
                    GlossaryEntry(
                        term_id=int(row["term_id"]),
                        source=row["source"],
                        comment=row.get("comment") or None,
                        locale=row.get("locale") or None,
                        target=row.get("target") or None,
                        target_comment=row.get("target_comment") or None,
                        do_not_translate=_parse_bool(row.get("do_not_translate")),
                        case_sensitive=_parse_bool(row.get("case_sensitive")),
                    )
                )

        logger.debug("glossary_imported", entries=len(entries), path=str(path))
        return cls(name or path.stem, entries)


class GlossaryStore(Protocol):
    """Source of glossary tries by name."""

    def load_trie_for_locale(self, name: str, locale: str) -> GlossaryTrie:
        ...


class CsvGlossaryStore:
    """Glossaries stored as ``<glossary_dir>/<name>.csv``."""

    def __init__(self, glossary_dir: Path):
        self.glossary_dir = Path(glossary_dir)
        self._cache: dict[str, Glossary] = {}

    def load(self, name: str) -> Glossary:
        if name not in self._cache:
            path = self.glossary_dir / f"{name}.csv"
            if not path.exists():
                raise GlossaryNotFoundError(name)
            self._cache[name] = Glossary.from_csv(path, name)
        return self._cache[name]

    def load_trie_for_locale(self, name: str, locale: str) -> GlossaryTrie:
        return self.load(name).trie_for_locale(locale)
