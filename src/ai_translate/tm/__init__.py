"""Translation memory records and read/write API."""

from ai_translate.tm.models import StatusFilter, TextUnitStatus, TranslatableUnit
from ai_translate.tm.store import JsonTranslationMemory, TranslationMemory, VariantWrite

__all__ = [
    "JsonTranslationMemory",
    "StatusFilter",
    "TextUnitStatus",
    "TranslatableUnit",
    "TranslationMemory",
    "VariantWrite",
]
