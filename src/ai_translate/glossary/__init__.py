"""Glossary term matching and named glossary loading."""

from ai_translate.glossary.store import CsvGlossaryStore, Glossary, GlossaryEntry, GlossaryStore
from ai_translate.glossary.trie import GlossaryTerm, GlossaryTrie

__all__ = [
    "CsvGlossaryStore",
    "Glossary",
    "GlossaryEntry",
    "GlossaryStore",
    "GlossaryTerm",
    "GlossaryTrie",
]
