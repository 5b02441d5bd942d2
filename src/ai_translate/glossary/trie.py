"""Multi-term glossary matcher.

Terms are indexed in two character tries: one keyed by the raw source for
case-sensitive terms, one keyed by the case-folded source for
case-insensitive terms. ``find_terms`` walks both tries from every offset of
the text, so each call is a single pass over the text whose cost is bounded
by the longest term, independent of the number of terms.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class GlossaryTerm(BaseModel):
    """A source/target pair with translation constraints."""

    model_config = ConfigDict(frozen=True)

    term_id: int = Field(default=0, description="Glossary term id")
    source: str = Field(description="Source pattern")
    comment: Optional[str] = Field(default=None, description="Source description")
    target: Optional[str] = Field(default=None, description="Target in the trie's locale")
    target_comment: Optional[str] = Field(default=None, description="Target description")
    do_not_translate: bool = False
    case_sensitive: bool = False

    def effective_target(self) -> Optional[str]:
        """Target to send to the model; a do-not-translate term keeps its source."""
        if self.do_not_translate and self.target is None:
            return self.source
        return self.target


def _fold(text: str) -> str:
    # Per character so that folding a term and folding the scanned text agree
    return "".join(c.lower() for c in text)


class _Node:
    __slots__ = ("children", "terms")

    def __init__(self) -> None:
        self.children: dict[str, "_Node"] = {}
        self.terms: set[GlossaryTerm] = set()


class GlossaryTrie:
    """Index of glossary terms for one (glossary, locale) pair."""

    def __init__(self, terms: Optional[list[GlossaryTerm]] = None):
        self._case_sensitive = _Node()
        self._case_insensitive = _Node()
        self._size = 0
        for term in terms or []:
            self.add_term(term)

    @classmethod
    def from_single_term(
        cls,
        source: str,
        source_description: Optional[str] = None,
        target: Optional[str] = None,
        target_description: Optional[str] = None,
        do_not_translate: bool = False,
        case_sensitive: bool = False,
    ) -> "GlossaryTrie":
        """Trie holding one ad-hoc term."""
        return cls(
            [
                GlossaryTerm(
                    term_id=0,
                    source=source,
                    comment=source_description,
                    target=target,
                    target_comment=target_description,
                    do_not_translate=do_not_translate,
                    case_sensitive=case_sensitive,
                )
            ]
        )

    def __len__(self) -> int:
        return self._size

    def add_term(self, term: GlossaryTerm) -> None:
        """Insert a term keyed by its source (folded unless case-sensitive)."""
        if not term.source:
            return

        if term.case_sensitive:
            node, key = self._case_sensitive, term.source
        else:
            node, key = self._case_insensitive, _fold(term.source)

        for char in key:
            node = node.children.setdefault(char, _Node())

        if term not in node.terms:
            node.terms.add(term)
            self._size += 1

    def find_terms(self, text: Optional[str]) -> set[GlossaryTerm]:
        """Return every term whose source occurs in ``text``."""
        found: set[GlossaryTerm] = set()
        if not text:
            return found

        folded = _fold(text) if self._case_insensitive.children else ""

        if self._case_sensitive.children:
            self._scan(self._case_sensitive, text, found)
        if folded:
            self._scan(self._case_insensitive, folded, found)

        return found

    @staticmethod
    def _scan(root: _Node, text: str, found: set[GlossaryTerm]) -> None:
        length = len(text)
        for start in range(length):
            node = root.children.get(text[start])
            pos = start + 1
            while node is not None:
                if node.terms:
                    found.update(node.terms)
                if pos >= length:
                    break
                node = node.children.get(text[pos])
                pos += 1
