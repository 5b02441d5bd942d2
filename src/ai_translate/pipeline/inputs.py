"""Run input and the lookups shared by the synchronous and batch paths."""

from typing import Optional

import structlog
from pydantic import BaseModel, Field

from ai_translate.errors import ConfigurationError, RepositoryNotFoundError
from ai_translate.glossary.store import GlossaryStore
from ai_translate.glossary.trie import GlossaryTrie
from ai_translate.tm.models import Repository, StatusFilter, TextUnitStatus, TranslatableUnit
from ai_translate.tm.store import TranslationMemory
from ai_translate.translator.related import RelatedStringsType
from ai_translate.translator.types import AiTranslateType

logger = structlog.get_logger()


class AiTranslateInput(BaseModel):
    """Parameters of one AI translate run."""

    repository_name: str
    target_locales: Optional[list[str]] = Field(
        default=None, description="BCP47 tags; None means every non-root locale"
    )
    source_text_max_count_per_locale: int = Field(
        default=100, description="Candidate limit per locale when no ids are given"
    )
    tm_text_unit_ids: Optional[list[int]] = Field(
        default=None, description="Translate only these text units"
    )
    use_batch: bool = False
    use_model: Optional[str] = Field(default=None, description="Overrides the configured model")
    prompt_suffix: Optional[str] = None
    related_strings_type: RelatedStringsType = RelatedStringsType.NONE
    translate_type: AiTranslateType = AiTranslateType.TARGET_ONLY_NEW
    status_filter: StatusFilter = StatusFilter.FOR_TRANSLATION
    import_status: TextUnitStatus = TextUnitStatus.REVIEW_NEEDED

    glossary_name: Optional[str] = None
    glossary_term_source: Optional[str] = None
    glossary_term_source_description: Optional[str] = None
    glossary_term_target: Optional[str] = None
    glossary_term_target_description: Optional[str] = None
    glossary_term_do_not_translate: bool = False
    glossary_term_case_sensitive: bool = False
    glossary_only_matched_text_units: bool = False

    dry_run: bool = False
    timeout_seconds: Optional[int] = Field(
        default=None, description="Overrides the computed per-request timeout"
    )

    def model(self, default_model: str) -> str:
        return self.use_model or default_model


def resolve_repository(tm: TranslationMemory, repository_name: str) -> Repository:
    repository = tm.get_repository(repository_name)
    if repository is None:
        raise RepositoryNotFoundError(repository_name)
    return repository


def resolve_locales(repository: Repository, target_locales: Optional[list[str]]) -> list[str]:
    """Target locales of the run, in repository order."""
    available = repository.locales_without_root()
    if target_locales is None:
        return available

    unknown = [tag for tag in target_locales if tag not in available]
    if unknown:
        raise ConfigurationError(
            f"Unknown locale(s) for repository '{repository.name}': {', '.join(unknown)}"
        )
    return [tag for tag in available if tag in target_locales]


def load_glossary_trie(
    ai_translate_input: AiTranslateInput,
    glossary_store: Optional[GlossaryStore],
    locale: str,
) -> Optional[GlossaryTrie]:
    """Named glossary, else the ad-hoc single term, else no glossary."""
    if ai_translate_input.glossary_name is not None:
        if glossary_store is None:
            raise ConfigurationError("A glossary name is given but no glossary store is configured")
        trie = glossary_store.load_trie_for_locale(ai_translate_input.glossary_name, locale)
        logger.info(
            "glossary_loaded",
            glossary=ai_translate_input.glossary_name,
            locale=locale,
            terms=len(trie),
        )
        return trie

    if ai_translate_input.glossary_term_source is not None:
        logger.info(
            "glossary_term_loaded", term=ai_translate_input.glossary_term_source, locale=locale
        )
        return GlossaryTrie.from_single_term(
            source=ai_translate_input.glossary_term_source,
            source_description=ai_translate_input.glossary_term_source_description,
            target=ai_translate_input.glossary_term_target,
            target_description=ai_translate_input.glossary_term_target_description,
            do_not_translate=ai_translate_input.glossary_term_do_not_translate,
            case_sensitive=ai_translate_input.glossary_term_case_sensitive,
        )

    logger.debug("no_glossary", locale=locale)
    return None


def select_candidates(
    tm: TranslationMemory,
    repository: Repository,
    locale: str,
    ai_translate_input: AiTranslateInput,
) -> list[TranslatableUnit]:
    """Units to translate: the explicit ids if given, else up to the per-locale limit."""
    ids = ai_translate_input.tm_text_unit_ids
    units = tm.search(
        repository.id,
        locale,
        ai_translate_input.status_filter,
        tm_text_unit_ids=ids,
        limit=None if ids is not None else ai_translate_input.source_text_max_count_per_locale,
    )
    logger.debug("candidates_selected", locale=locale, count=len(units))
    return units
