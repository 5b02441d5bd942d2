"""Merge model targets into the translation memory."""

from typing import Optional

import structlog
from pydantic import BaseModel, Field

from ai_translate.tm.models import (
    CommentSeverity,
    CommentType,
    TextUnitStatus,
    TranslatableUnit,
    VariantComment,
)
from ai_translate.tm.store import TranslationMemory, VariantWrite
from ai_translate.translator.autofix import fix_target
from ai_translate.translator.types import AiTranslateType

logger = structlog.get_logger()


class ImportOutcome(BaseModel):
    """What happened to one unit: imported, skipped or errored."""

    unit: TranslatableUnit
    old_target: Optional[str] = None
    new_target: Optional[str] = None
    target_comment: Optional[str] = None
    completion_id: Optional[str] = None
    error: Optional[str] = None
    skipped_reason: Optional[str] = None
    updated_variant_id: Optional[int] = None
    current_variant_updated: bool = False
    comments_added: list[VariantComment] = Field(default_factory=list)

    @property
    def tm_text_unit_id(self) -> int:
        return self.unit.tm_text_unit_id

    @property
    def importable(self) -> bool:
        return self.error is None and self.skipped_reason is None and self.new_target is not None


def error_outcome(
    unit: TranslatableUnit, error: str, completion_id: Optional[str] = None
) -> ImportOutcome:
    return ImportOutcome(
        unit=unit, old_target=unit.target, error=error, completion_id=completion_id
    )


def skipped_outcome(unit: TranslatableUnit, reason: str) -> ImportOutcome:
    return ImportOutcome(unit=unit, old_target=unit.target, skipped_reason=reason)


def prepare_outcome(
    translate_type: AiTranslateType,
    unit: TranslatableUnit,
    output: BaseModel,
    completion_id: Optional[str] = None,
) -> ImportOutcome:
    """Extract and auto-fix the unit target from a parsed model output."""
    target_with_metadata = translate_type.target_with_metadata(unit.tm_text_unit_id, output)

    if target_with_metadata is None:
        logger.error("target_missing_in_output", tm_text_unit_id=unit.tm_text_unit_id)
        return error_outcome(
            unit,
            f"Cannot find the target for tmTextUnitId: {unit.tm_text_unit_id}",
            completion_id,
        )

    return ImportOutcome(
        unit=unit,
        old_target=unit.target,
        new_target=fix_target(unit.source, target_with_metadata.target),
        target_comment=target_with_metadata.target_comment,
        completion_id=completion_id,
    )


class ImportMerger:
    """Write importable outcomes as new current variants.

    The target comment of the written variant is always cleared (this also
    drops a previous "ai-translate" placeholder); the model rationale goes to
    an INFO audit comment instead. Writing a target equal to the current one
    leaves the variant untouched, so applying the same outcome twice reports
    "unchanged" the second time.
    """

    def __init__(
        self,
        tm: TranslationMemory,
        repository_id: int,
        import_status: TextUnitStatus = TextUnitStatus.REVIEW_NEEDED,
        dry_run: bool = False,
    ):
        self.tm = tm
        self.repository_id = repository_id
        self.import_status = import_status
        self.dry_run = dry_run

    def apply(self, outcomes: list[ImportOutcome]) -> list[ImportOutcome]:
        """Merge importable outcomes in place and return the list."""
        for outcome in outcomes:
            if not outcome.importable:
                continue
            if self.dry_run:
                outcome.current_variant_updated = outcome.old_target != outcome.new_target
                continue
            self._write(outcome)
        return outcomes

    def _write(self, outcome: ImportOutcome) -> None:
        unit = outcome.unit
        audit_comment = VariantComment(
            severity=CommentSeverity.INFO,
            type=CommentType.AI_TRANSLATE,
            content=outcome.target_comment,
        )
        try:
            result = self.tm.add_current_variant(
                VariantWrite(
                    repository_id=self.repository_id,
                    locale=unit.target_locale,
                    tm_text_unit_id=unit.tm_text_unit_id,
                    target=outcome.new_target,
                    target_comment=None,
                    status=self.import_status,
                    included_in_localized_file=True,
                    comments=[audit_comment],
                )
            )
        except Exception as e:
            logger.exception(
                "variant_write_failed", tm_text_unit_id=unit.tm_text_unit_id, locale=unit.target_locale
            )
            outcome.error = f"Failed to import target: {e}"
            return

        outcome.updated_variant_id = result.variant_id
        outcome.current_variant_updated = result.current_variant_updated
        outcome.comments_added = list(result.comments)
