"""Run reports: one line per unit, one summary per locale."""

from typing import Optional

import structlog
from pydantic import BaseModel, Field

from ai_translate.storage.blob import BlobStorage, Namespace, Retention
from ai_translate.tm.models import VariantComment
from ai_translate.translator.merger import ImportOutcome

logger = structlog.get_logger()

RESULT_IMPORTED = "imported"
RESULT_SKIPPED = "skipped"
RESULT_ERRORED = "errored"


class ImportReportLine(BaseModel):
    """Outcome of one unit."""

    tm_text_unit_id: int
    locale: str
    source: Optional[str] = None
    completion_id: Optional[str] = None
    old_target: Optional[str] = None
    old_target_variant_id: Optional[int] = None
    new_target: Optional[str] = None
    new_target_variant_id: Optional[int] = None
    error: Optional[str] = None
    skipped_reason: Optional[str] = None
    current_variant_updated: bool = False
    variant_comments: list[VariantComment] = Field(default_factory=list)

    @classmethod
    def from_outcome(cls, outcome: ImportOutcome) -> "ImportReportLine":
        unit = outcome.unit
        return cls(
            tm_text_unit_id=unit.tm_text_unit_id,
            locale=unit.target_locale,
            source=unit.source,
            completion_id=outcome.completion_id,
            old_target=outcome.old_target,
            old_target_variant_id=unit.tm_text_unit_variant_id,
            new_target=outcome.new_target,
            new_target_variant_id=outcome.updated_variant_id,
            error=outcome.error,
            skipped_reason=outcome.skipped_reason,
            current_variant_updated=outcome.current_variant_updated,
            variant_comments=outcome.comments_added,
        )

    @property
    def result(self) -> str:
        if self.error is not None:
            return RESULT_ERRORED
        if self.skipped_reason is not None:
            return RESULT_SKIPPED
        return RESULT_IMPORTED


class LocaleSummary(BaseModel):
    locale: str
    mode: str
    model: str
    attempted: int = 0
    grouped_requests: int = 0
    successful: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    duration_seconds: float = 0.0
    dry_run: bool = False


class LocaleReport(BaseModel):
    summary: LocaleSummary
    lines: list[ImportReportLine] = Field(default_factory=list)


class RunReport(BaseModel):
    """Index of the locale reports of a run."""

    run_id: str
    report_locale_keys: list[str] = Field(default_factory=list)


def summarize(
    outcomes: list[ImportOutcome],
    locale: str,
    mode: str,
    model: str,
    grouped_requests: int = 0,
    duration_seconds: float = 0.0,
    dry_run: bool = False,
) -> LocaleSummary:
    skipped = sum(1 for o in outcomes if o.skipped_reason is not None)
    failed = sum(1 for o in outcomes if o.error is not None)
    imported = 0
    if not dry_run:
        imported = sum(
            1
            for o in outcomes
            if o.error is None and o.skipped_reason is None and o.updated_variant_id is not None
        )
    return LocaleSummary(
        locale=locale,
        mode=mode,
        model=model,
        attempted=len(outcomes),
        grouped_requests=grouped_requests,
        successful=len(outcomes) - skipped - failed,
        imported=imported,
        skipped=skipped,
        failed=failed,
        duration_seconds=duration_seconds,
        dry_run=dry_run,
    )


def report_key(run_id: str) -> str:
    return f"{run_id}/report"


def report_locale_key(run_id: str, locale: str) -> str:
    return f"{run_id}/locale/{locale}"


class ReportStore:
    """Persist run reports in the blob storage."""

    def __init__(self, blob_storage: BlobStorage):
        self.blob_storage = blob_storage

    def put_locale_report(self, run_id: str, report: LocaleReport) -> str:
        key = report_locale_key(run_id, report.summary.locale)
        logger.debug("put_report_locale", run_id=run_id, locale=report.summary.locale)
        self.blob_storage.put(
            Namespace.AI_TRANSLATE_REPORT, key, report.model_dump_json(), Retention.PERMANENT
        )
        return key

    def put_report(self, report: RunReport) -> None:
        logger.debug("put_report", run_id=report.run_id)
        self.blob_storage.put(
            Namespace.AI_TRANSLATE_REPORT,
            report_key(report.run_id),
            report.model_dump_json(),
            Retention.PERMANENT,
        )

    def add_locale_keys(self, run_id: str, keys: list[str]) -> RunReport:
        """Append keys to the run index, creating it if needed."""
        report = self.get_report(run_id) or RunReport(run_id=run_id)
        for key in keys:
            if key not in report.report_locale_keys:
                report.report_locale_keys.append(key)
        self.put_report(report)
        return report

    def get_report(self, run_id: str) -> Optional[RunReport]:
        content = self.blob_storage.get(Namespace.AI_TRANSLATE_REPORT, report_key(run_id))
        return RunReport.model_validate_json(content) if content is not None else None

    def get_report_locale(self, run_id: str, locale: str) -> Optional[LocaleReport]:
        content = self.blob_storage.get(
            Namespace.AI_TRANSLATE_REPORT, report_locale_key(run_id, locale)
        )
        return LocaleReport.model_validate_json(content) if content is not None else None
