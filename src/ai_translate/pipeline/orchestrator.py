"""AI translate orchestration: validate the run, then translate each locale.

Synchronous mode translates locale after locale: candidates are grouped by
screenshot, every group of a locale is dispatched concurrently, and the
results are merged and reported before the next locale starts. Batch mode
creates one offline batch per locale and schedules the import job.
"""

import time
import uuid
from dataclasses import dataclass
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from ai_translate.config import AppConfig, get_config
from ai_translate.glossary.store import GlossaryStore
from ai_translate.glossary.trie import GlossaryTrie
from ai_translate.log import bind_run_context, clear_run_context
from ai_translate.pipeline.batch import (
    IMPORT_BATCHES_JOB,
    SKIPPED_NO_GLOSSARY_TERM,
    BatchCreationResult,
    BatchesImportInput,
    BatchPipeline,
)
from ai_translate.pipeline.inputs import (
    AiTranslateInput,
    load_glossary_trie,
    resolve_locales,
    resolve_repository,
    select_candidates,
)
from ai_translate.pipeline.report import (
    ImportReportLine,
    LocaleReport,
    LocaleSummary,
    ReportStore,
    RunReport,
    summarize,
)
from ai_translate.services.jobs import InProcessJobScheduler, Job, JobScheduler
from ai_translate.services.metrics import (
    HAS_SCREENSHOT_NA,
    LOCALE_ALL,
    MODE_BATCH,
    MODE_NO_BATCH,
    MetricsRegistry,
    metric_tags,
    with_result,
)
from ai_translate.storage.blob import BlobStorage
from ai_translate.tm.models import Repository
from ai_translate.tm.store import TranslationMemory
from ai_translate.translator.dispatcher import Dispatcher, unit_outcomes
from ai_translate.translator.llm import LLMClient
from ai_translate.translator.merger import ImportMerger, skipped_outcome
from ai_translate.translator.pool import ClientPool
from ai_translate.translator.related import RelatedStringsProvider
from ai_translate.translator.request_builder import RequestBuilder
from ai_translate.translator.screenshots import ScreenshotProvider

logger = structlog.get_logger()


class AiTranslateResult(BaseModel):
    """Result of an AI translate run."""

    run_id: str
    mode: str
    model: str
    locales: list[LocaleSummary] = Field(default_factory=list)
    # Locales without any candidate
    skipped_locales: list[str] = Field(default_factory=list)
    batch_creation: Optional[BatchCreationResult] = None
    import_job_id: Optional[str] = None


@dataclass
class _PreparedRun:
    repository: Repository
    locales: list[str]
    tries: dict[str, Optional[GlossaryTrie]]


class Orchestrator:
    """Top-level entry point of AI translate runs.

    The configuration is fixed at construction. Collaborators default to
    process-local implementations built from it.
    """

    def __init__(
        self,
        tm: TranslationMemory,
        blob_storage: BlobStorage,
        config: Optional[AppConfig] = None,
        client: Optional[LLMClient] = None,
        scheduler: Optional[JobScheduler] = None,
        glossary_store: Optional[GlossaryStore] = None,
        screenshot_provider: Optional[ScreenshotProvider] = None,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self.tm = tm
        self.blob_storage = blob_storage
        self.config = config or get_config()
        self.client = client or LLMClient(self.config.llm)
        self.pool = ClientPool(self.client, self.config.pool)
        self.scheduler = scheduler or InProcessJobScheduler(blob_storage)
        self.glossary_store = glossary_store
        self.screenshot_provider = screenshot_provider
        self.metrics = metrics or MetricsRegistry()
        self.reports = ReportStore(blob_storage)
        self.batch = BatchPipeline(
            tm,
            blob_storage,
            self.client,
            self.scheduler,
            self.config,
            glossary_store=glossary_store,
            metrics=self.metrics,
        )
        self.scheduler.register(IMPORT_BATCHES_JOB, self.batch.run_import_job)

    # -- entry points -------------------------------------------------------

    async def run(
        self, ai_translate_input: AiTranslateInput, run_id: Optional[str] = None
    ) -> AiTranslateResult:
        """Run AI translate.

        Raises:
            ConfigurationError: unknown repository, locale or glossary, or no
                API key. Raised before any locale is processed.
        """
        run_id = run_id or str(uuid.uuid4())
        mode = MODE_BATCH if ai_translate_input.use_batch else MODE_NO_BATCH
        model = ai_translate_input.model(self.config.llm.model)
        job_tags = metric_tags(
            mode, ai_translate_input.repository_name, model, LOCALE_ALL, HAS_SCREENSHOT_NA
        )
        self.metrics.increment("jobs", with_result(job_tags, "started"))

        bind_run_context(run_id=run_id, mode=mode, repository=ai_translate_input.repository_name)
        try:
            prepared = self._prepare(ai_translate_input)
            if ai_translate_input.use_batch:
                result = await self._run_batch(ai_translate_input, run_id, model)
            else:
                result = await self._run_no_batch(ai_translate_input, run_id, model, prepared)
            self.metrics.increment("jobs", with_result(job_tags, "completed"))
            return result
        except Exception:
            self.metrics.increment("jobs", with_result(job_tags, "failed"))
            raise
        finally:
            clear_run_context()

    def retry_import(self, job_id: str, resume: bool = False) -> Job:
        """Schedule a new batch import from the input of a previous import job."""
        return self.batch.retry_import(job_id, resume)

    def get_report(self, run_id: str) -> Optional[RunReport]:
        return self.reports.get_report(run_id)

    def get_report_locale(self, run_id: str, locale: str) -> Optional[LocaleReport]:
        return self.reports.get_report_locale(run_id, locale)

    # -- validation ---------------------------------------------------------

    def _prepare(self, ai_translate_input: AiTranslateInput) -> _PreparedRun:
        """Resolve everything that can fail for configuration reasons."""
        repository = resolve_repository(self.tm, ai_translate_input.repository_name)
        locales = resolve_locales(repository, ai_translate_input.target_locales)
        self.client.ensure_configured()
        tries = {
            locale: load_glossary_trie(ai_translate_input, self.glossary_store, locale)
            for locale in locales
        }
        return _PreparedRun(repository=repository, locales=locales, tries=tries)

    # -- batch mode ---------------------------------------------------------

    async def _run_batch(
        self, ai_translate_input: AiTranslateInput, run_id: str, model: str
    ) -> AiTranslateResult:
        creation = await self.batch.create_batches(ai_translate_input)
        skipped_keys = self.batch.report_glossary_skipped(
            run_id,
            ai_translate_input.repository_name,
            model,
            creation,
            ai_translate_input.dry_run,
        )
        self.reports.put_report(RunReport(run_id=run_id, report_locale_keys=skipped_keys))

        result = AiTranslateResult(
            run_id=run_id,
            mode=MODE_BATCH,
            model=model,
            skipped_locales=creation.skipped_locales,
            batch_creation=creation,
        )
        if not creation.created_batches:
            logger.info("no_batch_created", errors=len(creation.errors))
            return result

        job_input = BatchesImportInput(
            run_id=run_id,
            repository_name=ai_translate_input.repository_name,
            model=model,
            created_batches=creation.created_batches,
            skipped_locales=creation.skipped_locales,
            batch_creation_errors=creation.errors,
            translate_type=ai_translate_input.translate_type,
            import_status=ai_translate_input.import_status,
            dry_run=ai_translate_input.dry_run,
        )
        job = self.scheduler.schedule(IMPORT_BATCHES_JOB, job_input.model_dump_json(), run_id)
        logger.info("batch_import_job_scheduled", job_id=job.id)
        result.import_job_id = job.id
        return result

    # -- synchronous mode ---------------------------------------------------

    async def _run_no_batch(
        self,
        ai_translate_input: AiTranslateInput,
        run_id: str,
        model: str,
        prepared: _PreparedRun,
    ) -> AiTranslateResult:
        started = time.monotonic()
        related_strings_provider = RelatedStringsProvider(
            self.tm,
            ai_translate_input.related_strings_type,
            self.config.ai_translate.related_strings_char_limit,
        )

        result = AiTranslateResult(run_id=run_id, mode=MODE_NO_BATCH, model=model)
        report = RunReport(run_id=run_id)

        for locale in prepared.locales:
            summary, key = await self._translate_locale(
                ai_translate_input,
                run_id,
                model,
                prepared.repository,
                locale,
                prepared.tries[locale],
                related_strings_provider,
            )
            result.locales.append(summary)
            report.report_locale_keys.append(key)
            if summary.attempted == 0:
                result.skipped_locales.append(locale)

        self.reports.put_report(report)
        logger.info(
            "ai_translate_done",
            locales=len(prepared.locales),
            duration_seconds=round(time.monotonic() - started, 3),
        )
        return result

    async def _translate_locale(
        self,
        ai_translate_input: AiTranslateInput,
        run_id: str,
        model: str,
        repository: Repository,
        locale: str,
        glossary_trie: Optional[GlossaryTrie],
        related_strings_provider: RelatedStringsProvider,
    ) -> tuple[LocaleSummary, str]:
        started = time.monotonic()
        locale_tags = metric_tags(MODE_NO_BATCH, repository.name, model, locale, HAS_SCREENSHOT_NA)
        translate_type = ai_translate_input.translate_type

        try:
            units = select_candidates(self.tm, repository, locale, ai_translate_input)
            self.metrics.increment("textUnits", with_result(locale_tags, "attempted"), len(units))
            if not units:
                logger.info("locale_nothing_to_translate", locale=locale)

            builder = RequestBuilder(
                locale=locale,
                model=model,
                translate_type=translate_type,
                prompt_suffix=ai_translate_input.prompt_suffix,
                glossary_trie=glossary_trie,
                only_matched_units=ai_translate_input.glossary_only_matched_text_units,
                related_strings_provider=related_strings_provider,
                screenshot_provider=self.screenshot_provider,
                max_completion_tokens=self.config.llm.max_completion_tokens,
            )
            build = builder.build_grouped(units)

            dispatcher = Dispatcher(
                self.pool,
                self.config.timeout,
                translate_type,
                timeout_override_seconds=ai_translate_input.timeout_seconds,
                metrics=self.metrics,
                repository=repository.name,
                locale=locale,
            )
            results = await dispatcher.dispatch(build.groups)

            outcomes_by_id = {
                o.tm_text_unit_id: o for r in results for o in unit_outcomes(r, translate_type)
            }
            for unit in build.skipped:
                outcomes_by_id[unit.tm_text_unit_id] = skipped_outcome(
                    unit, SKIPPED_NO_GLOSSARY_TERM
                )
            outcomes = [outcomes_by_id[u.tm_text_unit_id] for u in units]

            ImportMerger(
                self.tm,
                repository.id,
                ai_translate_input.import_status,
                ai_translate_input.dry_run,
            ).apply(outcomes)

            elapsed = time.monotonic() - started
            summary = summarize(
                outcomes,
                locale,
                MODE_NO_BATCH,
                model,
                grouped_requests=len(build.groups),
                duration_seconds=round(elapsed, 3),
                dry_run=ai_translate_input.dry_run,
            )
            for result_tag, count in (
                ("skipped", summary.skipped),
                ("successful", summary.successful),
                ("failed", summary.failed),
                ("imported", summary.imported),
            ):
                self.metrics.increment("textUnits", with_result(locale_tags, result_tag), count)
            logger.info("locale_summary", **summary.model_dump())

            key = self.reports.put_locale_report(
                run_id,
                LocaleReport(
                    summary=summary,
                    lines=[ImportReportLine.from_outcome(o) for o in outcomes],
                ),
            )
            self.metrics.increment("localeRuns", with_result(locale_tags, "completed"))
            self.metrics.record("localeDuration", locale_tags, elapsed)
            return summary, key

        except Exception:
            self.metrics.increment("localeRuns", with_result(locale_tags, "failed"))
            self.metrics.record("localeDuration", locale_tags, time.monotonic() - started)
            raise
