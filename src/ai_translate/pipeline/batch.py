"""Batch mode: submit one offline batch per locale, import results later.

Creation and import are decoupled in time. The units of a batch are
snapshotted in the blob storage under a batch-scoped key, and the remote
batch carries that key in its metadata. Each request line is keyed by the
text unit id, which is how output lines are correlated back to units, even
from another process.
"""

import json
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ai_translate.config import AppConfig
from ai_translate.errors import (
    BatchRetrievalError,
    ConfigurationError,
    CorrelationBlobMissingError,
)
from ai_translate.glossary.store import GlossaryStore
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
    ReportStore,
    summarize,
)
from ai_translate.services.jobs import Job, JobScheduler
from ai_translate.services.metrics import (
    HAS_SCREENSHOT_NA,
    LOCALE_ALL,
    MODE_BATCH,
    TAG_UNKNOWN,
    MetricsRegistry,
    metric_tags,
    with_result,
)
from ai_translate.storage.blob import BlobStorage, Namespace, Retention
from ai_translate.tm.models import Repository, TextUnitStatus, TranslatableUnit
from ai_translate.tm.store import TranslationMemory
from ai_translate.translator.llm import BatchInfo, LLMClient
from ai_translate.translator.merger import (
    ImportMerger,
    ImportOutcome,
    error_outcome,
    prepare_outcome,
    skipped_outcome,
)
from ai_translate.translator.related import RelatedStringsProvider
from ai_translate.translator.request_builder import RequestBuilder
from ai_translate.translator.types import AiTranslateType

logger = structlog.get_logger()

IMPORT_BATCHES_JOB = "ai_translate_batches_import"
METADATA_BLOB_ID_KEY = "textUnitDTOs"

BATCH_COMPLETED = "completed"
BATCH_TERMINAL_FAILURES = ("failed", "expired", "cancelled")

SKIPPED_NO_GLOSSARY_TERM = "no glossary term matched"


class BatchSnapshot(BaseModel):
    """Units of one batch, stored for correlation at import time."""

    repository_id: int
    locale: str
    units: list[TranslatableUnit]
    skipped_units: list[TranslatableUnit] = Field(default_factory=list)


class BatchJobHandle(BaseModel):
    """A created remote batch and its correlation blob."""

    batch_id: str
    blob_id: str
    locale: str
    status: str = "validating"
    output_file_id: Optional[str] = None
    error_file_id: Optional[str] = None


class BatchCreationResult(BaseModel):
    created_batches: list[BatchJobHandle] = Field(default_factory=list)
    # Locales without any candidate
    skipped_locales: list[str] = Field(default_factory=list)
    # Locales whose candidates were all skipped by the glossary filter
    glossary_skipped_units: dict[str, list[TranslatableUnit]] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)


class BatchImportResult(BaseModel):
    batch_id: str
    locale: Optional[str] = None
    outcomes: list[ImportOutcome] = Field(default_factory=list)
    # Lines that could not be attributed to a unit
    line_errors: list[str] = Field(default_factory=list)
    resolved_ids: list[int] = Field(default_factory=list)

    @property
    def errors(self) -> list[str]:
        return self.line_errors + [o.error for o in self.outcomes if o.error is not None]


class BatchesImportInput(BaseModel):
    """Resumable input of the batch import job."""

    run_id: str
    repository_name: str
    model: Optional[str] = None
    created_batches: list[BatchJobHandle] = Field(default_factory=list)
    skipped_locales: list[str] = Field(default_factory=list)
    batch_creation_errors: list[str] = Field(default_factory=list)
    processed: list[str] = Field(default_factory=list)
    failed_import: dict[str, list[str]] = Field(default_factory=dict)
    attempt: int = 0
    first_attempt_at: Optional[float] = None
    translate_type: AiTranslateType = AiTranslateType.TARGET_ONLY_NEW
    import_status: TextUnitStatus = TextUnitStatus.REVIEW_NEEDED
    dry_run: bool = False


class BatchesImportOutput(BaseModel):
    processed: list[str] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
    failed_import: dict[str, list[str]] = Field(default_factory=dict)
    rescheduled_job_id: Optional[str] = None


def import_job_backoff_seconds(attempt: int, max_backoff_seconds: int = 600) -> int:
    return min(10 * 2**attempt, max_backoff_seconds)


class BatchPipeline:
    """Create and import offline batches."""

    def __init__(
        self,
        tm: TranslationMemory,
        blob_storage: BlobStorage,
        client: LLMClient,
        scheduler: JobScheduler,
        config: AppConfig,
        glossary_store: Optional[GlossaryStore] = None,
        metrics: Optional[MetricsRegistry] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.tm = tm
        self.blob_storage = blob_storage
        self.client = client
        self.scheduler = scheduler
        self.config = config
        self.glossary_store = glossary_store
        self.metrics = metrics or MetricsRegistry()
        self.reports = ReportStore(blob_storage)
        self._sleep = sleep

    # -- creation -----------------------------------------------------------

    async def create_batches(self, ai_translate_input: AiTranslateInput) -> BatchCreationResult:
        """Create one batch per target locale.

        Configuration errors abort. Any other failure is recorded for the
        locale and the next locale is processed.
        """
        repository = resolve_repository(self.tm, ai_translate_input.repository_name)
        locales = resolve_locales(repository, ai_translate_input.target_locales)
        related_strings_provider = RelatedStringsProvider(
            self.tm,
            ai_translate_input.related_strings_type,
            self.config.ai_translate.related_strings_char_limit,
        )

        result = BatchCreationResult()
        for locale in locales:
            try:
                handle = await self._create_batch_for_locale(
                    ai_translate_input, repository, locale, related_strings_provider, result
                )
            except ConfigurationError:
                raise
            except Exception as e:
                message = f"Can't create batch for locale: {locale}. Error: {e}"
                logger.exception("batch_creation_failed", locale=locale)
                result.errors.append(message)
                continue

            if handle is not None:
                result.created_batches.append(handle)

        logger.info(
            "batches_created",
            repository=repository.name,
            created=len(result.created_batches),
            skipped_locales=result.skipped_locales,
            glossary_skipped_locales=list(result.glossary_skipped_units),
            errors=len(result.errors),
        )
        return result

    async def _create_batch_for_locale(
        self,
        ai_translate_input: AiTranslateInput,
        repository: Repository,
        locale: str,
        related_strings_provider: RelatedStringsProvider,
        result: BatchCreationResult,
    ) -> Optional[BatchJobHandle]:
        units = select_candidates(self.tm, repository, locale, ai_translate_input)
        if not units:
            logger.info("batch_nothing_to_translate", locale=locale)
            result.skipped_locales.append(locale)
            return None

        builder = RequestBuilder(
            locale=locale,
            model=ai_translate_input.model(self.config.llm.model),
            translate_type=ai_translate_input.translate_type,
            prompt_suffix=ai_translate_input.prompt_suffix,
            glossary_trie=load_glossary_trie(ai_translate_input, self.glossary_store, locale),
            only_matched_units=ai_translate_input.glossary_only_matched_text_units,
            related_strings_provider=related_strings_provider,
            max_completion_tokens=self.config.llm.max_completion_tokens,
        )
        build = builder.build_single(units)
        if not build.groups:
            logger.info("batch_all_units_skipped", locale=locale, skipped=len(build.skipped))
            result.glossary_skipped_units[locale] = build.skipped
            return None

        blob_id = f"{locale}_{uuid.uuid4()}"
        snapshot = BatchSnapshot(
            repository_id=repository.id,
            locale=locale,
            units=[group.units[0] for group in build.groups],
            skipped_units=build.skipped,
        )
        self.blob_storage.put(
            Namespace.AI_TRANSLATE_BATCH,
            blob_id,
            snapshot.model_dump_json(),
            Retention.at_least_days(self.config.ai_translate.batch_blob_retention_days),
        )

        content = "\n".join(
            json.dumps(
                group.request.batch_line(str(group.units[0].tm_text_unit_id)), ensure_ascii=False
            )
            for group in build.groups
        )
        file_id = await self.client.upload_file(f"{blob_id}.jsonl", content)
        batch = await self.client.create_batch(file_id, {METADATA_BLOB_ID_KEY: blob_id})

        logger.info(
            "batch_created",
            locale=locale,
            batch_id=batch.id,
            blob_id=blob_id,
            text_units=len(snapshot.units),
            skipped=len(snapshot.skipped_units),
        )
        return BatchJobHandle(
            batch_id=batch.id,
            blob_id=blob_id,
            locale=locale,
            status=batch.status,
            output_file_id=batch.output_file_id,
            error_file_id=batch.error_file_id,
        )

    # -- status -------------------------------------------------------------

    def _before_retry(self, batch_id: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            self.metrics.increment(
                "retries",
                metric_tags(MODE_BATCH, TAG_UNKNOWN, TAG_UNKNOWN, LOCALE_ALL, HAS_SCREENSHOT_NA),
            )
            logger.info(
                "batch_retrieve_retry",
                batch_id=batch_id,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            )

        return before_sleep

    async def retrieve_batch_with_retry(self, batch_id: str) -> BatchInfo:
        """Retrieve batch status with exponential backoff.

        Raises:
            ConfigurationError: the client is not configured, not retried
            BatchRetrievalError: when every attempt failed
        """
        retry_config = self.config.retry
        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep

        retrying = AsyncRetrying(
            stop=stop_after_attempt(retry_config.max_attempts),
            retry=retry_if_not_exception_type(ConfigurationError),
            wait=wait_exponential(
                multiplier=retry_config.initial_backoff_millis / 1000,
                max=retry_config.max_backoff_seconds,
            ),
            before_sleep=self._before_retry(batch_id),
            reraise=True,
            **kwargs,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self.client.retrieve_batch(batch_id)
        except ConfigurationError:
            raise
        except Exception as e:
            raise BatchRetrievalError(batch_id, e) from e
        raise BatchRetrievalError(batch_id, RuntimeError("no attempt made"))

    # -- import -------------------------------------------------------------

    def load_snapshot(self, blob_id: Optional[str]) -> BatchSnapshot:
        content = self.blob_storage.get(Namespace.AI_TRANSLATE_BATCH, blob_id) if blob_id else None
        if content is None:
            raise CorrelationBlobMissingError(str(blob_id))
        return BatchSnapshot.model_validate_json(content)

    async def import_batch(
        self,
        batch: BatchInfo,
        translate_type: AiTranslateType = AiTranslateType.TARGET_ONLY_NEW,
        import_status: TextUnitStatus = TextUnitStatus.REVIEW_NEEDED,
        dry_run: bool = False,
    ) -> BatchImportResult:
        """Import the output of a completed batch.

        Every unit of the snapshot gets exactly one outcome. Lines with a
        non-200 status, invalid JSON or no target become per-unit errors;
        lines that cannot be correlated are reported as line errors.
        """
        blob_id = batch.metadata.get(METADATA_BLOB_ID_KEY)
        logger.info("batch_import_started", batch_id=batch.id, blob_id=blob_id)
        snapshot = self.load_snapshot(blob_id)
        units_by_id = {u.tm_text_unit_id: u for u in snapshot.units}

        lines: list[str] = []
        for file_id in (batch.output_file_id, batch.error_file_id):
            if file_id:
                content = await self.client.download_file_content(file_id)
                lines.extend(line for line in content.splitlines() if line.strip())

        result = BatchImportResult(batch_id=batch.id, locale=snapshot.locale)
        outcomes_by_id: dict[int, ImportOutcome] = {}

        for line in lines:
            outcome = self._outcome_for_line(line, units_by_id, translate_type, result)
            if outcome is not None:
                result.resolved_ids.append(outcome.tm_text_unit_id)
                outcomes_by_id.setdefault(outcome.tm_text_unit_id, outcome)

        for unit in snapshot.units:
            if unit.tm_text_unit_id not in outcomes_by_id:
                outcomes_by_id[unit.tm_text_unit_id] = error_outcome(
                    unit, f"No output line for tmTextUnitId: {unit.tm_text_unit_id}"
                )
        result.outcomes = [outcomes_by_id[u.tm_text_unit_id] for u in snapshot.units]

        merger = ImportMerger(self.tm, snapshot.repository_id, import_status, dry_run)
        merger.apply(result.outcomes)

        result.outcomes.extend(
            skipped_outcome(unit, SKIPPED_NO_GLOSSARY_TERM) for unit in snapshot.skipped_units
        )

        logger.info(
            "batch_imported",
            batch_id=batch.id,
            locale=snapshot.locale,
            lines=len(lines),
            resolved=len(result.resolved_ids),
            errors=len(result.errors),
        )
        return result

    @staticmethod
    def _outcome_for_line(
        line: str,
        units_by_id: dict[int, TranslatableUnit],
        translate_type: AiTranslateType,
        result: BatchImportResult,
    ) -> Optional[ImportOutcome]:
        try:
            parsed = json.loads(line)
            custom_id = int(parsed["custom_id"])
        except (ValueError, KeyError, TypeError) as e:
            message = f"Invalid batch output line: {e}"
            logger.debug("batch_line_invalid", error=str(e))
            result.line_errors.append(message)
            return None

        unit = units_by_id.get(custom_id)
        if unit is None:
            message = f"Unknown correlation id in batch output: {custom_id}"
            logger.warning("batch_line_unknown_custom_id", custom_id=custom_id)
            result.line_errors.append(message)
            return None

        response = parsed.get("response") or {}
        if response.get("status_code") != 200:
            message = f"Response batch file line failed: {line}"
            logger.debug("batch_line_failed", tm_text_unit_id=custom_id)
            return error_outcome(unit, message, parsed.get("id"))

        body = response.get("body") or {}
        completion_id = body.get("id") or parsed.get("id")
        try:
            output_text = body["choices"][0]["message"]["content"]
            output = translate_type.parse_output(output_text)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            message = f"Error trying to parse the JSON completion output: {e}"
            logger.debug("batch_line_parse_failed", tm_text_unit_id=custom_id, error=str(e))
            return error_outcome(unit, message, completion_id)

        return prepare_outcome(translate_type, unit, output, completion_id)

    # -- import job ---------------------------------------------------------

    async def run_import_job(self, job: Job) -> BatchesImportOutput:
        """Job handler for IMPORT_BATCHES_JOB."""
        job_input = BatchesImportInput.model_validate_json(job.input_json)
        return await self.import_batches(job_input, parent_id=job.id)

    async def import_batches(
        self, job_input: BatchesImportInput, parent_id: Optional[str] = None
    ) -> BatchesImportOutput:
        """Import every completed batch; reschedule while some are still running."""
        processed = list(job_input.processed)
        failed_import = {k: list(v) for k, v in job_input.failed_import.items()}
        pending: list[str] = []
        report_keys: list[str] = []

        for handle in job_input.created_batches:
            if handle.batch_id in processed:
                continue

            try:
                batch = await self.retrieve_batch_with_retry(handle.batch_id)
            except BatchRetrievalError as e:
                logger.error("batch_retrieve_failed", batch_id=handle.batch_id, error=str(e))
                failed_import[handle.batch_id] = [str(e)]
                processed.append(handle.batch_id)
                continue

            if batch.status == BATCH_COMPLETED:
                started = time.monotonic()
                try:
                    result = await self.import_batch(
                        batch,
                        job_input.translate_type,
                        job_input.import_status,
                        dry_run=job_input.dry_run,
                    )
                except Exception as e:
                    logger.exception("batch_import_failed", batch_id=batch.id)
                    failed_import[batch.id] = [str(e)]
                else:
                    if result.errors:
                        failed_import[batch.id] = result.errors
                    report_keys.append(
                        self._report_batch(job_input, handle, result, time.monotonic() - started)
                    )
                processed.append(batch.id)
            elif batch.status in BATCH_TERMINAL_FAILURES:
                logger.warning("batch_not_completed", batch_id=batch.id, status=batch.status)
                failed_import[batch.id] = [f"Batch {batch.id} ended with status: {batch.status}"]
                processed.append(batch.id)
            else:
                logger.info("batch_in_progress", batch_id=batch.id, status=batch.status)
                pending.append(batch.id)

        if report_keys:
            self.reports.add_locale_keys(job_input.run_id, report_keys)

        output = BatchesImportOutput(
            processed=processed, pending=pending, failed_import=failed_import
        )
        if pending:
            output.rescheduled_job_id = self._reschedule(job_input, output, parent_id)
        return output

    def _reschedule(
        self,
        job_input: BatchesImportInput,
        output: BatchesImportOutput,
        parent_id: Optional[str],
    ) -> Optional[str]:
        first_attempt_at = job_input.first_attempt_at or time.time()
        if time.time() - first_attempt_at > self.config.ai_translate.import_job_timeout_seconds:
            for batch_id in output.pending:
                output.failed_import[batch_id] = [f"Timed out waiting for batch: {batch_id}"]
            logger.error("batch_import_timed_out", pending=output.pending)
            return None

        next_input = job_input.model_copy(
            update={
                "processed": output.processed,
                "failed_import": output.failed_import,
                "attempt": job_input.attempt + 1,
                "first_attempt_at": first_attempt_at,
            }
        )
        delay = import_job_backoff_seconds(
            job_input.attempt, self.config.ai_translate.import_job_max_backoff_seconds
        )
        job = self.scheduler.schedule(
            IMPORT_BATCHES_JOB, next_input.model_dump_json(), parent_id, delay
        )
        logger.info(
            "batch_import_rescheduled",
            job_id=job.id,
            attempt=next_input.attempt,
            delay_seconds=delay,
            pending=len(output.pending),
        )
        return job.id

    def _report_batch(
        self,
        job_input: BatchesImportInput,
        handle: BatchJobHandle,
        result: BatchImportResult,
        duration_seconds: float,
    ) -> str:
        return self._put_locale_report(
            job_input.run_id,
            job_input.repository_name,
            job_input.model or self.config.llm.model,
            handle.locale,
            result.outcomes,
            duration_seconds,
            job_input.dry_run,
        )

    def report_glossary_skipped(
        self,
        run_id: str,
        repository_name: str,
        model: str,
        creation: BatchCreationResult,
        dry_run: bool = False,
    ) -> list[str]:
        """Write the locale reports of locales with every unit skipped by the glossary.

        No batch exists for those locales, so the import job never sees them.
        Returns the locale report keys.
        """
        return [
            self._put_locale_report(
                run_id,
                repository_name,
                model,
                locale,
                [skipped_outcome(unit, SKIPPED_NO_GLOSSARY_TERM) for unit in units],
                0.0,
                dry_run,
            )
            for locale, units in creation.glossary_skipped_units.items()
        ]

    def _put_locale_report(
        self,
        run_id: str,
        repository_name: str,
        model: str,
        locale: str,
        outcomes: list[ImportOutcome],
        duration_seconds: float,
        dry_run: bool,
    ) -> str:
        summary = summarize(
            outcomes,
            locale,
            MODE_BATCH,
            model,
            grouped_requests=0,
            duration_seconds=duration_seconds,
            dry_run=dry_run,
        )
        tags = metric_tags(MODE_BATCH, repository_name, model, locale, HAS_SCREENSHOT_NA)
        self.metrics.increment("textUnits", with_result(tags, "skipped"), summary.skipped)
        self.metrics.increment("textUnits", with_result(tags, "successful"), summary.successful)
        self.metrics.increment("textUnits", with_result(tags, "failed"), summary.failed)
        self.metrics.increment("textUnits", with_result(tags, "imported"), summary.imported)
        logger.info("locale_summary", **summary.model_dump())
        return self.reports.put_locale_report(
            run_id,
            LocaleReport(
                summary=summary,
                lines=[ImportReportLine.from_outcome(o) for o in outcomes],
            ),
        )

    # -- retry --------------------------------------------------------------

    def retry_import(self, job_id: str, resume: bool = False) -> Job:
        """Schedule a new import job from the persisted input of ``job_id``.

        With ``resume`` the batches already imported without errors are kept
        and only the unprocessed and the failed ones are imported again.
        Without it, every batch is imported again (merge is idempotent).
        """
        previous = BatchesImportInput.model_validate_json(self.scheduler.get_input(job_id))

        if resume:
            processed = [b for b in previous.processed if b not in previous.failed_import]
        else:
            processed = []

        next_input = previous.model_copy(
            update={
                "processed": processed,
                "failed_import": {},
                "attempt": 0,
                "first_attempt_at": None,
            }
        )
        job = self.scheduler.schedule(IMPORT_BATCHES_JOB, next_input.model_dump_json(), job_id)
        logger.info(
            "batch_import_retry_scheduled",
            previous_job_id=job_id,
            job_id=job.id,
            resume=resume,
            to_import=len(previous.created_batches) - len(processed),
        )
        return job
