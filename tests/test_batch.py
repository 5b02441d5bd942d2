"""Tests for batch creation, import and the import job."""

import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from ai_translate.errors import (
    BatchRetrievalError,
    ConfigurationError,
    CorrelationBlobMissingError,
)
from ai_translate.pipeline.batch import (
    IMPORT_BATCHES_JOB,
    METADATA_BLOB_ID_KEY,
    SKIPPED_NO_GLOSSARY_TERM,
    BatchesImportInput,
    BatchJobHandle,
    BatchPipeline,
    BatchSnapshot,
    import_job_backoff_seconds,
)
from ai_translate.pipeline.inputs import AiTranslateInput
from ai_translate.pipeline.report import ReportStore, report_locale_key
from ai_translate.services.jobs import InProcessJobScheduler, Job
from ai_translate.services.metrics import MetricsRegistry
from ai_translate.storage.blob import Namespace
from ai_translate.translator.llm import BatchInfo

from conftest import no_sleep, success_line


def batch_input(**kwargs) -> AiTranslateInput:
    return AiTranslateInput(repository_name="my-app", use_batch=True, **kwargs)


@pytest.fixture
def scheduler():
    scheduler = MagicMock()
    scheduler.schedule.side_effect = lambda job_type, input_json, parent_id=None, delay=0: Job(
        "job-next", job_type, input_json, parent_id, delay
    )
    return scheduler


@pytest.fixture
def metrics():
    return MetricsRegistry()


@pytest.fixture
def pipeline(tm, blob_storage, fake_client, scheduler, app_config, metrics):
    return BatchPipeline(
        tm, blob_storage, fake_client, scheduler, app_config, metrics=metrics, sleep=no_sleep
    )


def input_lines(fake_client, batch_id: str) -> list[dict]:
    content = fake_client.files[fake_client.batches[batch_id].input_file_id]
    return [json.loads(line) for line in content.splitlines()]


class TestImportJobBackoff:
    """Tests for the delay between import attempts."""

    def test_backoff(self):
        assert import_job_backoff_seconds(0) == 10
        assert import_job_backoff_seconds(1) == 20
        assert import_job_backoff_seconds(5) == 320
        assert import_job_backoff_seconds(6) == 600
        assert import_job_backoff_seconds(20) == 600

    def test_backoff_ceiling(self):
        assert import_job_backoff_seconds(3, max_backoff_seconds=60) == 60


class TestCreateBatches:
    """Tests for BatchPipeline.create_batches."""

    @pytest.mark.asyncio
    async def test_one_batch_per_locale(self, pipeline, fake_client, blob_storage):
        result = await pipeline.create_batches(batch_input())

        assert [h.locale for h in result.created_batches] == ["fr-FR", "de-DE"]
        assert result.skipped_locales == []
        assert result.errors == []

        fr, de = result.created_batches
        assert fr.blob_id.startswith("fr-FR_")
        assert fake_client.batches[fr.batch_id].metadata == {METADATA_BLOB_ID_KEY: fr.blob_id}

        # One line per unit, keyed by the unit id; the approved de-DE unit is not a candidate
        assert [line["custom_id"] for line in input_lines(fake_client, fr.batch_id)] == [
            "1",
            "2",
            "3",
            "4",
        ]
        assert [line["custom_id"] for line in input_lines(fake_client, de.batch_id)] == [
            "1",
            "2",
            "4",
        ]

        snapshot = BatchSnapshot.model_validate_json(
            blob_storage.get(Namespace.AI_TRANSLATE_BATCH, de.blob_id)
        )
        assert snapshot.repository_id == 1
        assert snapshot.locale == "de-DE"
        assert [u.tm_text_unit_id for u in snapshot.units] == [1, 2, 4]

    @pytest.mark.asyncio
    async def test_lines_are_single_requests(self, pipeline, fake_client):
        result = await pipeline.create_batches(batch_input(target_locales=["fr-FR"]))

        for line in input_lines(fake_client, result.created_batches[0].batch_id):
            user_content = json.loads(line["body"]["messages"][1]["content"])
            assert [tu["tm_text_unit_id"] for tu in user_content["text_units"]] == [
                int(line["custom_id"])
            ]
            assert line["body"]["model"] == "gpt-test"

    @pytest.mark.asyncio
    async def test_model_override(self, pipeline, fake_client):
        result = await pipeline.create_batches(
            batch_input(target_locales=["fr-FR"], use_model="gpt-other")
        )
        lines = input_lines(fake_client, result.created_batches[0].batch_id)
        assert {line["body"]["model"] for line in lines} == {"gpt-other"}

    @pytest.mark.asyncio
    async def test_locale_without_candidates_is_skipped(self, pipeline):
        """Zero eligible candidates is a skip, not an error."""
        result = await pipeline.create_batches(
            batch_input(target_locales=["de-DE"], tm_text_unit_ids=[3])
        )

        assert result.created_batches == []
        assert result.skipped_locales == ["de-DE"]
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_every_unit_skipped_by_glossary(self, pipeline, fake_client):
        """A glossary skip keeps its units, apart from the no-candidate locales."""
        result = await pipeline.create_batches(
            batch_input(
                target_locales=["fr-FR"],
                glossary_term_source="nothing matches this",
                glossary_only_matched_text_units=True,
            )
        )

        assert result.skipped_locales == []
        assert [u.tm_text_unit_id for u in result.glossary_skipped_units["fr-FR"]] == [1, 2, 3, 4]
        assert fake_client.batches == {}

    @pytest.mark.asyncio
    async def test_report_glossary_skipped(self, pipeline, blob_storage, metrics):
        result = await pipeline.create_batches(
            batch_input(
                target_locales=["fr-FR"],
                glossary_term_source="nothing matches this",
                glossary_only_matched_text_units=True,
            )
        )

        keys = pipeline.report_glossary_skipped("run-1", "my-app", "gpt-test", result)

        assert keys == [report_locale_key("run-1", "fr-FR")]
        report = ReportStore(blob_storage).get_report_locale("run-1", "fr-FR")
        assert report.summary.skipped == 4
        assert report.summary.attempted == 4
        assert [line.result for line in report.lines] == ["skipped"] * 4
        assert {line.skipped_reason for line in report.lines} == {SKIPPED_NO_GLOSSARY_TERM}
        assert metrics.count("textUnits", locale="fr-FR", result="skipped") == 4

    @pytest.mark.asyncio
    async def test_only_matched_units_snapshot(self, pipeline, fake_client, blob_storage):
        """Skipped units are kept in the snapshot, not sent."""
        result = await pipeline.create_batches(
            batch_input(
                target_locales=["fr-FR"],
                glossary_term_source="home",
                glossary_only_matched_text_units=True,
            )
        )

        handle = result.created_batches[0]
        assert [line["custom_id"] for line in input_lines(fake_client, handle.batch_id)] == ["1"]
        snapshot = pipeline.load_snapshot(handle.blob_id)
        assert [u.tm_text_unit_id for u in snapshot.units] == [1]
        assert [u.tm_text_unit_id for u in snapshot.skipped_units] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_failure_recorded_per_locale(self, pipeline, fake_client):
        """A failing locale does not prevent the next one."""
        upload = fake_client.upload_file
        calls = 0

        async def flaky_upload(filename, content):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConnectionError("upload failed")
            return await upload(filename, content)

        fake_client.upload_file = flaky_upload

        result = await pipeline.create_batches(batch_input())

        assert [h.locale for h in result.created_batches] == ["de-DE"]
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Can't create batch for locale: fr-FR.")

    @pytest.mark.asyncio
    async def test_configuration_error_aborts(self, pipeline):
        with pytest.raises(ConfigurationError):
            await pipeline.create_batches(batch_input(target_locales=["xx-XX"]))

        with pytest.raises(ConfigurationError):
            await pipeline.create_batches(AiTranslateInput(repository_name="unknown"))

    @pytest.mark.asyncio
    async def test_unknown_glossary_aborts(self, pipeline):
        with pytest.raises(ConfigurationError):
            await pipeline.create_batches(batch_input(glossary_name="product"))


class TestImportBatch:
    """Tests for BatchPipeline.import_batch."""

    async def created(self, pipeline, fake_client, **kwargs) -> BatchInfo:
        result = await pipeline.create_batches(batch_input(target_locales=["fr-FR"], **kwargs))
        return fake_client.batches[result.created_batches[0].batch_id]

    @pytest.mark.asyncio
    async def test_resolves_every_line(self, pipeline, fake_client, tm):
        """N lines with matching ids resolve exactly N units."""
        batch = await self.created(pipeline, fake_client)
        fake_client.complete_batch(batch.id)

        result = await pipeline.import_batch(fake_client.batches[batch.id])

        assert sorted(result.resolved_ids) == [1, 2, 3, 4]
        assert result.errors == []
        assert result.locale == "fr-FR"
        assert tm.current_variant(1, "fr-FR").content == "[fr-FR] Welcome home"
        assert tm.current_variant(4, "fr-FR").content == "[fr-FR] Cancel"
        assert all(o.current_variant_updated for o in result.outcomes)

    @pytest.mark.asyncio
    async def test_non_success_line_is_a_unit_error(self, pipeline, fake_client, tm):
        """A non-200 line errors its unit only; the rest are merged."""

        def output_for_line(request_line):
            if request_line["custom_id"] == "2":
                return json.dumps(
                    {
                        "id": "batch_req_2",
                        "custom_id": "2",
                        "response": {"status_code": 500, "body": {"error": "server error"}},
                    }
                )
            return success_line(request_line)

        fake_client.output_for_line = output_for_line
        batch = await self.created(pipeline, fake_client)
        fake_client.complete_batch(batch.id)

        result = await pipeline.import_batch(fake_client.batches[batch.id])

        assert sorted(result.resolved_ids) == [1, 2, 3, 4]
        errors = {o.tm_text_unit_id: o.error for o in result.outcomes if o.error}
        assert list(errors) == [2]
        assert errors[2].startswith("Response batch file line failed:")
        assert tm.current_variant(2, "fr-FR") is None
        assert tm.current_variant(3, "fr-FR").content == "[fr-FR] Save"

    @pytest.mark.asyncio
    async def test_unparseable_output(self, pipeline, fake_client):
        def output_for_line(request_line):
            line = json.loads(success_line(request_line))
            if request_line["custom_id"] == "1":
                line["response"]["body"]["choices"][0]["message"]["content"] = "Sorry!"
            return json.dumps(line)

        fake_client.output_for_line = output_for_line
        batch = await self.created(pipeline, fake_client)
        fake_client.complete_batch(batch.id)

        result = await pipeline.import_batch(fake_client.batches[batch.id])

        unit_1 = next(o for o in result.outcomes if o.tm_text_unit_id == 1)
        assert unit_1.error.startswith("Error trying to parse the JSON completion output")
        assert unit_1.completion_id == "chatcmpl-1"

    @pytest.mark.asyncio
    async def test_invalid_and_unknown_lines(self, pipeline, fake_client):
        """Uncorrelated lines are line errors; units without a line are errored."""
        batch = await self.created(pipeline, fake_client)
        fake_client.complete_batch(batch.id)
        lines = fake_client.files[fake_client.batches[batch.id].output_file_id].splitlines()
        unknown = json.loads(lines[0])
        unknown["custom_id"] = "999"
        fake_client.files[fake_client.batches[batch.id].output_file_id] = "\n".join(
            ["{not json", json.dumps(unknown), *lines[1:]]
        )

        result = await pipeline.import_batch(fake_client.batches[batch.id])

        assert sorted(result.resolved_ids) == [2, 3, 4]
        assert len(result.line_errors) == 2
        assert result.line_errors[1] == "Unknown correlation id in batch output: 999"
        missing = next(o for o in result.outcomes if o.tm_text_unit_id == 1)
        assert missing.error == "No output line for tmTextUnitId: 1"
        assert len(result.outcomes) == 4

    @pytest.mark.asyncio
    async def test_error_file_lines(self, pipeline, fake_client):
        """Lines of the error file are correlated like output lines."""
        batch = await self.created(pipeline, fake_client)
        fake_client.complete_batch(batch.id)
        info = fake_client.batches[batch.id]
        lines = fake_client.files[info.output_file_id].splitlines()
        fake_client.files[info.output_file_id] = "\n".join(lines[1:])
        fake_client.files["file-errors"] = json.dumps(
            {"custom_id": "1", "response": {"status_code": 400, "body": {}}}
        )

        result = await pipeline.import_batch(info.model_copy(update={"error_file_id": "file-errors"}))

        assert sorted(result.resolved_ids) == [1, 2, 3, 4]
        assert [o.tm_text_unit_id for o in result.outcomes if o.error] == [1]

    @pytest.mark.asyncio
    async def test_skipped_units_reported(self, pipeline, fake_client):
        batch = await self.created(
            pipeline,
            fake_client,
            glossary_term_source="home",
            glossary_only_matched_text_units=True,
        )
        fake_client.complete_batch(batch.id)

        result = await pipeline.import_batch(fake_client.batches[batch.id])

        assert {o.tm_text_unit_id: o.skipped_reason for o in result.outcomes} == {
            1: None,
            2: SKIPPED_NO_GLOSSARY_TERM,
            3: SKIPPED_NO_GLOSSARY_TERM,
            4: SKIPPED_NO_GLOSSARY_TERM,
        }

    @pytest.mark.asyncio
    async def test_dry_run(self, pipeline, fake_client, tm):
        batch = await self.created(pipeline, fake_client)
        fake_client.complete_batch(batch.id)

        result = await pipeline.import_batch(fake_client.batches[batch.id], dry_run=True)

        assert all(o.current_variant_updated for o in result.outcomes)
        assert tm.current_variant(1, "fr-FR") is None

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, pipeline):
        batch = BatchInfo(id="batch-x", status="completed", metadata={METADATA_BLOB_ID_KEY: "gone"})
        with pytest.raises(CorrelationBlobMissingError):
            await pipeline.import_batch(batch)

        with pytest.raises(CorrelationBlobMissingError):
            await pipeline.import_batch(BatchInfo(id="batch-y", status="completed"))


class TestRetrieveWithRetry:
    """Tests for batch status retrieval."""

    @pytest.mark.asyncio
    async def test_transient_failures_retried(self, pipeline, fake_client, metrics):
        info = BatchInfo(id="batch-1", status="in_progress")
        fake_client.retrieve_batch = AsyncMock(
            side_effect=[ConnectionError("reset"), TimeoutError(), info]
        )

        assert await pipeline.retrieve_batch_with_retry("batch-1") == info
        assert fake_client.retrieve_batch.await_count == 3
        assert metrics.count("retries", mode="batch") == 2

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, pipeline, fake_client):
        fake_client.retrieve_batch = AsyncMock(side_effect=ConnectionError("reset"))

        with pytest.raises(BatchRetrievalError) as exc_info:
            await pipeline.retrieve_batch_with_retry("batch-1")

        assert exc_info.value.batch_id == "batch-1"
        # max_attempts from the test configuration
        assert fake_client.retrieve_batch.await_count == 3

    @pytest.mark.asyncio
    async def test_configuration_error_not_retried(self, pipeline, fake_client, metrics):
        fake_client.retrieve_batch = AsyncMock(side_effect=ConfigurationError("no API key"))

        with pytest.raises(ConfigurationError):
            await pipeline.retrieve_batch_with_retry("batch-1")

        assert fake_client.retrieve_batch.await_count == 1
        assert metrics.count("retries") == 0

    @pytest.mark.asyncio
    async def test_configuration_error_fails_import_job(self, pipeline, fake_client, scheduler):
        result = await pipeline.create_batches(batch_input())
        job_input = BatchesImportInput(
            run_id="run-1", repository_name="my-app", created_batches=result.created_batches
        )
        fake_client.retrieve_batch = AsyncMock(side_effect=ConfigurationError("no API key"))

        with pytest.raises(ConfigurationError):
            await pipeline.import_batches(job_input)

        assert fake_client.retrieve_batch.await_count == 1
        scheduler.schedule.assert_not_called()


class TestImportBatches:
    """Tests for the import job."""

    async def job_input(self, pipeline, **kwargs) -> BatchesImportInput:
        result = await pipeline.create_batches(batch_input())
        return BatchesImportInput(
            run_id="run-1",
            repository_name="my-app",
            created_batches=result.created_batches,
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_all_completed(self, pipeline, fake_client, scheduler, blob_storage):
        job_input = await self.job_input(pipeline)
        for handle in job_input.created_batches:
            fake_client.complete_batch(handle.batch_id)

        output = await pipeline.import_batches(job_input, parent_id="job-1")

        assert output.processed == ["batch-1", "batch-2"]
        assert output.pending == []
        assert output.failed_import == {}
        assert output.rescheduled_job_id is None
        scheduler.schedule.assert_not_called()

        report = ReportStore(blob_storage).get_report("run-1")
        assert report.report_locale_keys == [
            report_locale_key("run-1", "fr-FR"),
            report_locale_key("run-1", "de-DE"),
        ]
        fr = ReportStore(blob_storage).get_report_locale("run-1", "fr-FR")
        assert fr.summary.imported == 4
        assert fr.summary.mode == "batch"
        assert [line.result for line in fr.lines] == ["imported"] * 4

    @pytest.mark.asyncio
    async def test_pending_batch_rescheduled(self, pipeline, fake_client, scheduler):
        job_input = await self.job_input(pipeline)
        fake_client.complete_batch("batch-1")

        output = await pipeline.import_batches(job_input, parent_id="job-1")

        assert output.processed == ["batch-1"]
        assert output.pending == ["batch-2"]
        assert output.rescheduled_job_id == "job-next"

        job_type, input_json, parent_id, delay = scheduler.schedule.call_args.args
        assert (job_type, parent_id, delay) == (IMPORT_BATCHES_JOB, "job-1", 10)
        next_input = BatchesImportInput.model_validate_json(input_json)
        assert next_input.processed == ["batch-1"]
        assert next_input.attempt == 1
        assert next_input.first_attempt_at is not None

    @pytest.mark.asyncio
    async def test_processed_batches_not_retrieved_again(self, pipeline, fake_client):
        job_input = await self.job_input(pipeline, processed=["batch-1"])
        fake_client.complete_batch("batch-2")

        output = await pipeline.import_batches(job_input)

        assert fake_client.retrieve_calls == 1
        assert output.processed == ["batch-1", "batch-2"]

    @pytest.mark.asyncio
    async def test_terminal_failure(self, pipeline, fake_client):
        job_input = await self.job_input(pipeline)
        fake_client.complete_batch("batch-1")
        fake_client.batches["batch-2"] = fake_client.batches["batch-2"].model_copy(
            update={"status": "expired"}
        )

        output = await pipeline.import_batches(job_input)

        assert output.pending == []
        assert output.failed_import == {"batch-2": ["Batch batch-2 ended with status: expired"]}

    @pytest.mark.asyncio
    async def test_retrieval_failure_isolated(self, pipeline, fake_client):
        job_input = await self.job_input(pipeline)
        fake_client.complete_batch("batch-2")
        retrieve = fake_client.retrieve_batch

        async def retrieve_batch(batch_id):
            if batch_id == "batch-1":
                raise ConnectionError("unreachable")
            return await retrieve(batch_id)

        fake_client.retrieve_batch = retrieve_batch

        output = await pipeline.import_batches(job_input)

        assert list(output.failed_import) == ["batch-1"]
        assert output.processed == ["batch-1", "batch-2"]

    @pytest.mark.asyncio
    async def test_unit_errors_mark_batch_failed(self, pipeline, fake_client):
        def output_for_line(request_line):
            if request_line["custom_id"] == "4":
                return json.dumps({"custom_id": "4", "response": {"status_code": 500}})
            return success_line(request_line)

        fake_client.output_for_line = output_for_line
        job_input = await self.job_input(pipeline)
        for handle in job_input.created_batches:
            fake_client.complete_batch(handle.batch_id)

        output = await pipeline.import_batches(job_input)

        assert set(output.failed_import) == {"batch-1", "batch-2"}
        assert len(output.failed_import["batch-1"]) == 1

    @pytest.mark.asyncio
    async def test_timed_out(self, pipeline, scheduler, app_config):
        job_input = await self.job_input(
            pipeline,
            first_attempt_at=time.time() - app_config.ai_translate.import_job_timeout_seconds - 1,
        )

        output = await pipeline.import_batches(job_input)

        assert output.rescheduled_job_id is None
        assert set(output.failed_import) == {"batch-1", "batch-2"}
        scheduler.schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_import_job(self, pipeline, fake_client):
        job_input = await self.job_input(pipeline)
        for handle in job_input.created_batches:
            fake_client.complete_batch(handle.batch_id)

        output = await pipeline.run_import_job(
            Job("job-1", IMPORT_BATCHES_JOB, job_input.model_dump_json())
        )

        assert output.processed == ["batch-1", "batch-2"]


class TestRetryImport:
    """Tests for BatchPipeline.retry_import."""

    def previous_input(self) -> BatchesImportInput:
        return BatchesImportInput(
            run_id="run-1",
            repository_name="my-app",
            created_batches=[
                BatchJobHandle(batch_id=f"batch-{i}", blob_id=f"fr-FR_{i}", locale="fr-FR")
                for i in (1, 2, 3)
            ],
            processed=["batch-1", "batch-2"],
            failed_import={"batch-2": ["boom"]},
            attempt=4,
            first_attempt_at=123.0,
        )

    def test_resume(self, pipeline, scheduler):
        """Resume keeps imported batches and retries the failed and unprocessed ones."""
        scheduler.get_input.return_value = self.previous_input().model_dump_json()

        job = pipeline.retry_import("job-1", resume=True)

        scheduler.get_input.assert_called_once_with("job-1")
        next_input = BatchesImportInput.model_validate_json(job.input_json)
        assert next_input.processed == ["batch-1"]
        assert next_input.failed_import == {}
        assert next_input.attempt == 0
        assert next_input.first_attempt_at is None
        assert job.parent_id == "job-1"

    def test_full_retry(self, pipeline, scheduler):
        scheduler.get_input.return_value = self.previous_input().model_dump_json()

        job = pipeline.retry_import("job-1")

        assert BatchesImportInput.model_validate_json(job.input_json).processed == []


class TestBatchEndToEnd:
    """Creation and import through the in-process scheduler."""

    @pytest.mark.asyncio
    async def test_import_after_completion(self, tm, blob_storage, fake_client, app_config):
        scheduler = InProcessJobScheduler(blob_storage, sleep=no_sleep)
        pipeline = BatchPipeline(
            tm, blob_storage, fake_client, scheduler, app_config, sleep=no_sleep
        )
        scheduler.register(IMPORT_BATCHES_JOB, pipeline.run_import_job)

        created = await pipeline.create_batches(batch_input(target_locales=["fr-FR"]))
        batch_id = created.created_batches[0].batch_id

        # First attempt finds the batch in progress and reschedules itself
        retrieve = fake_client.retrieve_batch

        async def complete_on_second_call(requested_id):
            if fake_client.retrieve_calls == 1:
                fake_client.complete_batch(requested_id)
            return await retrieve(requested_id)

        fake_client.retrieve_batch = complete_on_second_call

        job_input = BatchesImportInput(
            run_id="run-1", repository_name="my-app", created_batches=created.created_batches
        )
        first = scheduler.schedule(IMPORT_BATCHES_JOB, job_input.model_dump_json(), "run-1")
        await scheduler.join()

        jobs = scheduler.list_jobs()
        assert len(jobs) == 2
        assert all(j.status == "completed" for j in jobs)
        assert first.result.rescheduled_job_id is not None
        assert tm.current_variant(1, "fr-FR").content == "[fr-FR] Welcome home"
        assert fake_client.batches[batch_id].status == "completed"
