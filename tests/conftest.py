"""Pytest configuration and fixtures."""

import json
from typing import Optional

import pytest

from ai_translate.config import AppConfig, LLMConfig, RetryConfig
from ai_translate.storage.blob import InMemoryBlobStorage
from ai_translate.tm.models import AssetTextUnit, Repository, TextUnitStatus
from ai_translate.tm.store import JsonTranslationMemory, StoredTextUnit, StoredVariant, TMData
from ai_translate.translator.llm import BatchInfo, CompletionResponse
from ai_translate.translator.request_builder import CompletionRequest


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")


def fake_target(locale: str, source: Optional[str]) -> str:
    return f"[{locale}] {source}"


def fake_output(user_content: str) -> str:
    """Model output translating every unit of a request user content."""
    payload = json.loads(user_content)
    return json.dumps(
        {
            "text_units": [
                {
                    "tm_text_unit_id": tu["tm_text_unit_id"],
                    "target": fake_target(payload["locale"], tu.get("source")),
                    "target_comment": "literal translation",
                }
                for tu in payload["text_units"]
            ]
        }
    )


def success_line(request_line: dict) -> str:
    """Batch output line answering one batch input line."""
    custom_id = request_line["custom_id"]
    user_content = request_line["body"]["messages"][1]["content"]
    return json.dumps(
        {
            "id": f"batch_req_{custom_id}",
            "custom_id": custom_id,
            "response": {
                "status_code": 200,
                "body": {
                    "id": f"chatcmpl-{custom_id}",
                    "choices": [{"message": {"content": fake_output(user_content)}}],
                },
            },
        }
    )


class FakeLLMClient:
    """In-memory stand-in for the completion and batch APIs."""

    def __init__(self, api_key: str = "sk-test"):
        self.api_key = api_key
        self.requests: list[CompletionRequest] = []
        self.files: dict[str, str] = {}
        self.batches: dict[str, BatchInfo] = {}
        self.retrieve_calls = 0
        # Optional hooks overriding the default behavior
        self.on_request = None
        self.output_for_line = None

    def ensure_configured(self) -> None:
        from ai_translate.errors import ConfigurationError

        if not self.api_key:
            raise ConfigurationError("OpenAI client is not configured.")

    async def get_response(self, request: CompletionRequest, timeout: float) -> CompletionResponse:
        self.requests.append(request)
        if self.on_request is not None:
            return await self.on_request(request, timeout)
        return CompletionResponse(
            id=f"chatcmpl-{len(self.requests)}", output_text=fake_output(request.user_content)
        )

    async def upload_file(self, filename: str, content: str) -> str:
        file_id = f"file-{len(self.files) + 1}"
        self.files[file_id] = content
        return file_id

    async def create_batch(self, input_file_id: str, metadata: dict[str, str]) -> BatchInfo:
        batch = BatchInfo(
            id=f"batch-{len(self.batches) + 1}",
            status="in_progress",
            input_file_id=input_file_id,
            metadata=metadata,
        )
        self.batches[batch.id] = batch
        return batch

    async def retrieve_batch(self, batch_id: str) -> BatchInfo:
        self.retrieve_calls += 1
        return self.batches[batch_id]

    async def download_file_content(self, file_id: str) -> str:
        return self.files[file_id]

    def complete_batch(self, batch_id: str) -> None:
        """Write an output file answering every line of the batch input."""
        batch = self.batches[batch_id]
        output_for_line = self.output_for_line or success_line
        lines = [
            output_for_line(json.loads(raw))
            for raw in self.files[batch.input_file_id].splitlines()
        ]
        output_file_id = f"file-out-{batch_id}"
        self.files[output_file_id] = "\n".join(lines)
        self.batches[batch_id] = batch.model_copy(
            update={"status": "completed", "output_file_id": output_file_id}
        )


def make_tm() -> JsonTranslationMemory:
    """Repository "my-app" (en → fr-FR, de-DE) with five text units."""
    data = TMData(
        repositories=[
            Repository(id=1, name="my-app", root_locale="en", locales=["en", "fr-FR", "de-DE"])
        ],
        text_units=[
            StoredTextUnit(
                tm_text_unit_id=1,
                repository_id=1,
                name="home.title",
                source="Welcome home",
                comment="Title of the home page",
                asset_extraction_id=10,
                asset_text_unit_id=101,
            ),
            StoredTextUnit(
                tm_text_unit_id=2,
                repository_id=1,
                name="home.subtitle",
                source="Your files, everywhere",
                asset_extraction_id=10,
                asset_text_unit_id=102,
            ),
            StoredTextUnit(
                tm_text_unit_id=3,
                repository_id=1,
                name="settings.save",
                source="Save",
                comment="Button label",
                asset_extraction_id=10,
                asset_text_unit_id=103,
            ),
            StoredTextUnit(
                tm_text_unit_id=4,
                repository_id=1,
                name="settings.cancel",
                source="Cancel",
                asset_extraction_id=10,
                asset_text_unit_id=104,
            ),
            StoredTextUnit(
                tm_text_unit_id=5,
                repository_id=1,
                name="legacy.unused",
                source="Unused string",
                used=False,
            ),
        ],
        asset_text_units=[
            AssetTextUnit(
                id=101,
                asset_extraction_id=10,
                name="home.title",
                content="Welcome home",
                usages=["src/home.js:12"],
            ),
            AssetTextUnit(
                id=102,
                asset_extraction_id=10,
                name="home.subtitle",
                content="Your files, everywhere",
                usages=["src/home.js:4"],
            ),
            AssetTextUnit(
                id=103,
                asset_extraction_id=10,
                name="settings.save",
                content="Save",
                usages=["src/settings.js:7"],
            ),
            AssetTextUnit(
                id=104,
                asset_extraction_id=10,
                name="settings.cancel",
                content="Cancel",
                usages=["src/settings.js:8"],
            ),
        ],
        variants=[
            StoredVariant(
                id=1,
                tm_text_unit_id=3,
                locale="de-DE",
                content="Speichern",
                status=TextUnitStatus.APPROVED,
            ),
        ],
        current_variants={"3|de-DE": 1},
    )
    return JsonTranslationMemory(data)


@pytest.fixture
def tm() -> JsonTranslationMemory:
    return make_tm()


@pytest.fixture
def blob_storage() -> InMemoryBlobStorage:
    return InMemoryBlobStorage()


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    """Configuration with a fake API key and fast retries."""
    return AppConfig(
        data_dir=tmp_path / "data",
        blob_dir=tmp_path / "blobs",
        glossary_dir=tmp_path / "glossaries",
        screenshot_dir=tmp_path / "screenshots",
        llm=LLMConfig(api_key="sk-test", model="gpt-test"),
        retry=RetryConfig(max_attempts=3, initial_backoff_millis=1, max_backoff_seconds=0.01),
    )


@pytest.fixture
def fake_client() -> FakeLLMClient:
    return FakeLLMClient()


async def no_sleep(seconds: float) -> None:
    """Sleep replacement recording nothing and returning immediately."""
    return None
