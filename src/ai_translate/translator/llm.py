"""OpenAI-compatible LLM client wrapper."""

from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from ai_translate.config import LLMConfig, get_config
from ai_translate.errors import ConfigurationError
from ai_translate.translator.request_builder import CHAT_COMPLETIONS_URL, CompletionRequest

logger = structlog.get_logger()

COMPLETION_WINDOW = "24h"


class CompletionResponse(BaseModel):
    """Id and text output of a chat completion."""

    id: Optional[str] = None
    output_text: Optional[str] = None


class BatchInfo(BaseModel):
    """Status of a remote batch job."""

    id: str
    status: str
    input_file_id: Optional[str] = None
    output_file_id: Optional[str] = None
    error_file_id: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_sdk(cls, batch: Any) -> "BatchInfo":
        return cls(
            id=batch.id,
            status=batch.status,
            input_file_id=getattr(batch, "input_file_id", None),
            output_file_id=getattr(batch, "output_file_id", None),
            error_file_id=getattr(batch, "error_file_id", None),
            metadata=dict(batch.metadata or {}),
        )


class LLMClient:
    """Chat completions plus the files/batches API of an OpenAI-compatible service."""

    def __init__(self, config: Optional[LLMConfig] = None):
        """Initialize the LLM client.

        Args:
            config: LLM configuration, uses global config if None
        """
        self.config = config or get_config().llm
        self._client = None

    def ensure_configured(self) -> None:
        """Raise ConfigurationError when no API key is set."""
        if not self.config.api_key:
            raise ConfigurationError(
                "OpenAI client is not configured. Ensure that OPENAI_API_KEY is provided."
            )

    @property
    def client(self):
        """Lazy-load the OpenAI client."""
        if self._client is None:
            self.ensure_configured()
            import openai

            self._client = openai.AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                # Retries are owned by the callers (batch status) or disabled (sync)
                max_retries=0,
            )
        return self._client

    async def get_response(self, request: CompletionRequest, timeout: float) -> CompletionResponse:
        """Send one chat completion request.

        Args:
            request: Request built by the RequestBuilder
            timeout: Transport timeout in seconds

        Returns:
            Completion id and raw output text
        """
        response = await self.client.chat.completions.create(**request.body(), timeout=timeout)
        content = response.choices[0].message.content if response.choices else None
        return CompletionResponse(id=response.id, output_text=content)

    async def upload_file(self, filename: str, content: str) -> str:
        """Upload a JSONL batch input file. Returns the file id."""
        uploaded = await self.client.files.create(
            file=(filename, content.encode("utf-8")),
            purpose="batch",
        )
        logger.debug("batch_file_uploaded", file_id=uploaded.id, filename=filename)
        return uploaded.id

    async def create_batch(self, input_file_id: str, metadata: dict[str, str]) -> BatchInfo:
        batch = await self.client.batches.create(
            input_file_id=input_file_id,
            endpoint=CHAT_COMPLETIONS_URL,
            completion_window=COMPLETION_WINDOW,
            metadata=metadata,
        )
        return BatchInfo.from_sdk(batch)

    async def retrieve_batch(self, batch_id: str) -> BatchInfo:
        batch = await self.client.batches.retrieve(batch_id)
        return BatchInfo.from_sdk(batch)

    async def download_file_content(self, file_id: str) -> str:
        response = await self.client.files.content(file_id)
        return response.text
