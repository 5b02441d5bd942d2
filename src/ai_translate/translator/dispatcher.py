"""Synchronous mode: send request groups concurrently through the client pool."""

import asyncio
import math
from dataclasses import dataclass
from typing import Optional

import structlog
from pydantic import BaseModel

from ai_translate.config import TimeoutConfig
from ai_translate.errors import PoolExhaustedError
from ai_translate.services.metrics import MODE_NO_BATCH, MetricsRegistry, metric_tags
from ai_translate.translator.merger import ImportOutcome, error_outcome, prepare_outcome
from ai_translate.translator.pool import ClientPool
from ai_translate.translator.request_builder import RequestGroup
from ai_translate.translator.types import AiTranslateType

logger = structlog.get_logger()


def compute_timeout_seconds(
    config: TimeoutConfig,
    unit_count: int,
    source_char_count: int,
    has_image: bool,
    override_seconds: Optional[int] = None,
) -> int:
    """Per-request timeout, grown with the request size and clamped to [min, max]."""
    if override_seconds is not None:
        return override_seconds

    timeout = (
        config.base_seconds
        + max(0, unit_count - 1) * config.per_additional_text_unit_seconds
        + math.ceil(max(0, source_char_count) / 1000) * config.per_1000_source_chars_seconds
        + (config.screenshot_penalty_seconds if has_image else 0)
    )
    if config.max_seconds > 0:
        timeout = min(timeout, config.max_seconds)
    if config.min_seconds > 0:
        timeout = max(timeout, config.min_seconds)
    return timeout


@dataclass
class DispatchResult:
    group: RequestGroup
    timeout_seconds: int


@dataclass
class Success(DispatchResult):
    completion_id: Optional[str]
    output: BaseModel


@dataclass
class Error(DispatchResult):
    message: str
    completion_id: Optional[str] = None


@dataclass
class Timeout(DispatchResult):
    message: str


def unit_outcomes(result: DispatchResult, translate_type: AiTranslateType) -> list[ImportOutcome]:
    """One outcome per unit of the group.

    A failed group errors every unit with the same message; a successful one
    errors only the units missing from the output.
    """
    if isinstance(result, Success):
        return [
            prepare_outcome(translate_type, unit, result.output, result.completion_id)
            for unit in result.group.units
        ]
    completion_id = result.completion_id if isinstance(result, Error) else None
    return [error_outcome(unit, result.message, completion_id) for unit in result.group.units]


class Dispatcher:
    """Dispatch every group of a locale and collect one result per group."""

    def __init__(
        self,
        pool: ClientPool,
        timeout_config: Optional[TimeoutConfig] = None,
        translate_type: AiTranslateType = AiTranslateType.TARGET_ONLY_NEW,
        timeout_override_seconds: Optional[int] = None,
        metrics: Optional[MetricsRegistry] = None,
        repository: Optional[str] = None,
        locale: Optional[str] = None,
    ):
        self.pool = pool
        self.timeout_config = timeout_config or TimeoutConfig()
        self.translate_type = translate_type
        self.timeout_override_seconds = timeout_override_seconds
        self.metrics = metrics or MetricsRegistry()
        self.repository = repository
        self.locale = locale

    def _tags(self, group: RequestGroup) -> dict[str, str]:
        return metric_tags(
            MODE_NO_BATCH,
            self.repository,
            group.request.model,
            self.locale,
            str(group.has_image).lower(),
        )

    def timeout_for(self, group: RequestGroup) -> int:
        return compute_timeout_seconds(
            self.timeout_config,
            group.unit_count,
            group.source_char_count,
            group.has_image,
            self.timeout_override_seconds,
        )

    async def dispatch(self, groups: list[RequestGroup]) -> list[DispatchResult]:
        """Send all groups concurrently. Results are returned in group order."""
        if not groups:
            return []

        queue: asyncio.Queue[tuple[int, DispatchResult]] = asyncio.Queue()

        async def worker(index: int, group: RequestGroup) -> None:
            await queue.put((index, await self._dispatch_one(group)))

        tasks = [asyncio.create_task(worker(i, g)) for i, g in enumerate(groups)]

        results: list[Optional[DispatchResult]] = [None] * len(groups)
        try:
            for _ in range(len(groups)):
                index, result = await queue.get()
                results[index] = result
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        return [r for r in results if r is not None]

    async def _dispatch_one(self, group: RequestGroup) -> DispatchResult:
        timeout = self.timeout_for(group)
        tags = self._tags(group)
        self.metrics.increment("groupedRequests", tags)

        try:
            response = await self.pool.submit(
                lambda client: asyncio.wait_for(
                    client.get_response(group.request, timeout), timeout=timeout
                )
            )
        except asyncio.TimeoutError:
            self.metrics.increment("timeouts", tags)
            message = f"Error when getting the response: timed out after {timeout}s"
            logger.error(
                "group_dispatch_timeout",
                group_id=group.group_id,
                tm_text_unit_ids=group.tm_text_unit_ids,
                locale=self.locale,
                timeout=timeout,
            )
            return Timeout(group, timeout, message)
        except PoolExhaustedError as e:
            message = f"Error when getting the response: {e}"
            logger.error("group_dispatch_rejected", group_id=group.group_id, error=str(e))
            return Error(group, timeout, message)
        except Exception as e:
            message = f"Error when getting the response: {e}"
            logger.error(
                "group_dispatch_failed",
                group_id=group.group_id,
                tm_text_unit_ids=group.tm_text_unit_ids,
                locale=self.locale,
                error=str(e),
            )
            return Error(group, timeout, message)

        try:
            output = self.translate_type.parse_output(response.output_text)
        except ValueError as e:
            self.metrics.increment("parseFailures", tags)
            logger.debug("completion_output_parse_failed", group_id=group.group_id, error=str(e))
            return Error(
                group,
                timeout,
                f"Error trying to parse the JSON completion output: {e}",
                completion_id=response.id,
            )

        return Success(group, timeout, response.id, output)
