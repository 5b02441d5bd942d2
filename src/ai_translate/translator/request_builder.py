"""Turn candidate text units into completion requests.

Units are first filtered by the glossary ("only matched units"), then
grouped. Synchronous dispatch groups units sharing a screenshot so they share
one image; batch mode sends one request per unit. The filter runs before
grouping in both modes, so a unit is skipped or not independently of the
mode and of its neighbors.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from pydantic import BaseModel

from ai_translate.glossary.trie import GlossaryTerm, GlossaryTrie
from ai_translate.tm.models import TranslatableUnit
from ai_translate.translator.related import RelatedStringsProvider
from ai_translate.translator.screenshots import (
    NoScreenshotProvider,
    ScreenshotProvider,
    extract_screenshot_uuid,
)
from ai_translate.translator.types import (
    AiTranslateType,
    CompletionInput,
    ExistingTarget,
    GlossaryTermInput,
    TextUnitInput,
)

logger = structlog.get_logger()

CHAT_COMPLETIONS_URL = "/v1/chat/completions"


def get_prompt(prompt: str, prompt_suffix: Optional[str]) -> str:
    return prompt if prompt_suffix is None else f"{prompt} {prompt_suffix}"


class CompletionRequest(BaseModel):
    """A chat completion request with a JSON schema constrained output."""

    model: str
    instructions: str
    user_content: str
    image_url: Optional[str] = None
    response_format: dict[str, Any]
    max_completion_tokens: Optional[int] = None

    def messages(self) -> list[dict[str, Any]]:
        if self.image_url is None:
            user: Any = self.user_content
        else:
            user = [
                {"type": "text", "text": self.user_content},
                {"type": "image_url", "image_url": {"url": self.image_url}},
            ]
        return [
            {"role": "system", "content": self.instructions},
            {"role": "user", "content": user},
        ]

    def body(self) -> dict[str, Any]:
        """Keyword arguments of ``chat.completions.create`` (and batch line body)."""
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages(),
            "response_format": self.response_format,
        }
        if self.max_completion_tokens is not None:
            body["max_completion_tokens"] = self.max_completion_tokens
        return body

    def batch_line(self, custom_id: str) -> dict[str, Any]:
        return {
            "custom_id": custom_id,
            "method": "POST",
            "url": CHAT_COMPLETIONS_URL,
            "body": self.body(),
        }


@dataclass
class RequestGroup:
    """Units sent to the model in one request."""

    group_id: str
    screenshot_uuid: Optional[str]
    units: list[TranslatableUnit]
    request: CompletionRequest

    @property
    def has_image(self) -> bool:
        return self.request.image_url is not None

    @property
    def unit_count(self) -> int:
        return len(self.units)

    @property
    def source_char_count(self) -> int:
        return sum(len(u.source or "") for u in self.units)

    @property
    def tm_text_unit_ids(self) -> list[int]:
        return [u.tm_text_unit_id for u in self.units]


@dataclass
class BuildResult:
    groups: list[RequestGroup] = field(default_factory=list)
    skipped: list[TranslatableUnit] = field(default_factory=list)

    @property
    def skipped_ids(self) -> set[int]:
        return {u.tm_text_unit_id for u in self.skipped}


def group_key(unit: TranslatableUnit) -> tuple[str, Optional[str]]:
    """(group id, screenshot uuid): screenshot, else variant id, else unit id."""
    screenshot_uuid = extract_screenshot_uuid(unit.comment)
    if screenshot_uuid is not None:
        return screenshot_uuid, screenshot_uuid
    if unit.tm_text_unit_variant_id is not None:
        return str(unit.tm_text_unit_variant_id), None
    return str(unit.tm_text_unit_id), None


def glossary_term_input(term: GlossaryTerm) -> GlossaryTermInput:
    return GlossaryTermInput(
        source=term.source,
        source_description=term.comment,
        target=term.effective_target(),
        target_description=term.target_comment,
    )


class RequestBuilder:
    """Build requests for one locale of one run."""

    def __init__(
        self,
        locale: str,
        model: str,
        translate_type: AiTranslateType = AiTranslateType.TARGET_ONLY_NEW,
        prompt_suffix: Optional[str] = None,
        glossary_trie: Optional[GlossaryTrie] = None,
        only_matched_units: bool = False,
        related_strings_provider: Optional[RelatedStringsProvider] = None,
        screenshot_provider: Optional[ScreenshotProvider] = None,
        max_completion_tokens: Optional[int] = None,
    ):
        self.locale = locale
        self.model = model
        self.translate_type = translate_type
        self.prompt = get_prompt(translate_type.prompt, prompt_suffix)
        self.glossary_trie = glossary_trie
        self.only_matched_units = only_matched_units
        self.related_strings_provider = related_strings_provider
        self.screenshot_provider = screenshot_provider or NoScreenshotProvider()
        self.max_completion_tokens = max_completion_tokens

    def find_terms_or_skip(self, unit: TranslatableUnit) -> tuple[set[GlossaryTerm], bool]:
        """Glossary hits of the unit source, and whether the unit must be skipped."""
        if self.glossary_trie is None:
            return set(), False

        terms = self.glossary_trie.find_terms(unit.source)
        if not terms and self.only_matched_units:
            logger.debug("unit_skipped_no_glossary_term", tm_text_unit_id=unit.tm_text_unit_id)
            return terms, True
        return terms, False

    def text_unit_input(self, unit: TranslatableUnit, terms: set[GlossaryTerm]) -> TextUnitInput:
        existing_target = None
        if unit.target is not None:
            existing_target = ExistingTarget(
                content=unit.target,
                comment=unit.reusable_target_comment(),
                excluded_from_localized_file=not unit.included_in_localized_file,
                error_comments=unit.error_comments(),
            )

        related_strings = []
        if self.related_strings_provider is not None:
            related_strings = self.related_strings_provider.get_related_strings(unit)

        return TextUnitInput(
            tm_text_unit_id=unit.tm_text_unit_id,
            source=unit.source,
            source_description=unit.comment,
            existing_target=existing_target,
            glossary_terms=[
                glossary_term_input(t)
                for t in sorted(terms, key=lambda t: (t.source, t.term_id))
            ],
            related_strings=related_strings,
        )

    def _request(self, text_units: list[TextUnitInput], image_url: Optional[str]) -> CompletionRequest:
        completion_input = CompletionInput(locale=self.locale, text_units=text_units)
        return CompletionRequest(
            model=self.model,
            instructions=self.prompt,
            user_content=completion_input.to_json(),
            image_url=image_url,
            response_format=self.translate_type.response_format(),
            max_completion_tokens=self.max_completion_tokens,
        )

    def _select(
        self, units: list[TranslatableUnit]
    ) -> tuple[list[tuple[TranslatableUnit, set[GlossaryTerm]]], list[TranslatableUnit]]:
        selected = []
        skipped = []
        for unit in units:
            terms, skip = self.find_terms_or_skip(unit)
            if skip:
                skipped.append(unit)
            else:
                selected.append((unit, terms))
        return selected, skipped

    def build_grouped(self, units: list[TranslatableUnit]) -> BuildResult:
        """One request per screenshot group, in first-seen order."""
        selected, skipped = self._select(units)

        buckets: dict[str, tuple[Optional[str], list[tuple[TranslatableUnit, set[GlossaryTerm]]]]] = {}
        for unit, terms in selected:
            group_id, screenshot_uuid = group_key(unit)
            buckets.setdefault(group_id, (screenshot_uuid, []))[1].append((unit, terms))

        result = BuildResult(skipped=skipped)
        for group_id, (screenshot_uuid, members) in buckets.items():
            image_url = None
            if screenshot_uuid is not None:
                image = self.screenshot_provider.get_image_bytes(screenshot_uuid)
                if image is not None:
                    image_url = image.to_data_url()

            request = self._request(
                [self.text_unit_input(unit, terms) for unit, terms in members], image_url
            )
            result.groups.append(
                RequestGroup(
                    group_id=group_id,
                    screenshot_uuid=screenshot_uuid,
                    units=[unit for unit, _ in members],
                    request=request,
                )
            )

        logger.debug(
            "requests_built",
            locale=self.locale,
            groups=len(result.groups),
            skipped=len(result.skipped),
        )
        return result

    def build_single(self, units: list[TranslatableUnit]) -> BuildResult:
        """One request per unit, keyed by the unit id (batch mode)."""
        selected, skipped = self._select(units)
        result = BuildResult(skipped=skipped)
        for unit, terms in selected:
            result.groups.append(
                RequestGroup(
                    group_id=str(unit.tm_text_unit_id),
                    screenshot_uuid=None,
                    units=[unit],
                    request=self._request([self.text_unit_input(unit, terms)], None),
                )
            )
        return result
