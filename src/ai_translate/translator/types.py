"""Model input payloads and translate types (prompt + JSON output schema)."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

# ---------------------------------------------------------------------------
# Model input
# ---------------------------------------------------------------------------


class GlossaryTermInput(BaseModel):
    """Glossary hit sent to the model."""

    source: str
    source_description: Optional[str] = None
    target: Optional[str] = None
    target_description: Optional[str] = None


class RelatedStringInput(BaseModel):
    """Neighbor string from the same asset."""

    source: Optional[str] = None
    description: Optional[str] = None


class ExistingTarget(BaseModel):
    """Current translation, surfaced so the model can keep or fix it."""

    content: str
    comment: Optional[str] = None
    excluded_from_localized_file: bool = False
    error_comments: list[str] = Field(default_factory=list)


class TextUnitInput(BaseModel):
    """One text unit in a request."""

    tm_text_unit_id: int
    source: Optional[str] = None
    source_description: Optional[str] = None
    existing_target: Optional[ExistingTarget] = None
    glossary_terms: list[GlossaryTermInput] = Field(default_factory=list)
    related_strings: list[RelatedStringInput] = Field(default_factory=list)


class CompletionInput(BaseModel):
    """User content of a request: a locale and one or more text units."""

    locale: str
    text_units: list[TextUnitInput] = Field(default_factory=list)

    def to_json(self) -> str:
        # Compact and without nulls so JSONL lines stay on one line
        return self.model_dump_json(exclude_none=True)


# ---------------------------------------------------------------------------
# Model output
# ---------------------------------------------------------------------------


class TargetOnlyItem(BaseModel):
    tm_text_unit_id: int
    target: str


class TargetOnlyOutput(BaseModel):
    text_units: list[TargetOnlyItem]


class TargetWithCommentItem(BaseModel):
    tm_text_unit_id: int
    target: str
    target_comment: str


class TargetWithCommentOutput(BaseModel):
    text_units: list[TargetWithCommentItem]


class Review(BaseModel):
    score: int = Field(description="0 (bad) to 2 (good)")
    explanation: str


class TargetWithReviewItem(BaseModel):
    tm_text_unit_id: int
    target: str
    target_comment: str
    review: Review


class TargetWithReviewOutput(BaseModel):
    text_units: list[TargetWithReviewItem]


class TargetWithMetadata(BaseModel):
    """Target of one unit extracted from a parsed output."""

    target: str
    target_comment: Optional[str] = None


_BASE_PROMPT = """You are a professional software localizer.
Translate each text unit of the JSON input from its source language into the locale given by "locale".

Rules:
- Preserve placeholders, ICU message syntax, HTML/markup tags and escape sequences exactly.
- Use the "glossary_terms": when a term has a "target", use that exact target.
- Use "source_description" and "related_strings" only as context; do not translate them.
- If "existing_target" is present, keep it when it is correct and fix it otherwise.
  "error_comments" describe problems found in the existing target that must be fixed.
- Answer for every "tm_text_unit_id" of the input, using the same id."""


class AiTranslateType(str, Enum):
    """Selects the system prompt and the JSON output schema."""

    TARGET_ONLY = "TARGET_ONLY"
    TARGET_ONLY_NEW = "TARGET_ONLY_NEW"
    WITH_REVIEW = "WITH_REVIEW"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "AiTranslateType":
        if value is None:
            return cls.TARGET_ONLY_NEW
        return cls(value.upper())

    @property
    def prompt(self) -> str:
        if self is AiTranslateType.TARGET_ONLY:
            return _BASE_PROMPT + "\n- Only return the target."
        if self is AiTranslateType.TARGET_ONLY_NEW:
            return (
                _BASE_PROMPT
                + '\n- Put a one sentence rationale for your choice in "target_comment".'
            )
        return (
            _BASE_PROMPT
            + '\n- Put a one sentence rationale for your choice in "target_comment".'
            + '\n- Review your target: "review.score" is 0 (bad), 1 (acceptable) or 2 (good),'
            + ' with a short "review.explanation".'
        )

    @property
    def output_model(self) -> type[BaseModel]:
        return {
            AiTranslateType.TARGET_ONLY: TargetOnlyOutput,
            AiTranslateType.TARGET_ONLY_NEW: TargetWithCommentOutput,
            AiTranslateType.WITH_REVIEW: TargetWithReviewOutput,
        }[self]

    def json_schema(self) -> dict[str, Any]:
        """Strict JSON schema of the output model."""
        return strict_json_schema(self.output_model.model_json_schema())

    def response_format(self) -> dict[str, Any]:
        """``response_format`` argument of a chat completion request."""
        return {
            "type": "json_schema",
            "json_schema": {
                "name": "request_json_format",
                "strict": True,
                "schema": self.json_schema(),
            },
        }

    def parse_output(self, output_text: Optional[str]) -> BaseModel:
        """Parse the model output. Raises ValueError when it does not match the schema."""
        if not output_text:
            raise ValueError("Empty completion output")
        try:
            return self.output_model.model_validate_json(output_text)
        except ValidationError as e:
            raise ValueError(str(e)) from e

    def target_with_metadata(
        self, tm_text_unit_id: int, output: BaseModel
    ) -> Optional[TargetWithMetadata]:
        """Return the target of one unit, or None if the output lacks it."""
        for item in getattr(output, "text_units", []):
            if item.tm_text_unit_id != tm_text_unit_id:
                continue
            if isinstance(item, TargetWithReviewItem):
                return TargetWithMetadata(
                    target=item.target,
                    target_comment=(
                        f"{item.target_comment} "
                        f"[review score: {item.review.score}, {item.review.explanation}]"
                    ),
                )
            if isinstance(item, TargetWithCommentItem):
                return TargetWithMetadata(target=item.target, target_comment=item.target_comment)
            return TargetWithMetadata(target=item.target)
        return None


def strict_json_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Make every object closed and every property required (structured outputs)."""
    if schema.get("type") == "object":
        schema["additionalProperties"] = False
        schema["required"] = list(schema.get("properties", {}).keys())
    for key in ("properties", "$defs"):
        for sub in schema.get(key, {}).values():
            strict_json_schema(sub)
    if "items" in schema:
        strict_json_schema(schema["items"])
    return schema
