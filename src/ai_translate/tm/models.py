"""Translation memory records seen by the AI translate pipeline."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

AI_TRANSLATE_PLACEHOLDER_COMMENT = "ai-translate"


class TextUnitStatus(str, Enum):
    """Status of a text unit variant."""

    TRANSLATION_NEEDED = "TRANSLATION_NEEDED"
    REVIEW_NEEDED = "REVIEW_NEEDED"
    APPROVED = "APPROVED"


class StatusFilter(str, Enum):
    """Which text units to select as candidates."""

    ALL = "ALL"
    UNTRANSLATED = "UNTRANSLATED"
    TRANSLATED = "TRANSLATED"
    FOR_TRANSLATION = "FOR_TRANSLATION"
    REVIEW_NEEDED = "REVIEW_NEEDED"


class CommentSeverity(str, Enum):
    """Severity of a variant comment."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class CommentType(str, Enum):
    """Origin of a variant comment."""

    AI_TRANSLATE = "AI_TRANSLATE"
    INTEGRITY_CHECK = "INTEGRITY_CHECK"
    LEVERAGING = "LEVERAGING"
    QUALITY_CHECK = "QUALITY_CHECK"


class VariantComment(BaseModel):
    """Annotation attached to a stored variant."""

    severity: CommentSeverity
    type: CommentType
    content: Optional[str] = None


class TranslatableUnit(BaseModel):
    """One localizable string in one target locale.

    Produced by the translation memory search; read-only to the pipeline.
    """

    tm_text_unit_id: int = Field(description="Stable text unit id")
    tm_text_unit_variant_id: Optional[int] = Field(
        default=None, description="Current variant id, None when untranslated"
    )
    name: str = Field(default="", description="Text unit name (string id)")
    source: Optional[str] = Field(default=None, description="Source text")
    comment: Optional[str] = Field(default=None, description="Source comment")
    target: Optional[str] = Field(default=None, description="Current target text")
    target_comment: Optional[str] = Field(default=None, description="Current target comment")
    target_locale: str = Field(description="BCP47 tag of the target locale")
    asset_id: Optional[int] = None
    asset_extraction_id: Optional[int] = None
    asset_text_unit_id: Optional[int] = None
    included_in_localized_file: bool = Field(
        default=True, description="Whether the target is emitted in localized files"
    )
    status: Optional[TextUnitStatus] = None
    variant_comments: list[VariantComment] = Field(default_factory=list)

    def error_comments(self) -> list[str]:
        """Contents of ERROR severity comments on the current variant."""
        return [
            c.content
            for c in self.variant_comments
            if c.severity == CommentSeverity.ERROR and c.content
        ]

    def reusable_target_comment(self) -> Optional[str]:
        """Target comment, ignoring the placeholder left by a previous AI run."""
        if self.target_comment == AI_TRANSLATE_PLACEHOLDER_COMMENT:
            return None
        return self.target_comment


class AssetTextUnit(BaseModel):
    """A text unit as extracted from one version of an asset."""

    id: int
    asset_extraction_id: int
    name: str
    content: Optional[str] = None
    comment: Optional[str] = None
    usages: list[str] = Field(default_factory=list, description="'path:line' or 'path'")


class Repository(BaseModel):
    """Repository metadata needed to resolve locales."""

    id: int
    name: str
    root_locale: str = "en"
    locales: list[str] = Field(default_factory=list, description="BCP47 tags incl. root")

    def locales_without_root(self) -> list[str]:
        return [tag for tag in self.locales if tag != self.root_locale]
