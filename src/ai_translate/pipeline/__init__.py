"""AI translate orchestration in synchronous and batch modes."""

from ai_translate.pipeline.inputs import AiTranslateInput
from ai_translate.pipeline.orchestrator import AiTranslateResult, Orchestrator

__all__ = ["AiTranslateInput", "AiTranslateResult", "Orchestrator"]
