"""Request building, dispatch and merge of AI translations."""

from ai_translate.translator.dispatcher import Dispatcher
from ai_translate.translator.llm import LLMClient
from ai_translate.translator.merger import ImportMerger, ImportOutcome
from ai_translate.translator.pool import ClientPool
from ai_translate.translator.related import RelatedStringsProvider, RelatedStringsType
from ai_translate.translator.request_builder import RequestBuilder
from ai_translate.translator.types import AiTranslateType

__all__ = [
    "AiTranslateType",
    "ClientPool",
    "Dispatcher",
    "ImportMerger",
    "ImportOutcome",
    "LLMClient",
    "RelatedStringsProvider",
    "RelatedStringsType",
    "RequestBuilder",
]
