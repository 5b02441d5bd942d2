"""Exception taxonomy for the AI translate pipeline.

Per-unit and per-group failures are not exceptions: they are recorded on the
import outcome and reported. Only the failures below abort work.
"""


class AiTranslateError(Exception):
    """Base class for AI translate errors."""


class ConfigurationError(AiTranslateError):
    """Invalid or incomplete configuration. Aborts the run, never retried."""


class RepositoryNotFoundError(ConfigurationError):
    """Repository name is not known to the translation memory."""

    def __init__(self, repository_name: str):
        super().__init__(f"Repository with name '{repository_name}' can not be found!")
        self.repository_name = repository_name


class GlossaryNotFoundError(ConfigurationError):
    """Named glossary does not exist."""

    def __init__(self, glossary_name: str):
        super().__init__(f"Glossary with name '{glossary_name}' can not be found!")
        self.glossary_name = glossary_name


class PoolExhaustedError(AiTranslateError):
    """The completion client pool has too many pending requests."""


class BatchRetrievalError(AiTranslateError):
    """Batch status retrieval failed after exhausting retries."""

    def __init__(self, batch_id: str, cause: BaseException):
        super().__init__(f"Failed to retrieve batch: {batch_id}: {cause}")
        self.batch_id = batch_id


class CorrelationBlobMissingError(AiTranslateError):
    """The durable snapshot referenced by a batch no longer exists."""

    def __init__(self, blob_id: str):
        super().__init__(f"There must be an entry for textUnitDTOsBlobId: {blob_id}")
        self.blob_id = blob_id
