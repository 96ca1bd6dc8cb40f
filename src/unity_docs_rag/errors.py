"""Error taxonomy for the question-answering pipeline.

Every failure that reaches the request boundary is a :class:`RAGError`
carrying the pipeline stage it came from, so callers can report a single
structured error.
"""


class RAGError(Exception):
    """Base class for pipeline failures."""

    stage = "pipeline"

    def __init__(self, message: str, stage: str | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage

    def to_dict(self) -> dict[str, str]:
        return {"error": str(self), "stage": self.stage}


class ConfigurationError(RAGError):
    """Missing credentials or endpoints, or an invalid prompt template."""

    stage = "configuration"


class ExpansionError(RAGError):
    stage = "expanding"


class RetrievalError(RAGError):
    stage = "retrieving"


class RerankError(RAGError):
    stage = "reranking"


class GenerationError(RAGError):
    stage = "generating"
