"""
Exception taxonomy shared by the intelligence engines and the HTTP layer.

Provider errors are always recoverable inside an engine (they trigger the
rule-based fallback). NotFound and InvalidStateTransition are surfaced to the
caller unchanged.
"""
from typing import Any, Optional


class ProcuraError(Exception):
    """Base class for domain errors."""


# ============= AI PROVIDER =============

class AIProviderError(ProcuraError):
    """Base class for failures raised by the AI capability gateway."""


class ProviderUnavailable(AIProviderError):
    """No provider credential is configured."""


class RateLimited(AIProviderError):
    """The provider rejected the call because of quota or rate limits."""


class InvalidCredential(AIProviderError):
    """The provider rejected the configured credential."""


class ProviderError(AIProviderError):
    """Any other provider failure, including network errors and timeouts."""


# ============= DOMAIN =============

class NotFound(ProcuraError):
    """Unknown entity id (or an entity owned by another company)."""

    def __init__(self, entity: str, entity_id: Any = None):
        self.entity = entity
        self.entity_id = entity_id
        if entity_id is None:
            super().__init__(f"{entity} not found")
        else:
            super().__init__(f"{entity} {entity_id} not found")


class InvalidStateTransition(ProcuraError):
    """A status change that the entity's state machine does not allow."""

    def __init__(self, entity: str, entity_id: Any, current: Any, requested: Any):
        self.entity = entity
        self.entity_id = entity_id
        self.current = _state_value(current)
        self.requested = _state_value(requested)
        super().__init__(
            f"{entity} {entity_id} cannot move from {self.current} to {self.requested}"
        )


class ExtractionFailed(ProcuraError):
    """Document extraction failed; the extraction record was marked FAILED."""

    def __init__(self, extraction_id: Optional[int], message: str):
        self.extraction_id = extraction_id
        super().__init__(message)


def _state_value(state: Any) -> Any:
    if hasattr(state, "value"):
        return state.value
    return state
