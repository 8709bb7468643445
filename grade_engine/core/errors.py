"""Engine exception taxonomy.

Every error names the entity kind and id it concerns so an operator can
re-run exactly the affected unit (one quiz result, one course grade, one
rollup) instead of the whole pipeline.
"""

from typing import Any


class EngineError(Exception):
    """Base class for all engine failures."""

    error_code = "engine_error"
    transient = False

    def __init__(self, entity: str, entity_id: Any, message: str):
        super().__init__(f"{entity}[{entity_id}]: {message}")
        self.entity = entity
        self.entity_id = entity_id
        self.message = message

    def as_details(self) -> dict[str, Any]:
        return {"entity": self.entity, "entity_id": str(self.entity_id)}


class DataIntegrityError(EngineError):
    """Referenced entity missing or inconsistent; the record is skipped."""

    error_code = "data_integrity"


class DuplicateRecord(DataIntegrityError):
    """The unique key of an immutable row is already taken."""

    error_code = "duplicate"


class ConcurrencyConflict(EngineError):
    """Lock or version mismatch during recomputation."""

    error_code = "concurrency_conflict"
    transient = True


class ConfigurationError(EngineError):
    """Course configuration is unusable; never retried automatically."""

    error_code = "configuration_error"


class RecomputeTimeout(EngineError, TimeoutError):
    """A recomputation job ran past its deadline."""

    error_code = "timeout"
    transient = True


class JobCancelled(EngineError):
    """The course behind a running job went away mid-run."""

    error_code = "cancelled"


class InvalidTransition(EngineError):
    """Intervention state machine refused the requested transition."""

    error_code = "invalid_transition"


class NotFound(EngineError):
    error_code = "not_found"
