"""Error taxonomy shared by every surgecast component."""


class SurgecastError(Exception):
    """Base exception for all surgecast errors."""


class ValidationError(SurgecastError):
    """Malformed or out-of-range input (event, coordinates, cell id)."""


class ConfigurationError(SurgecastError):
    """Invalid configuration, e.g. an unsupported grid resolution."""


class TransientSourceError(SurgecastError):
    """An environmental source fetch failed or timed out."""

    def __init__(self, message: str, *, source: str = ""):
        self.source = source
        super().__init__(message)


class PredictorError(SurgecastError):
    """A scoring function failed, timed out or broke its output contract."""

    def __init__(self, message: str, *, predictor: str = ""):
        self.predictor = predictor
        super().__init__(message)


class AllocationConflict(SurgecastError):
    """A price-lock batch already exists for the (cell, prediction) key."""

    def __init__(self, cell_id: str, prediction_id: str):
        self.cell_id = cell_id
        self.prediction_id = prediction_id
        super().__init__(f"Price locks already allocated for {cell_id}/{prediction_id}")


class LockTransitionError(SurgecastError):
    """A price lock was asked to move backwards in its state machine."""


class DependencyUnavailable(SurgecastError):
    """A backing service (Kafka, Redis) could not be reached within the retry budget."""

    def __init__(self, service: str, attempts: int, cause: Exception | None = None):
        self.service = service
        self.attempts = attempts
        super().__init__(f"{service} unavailable after {attempts} attempts: {cause}")
