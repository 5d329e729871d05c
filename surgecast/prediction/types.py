from dataclasses import dataclass, field
from datetime import datetime

MIN_MULTIPLIER = 1.0
MAX_MULTIPLIER = 3.5

FALLBACK_MULTIPLIER = 1.0
FALLBACK_CONFIDENCE = 0.5


@dataclass(frozen=True)
class PredictionFactor:
    name: str
    description: str
    impact: float

    def to_dict(self) -> dict:
        return {"name": self.name, "description": self.description, "impact": round(self.impact, 3)}


@dataclass(frozen=True)
class SurgePrediction:
    """Immutable; a later prediction for the same cell supersedes, never edits, this one."""
    id: str
    cell_id: str
    timestamp: datetime
    multiplier: float
    confidence: float
    predicted_duration_minutes: int
    factors: tuple[PredictionFactor, ...] = field(default_factory=tuple)
    strategy: str = "consensus"
    volatility: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cellId": self.cell_id,
            "timestamp": self.timestamp.isoformat(),
            "multiplier": self.multiplier,
            "confidence": self.confidence,
            "predictedDurationMinutes": self.predicted_duration_minutes,
            "factors": [f.to_dict() for f in self.factors],
        }
