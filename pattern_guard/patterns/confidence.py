"""
Pattern confidence scoring.

    effective  = Σ members (1, or degraded_weight for degraded members)
    size       = 1 - exp(-effective / size_scale)
    cohesion   = mean cosine(member, centroid), clamped to [0, 1]
    recency    = 0.5 ** (age / half_life)
    confidence = size**size_weight * cohesion**cohesion_weight * recency**recency_weight

With non-negative weights the score rises with more members and tighter
clusters, and decays as the newest member ages.  All parameters come from
the ``confidence`` section of the config.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

_DAY = 86400.0


@dataclass
class ConfidenceModel:
    size_scale: float = 3.0
    half_life_days: float = 30.0
    size_weight: float = 1.0
    cohesion_weight: float = 1.0
    recency_weight: float = 1.0
    degraded_weight: float = 0.5

    def __post_init__(self) -> None:
        for name in ("size_weight", "cohesion_weight", "recency_weight", "degraded_weight"):
            if getattr(self, name) < 0:
                raise ValueError(f"confidence.{name} must be >= 0")
        if self.size_scale <= 0 or self.half_life_days <= 0:
            raise ValueError("confidence.size_scale and half_life_days must be > 0")

    @classmethod
    def from_config(cls, config) -> "ConfidenceModel":
        return cls(**config.CONFIDENCE)

    def effective_size(self, degraded_flags: list[bool]) -> float:
        return sum(self.degraded_weight if d else 1.0 for d in degraded_flags)

    def size_factor(self, effective: float) -> float:
        return 1.0 - math.exp(-max(effective, 0.0) / self.size_scale)

    def recency_factor(self, age_seconds: float) -> float:
        return 0.5 ** (max(age_seconds, 0.0) / (self.half_life_days * _DAY))

    def score(self, effective: float, cohesion: float, age_seconds: float) -> float:
        cohesion = min(1.0, max(0.0, cohesion))
        value = (
            self.size_factor(effective) ** self.size_weight
            * cohesion ** self.cohesion_weight
            * self.recency_factor(age_seconds) ** self.recency_weight
        )
        return min(1.0, max(0.0, value))


def centroid_of(vectors: np.ndarray) -> np.ndarray:
    """Unit-length mean of the row vectors."""
    mean = vectors.mean(axis=0)
    norm = float(np.linalg.norm(mean))
    return (mean / norm).astype(np.float32) if norm > 0 else mean.astype(np.float32)


def cohesion_of(vectors: np.ndarray, centroid: np.ndarray) -> float:
    """Mean cosine similarity of the rows to *centroid*, clamped to [0, 1]."""
    if vectors.shape[0] == 0:
        return 0.0
    return float(min(1.0, max(0.0, float((vectors @ centroid).mean()))))
