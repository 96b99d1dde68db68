"""
Pattern knowledge-base records.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np


class Category(str, Enum):
    """Closed set of pattern categories."""

    DATABASE = "database"
    API = "api"
    SECURITY = "security"
    UTILITY = "utility"
    CONFIGURATION = "configuration"


def make_pattern_id(anchor_chunk_id: str) -> str:
    """Pattern ids derive from the smallest member id at creation."""
    return "pat_" + hashlib.sha1(anchor_chunk_id.encode("utf-8")).hexdigest()[:16]


@dataclass
class Pattern:
    """A named cluster of semantically similar chunks."""

    pattern_id: str
    name: str
    category: Category
    members: list[str] = field(default_factory=list)
    centroid: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    confidence: float = 0.0
    cohesion: float = 0.0
    effective_size: float = 0.0
    first_seen: float = 0.0
    last_seen: float = 0.0
    archived: bool = False
    merged_into: Optional[str] = None
    name_locked: bool = False
    rule_id: str = ""

    @property
    def usage_count(self) -> int:
        return len(self.members)

    @property
    def active(self) -> bool:
        return not self.archived and bool(self.members)

    def to_dict(self) -> dict:
        return {
            "pattern_id": self.pattern_id,
            "name": self.name,
            "category": self.category.value,
            "members": list(self.members),
            "centroid": self.centroid.tolist() if self.centroid is not None else None,
            "confidence": self.confidence,
            "cohesion": self.cohesion,
            "effective_size": self.effective_size,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "archived": self.archived,
            "merged_into": self.merged_into,
            "name_locked": self.name_locked,
            "rule_id": self.rule_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Pattern":
        centroid = data.get("centroid")
        return cls(
            pattern_id=data["pattern_id"],
            name=data.get("name", data["pattern_id"]),
            category=Category(data.get("category", Category.UTILITY.value)),
            members=list(data.get("members", [])),
            centroid=np.asarray(centroid, dtype=np.float32) if centroid is not None else None,
            confidence=float(data.get("confidence", 0.0)),
            cohesion=float(data.get("cohesion", 0.0)),
            effective_size=float(data.get("effective_size", 0.0)),
            first_seen=float(data.get("first_seen", 0.0)),
            last_seen=float(data.get("last_seen", 0.0)),
            archived=bool(data.get("archived", False)),
            merged_into=data.get("merged_into"),
            name_locked=bool(data.get("name_locked", False)),
            rule_id=data.get("rule_id", ""),
        )

    def summary(self) -> dict:
        """JSON-friendly view without the centroid."""
        data = self.to_dict()
        data.pop("centroid")
        data["usage_count"] = self.usage_count
        return data
