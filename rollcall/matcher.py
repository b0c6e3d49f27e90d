from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .config import MATCH_THRESHOLD
from .database import FaceDescriptor
from .face_types import UserType
from .logger import setup_logger


@dataclass(frozen=True)
class MatchCandidate:
    user_id: str
    user_type: UserType
    distance: float


def confidence_from_distance(distance: float, threshold: float = MATCH_THRESHOLD) -> float:
    if threshold <= 0.0:
        return 0.0
    return float(min(1.0, max(0.0, 1.0 - distance / threshold)))


class FaceMatcher:
    """Brute-force nearest neighbour over every enrolled descriptor."""

    def __init__(self, threshold: float = MATCH_THRESHOLD) -> None:
        self.threshold = threshold
        self.logger = setup_logger(self.__class__.__name__)

    def nearest(self, query: np.ndarray, enrolled: Sequence[FaceDescriptor]) -> Optional[MatchCandidate]:
        if not enrolled:
            return None

        query = np.asarray(query, dtype=np.float64).ravel()
        comparable = [record for record in enrolled if record.descriptor.size == query.size]
        skipped = len(enrolled) - len(comparable)
        if skipped:
            self.logger.warning(
                "Skipped %d enrolled descriptors with a dimension other than %d",
                skipped,
                query.size,
            )
        if not comparable:
            return None

        matrix = np.vstack([record.descriptor for record in comparable]).astype(np.float64)
        distances = np.linalg.norm(matrix - query, axis=1)
        idx = int(np.argmin(distances))
        best = comparable[idx]
        return MatchCandidate(user_id=best.user_id, user_type=best.user_type, distance=float(distances[idx]))

    def match(self, query: np.ndarray, enrolled: Sequence[FaceDescriptor]) -> Optional[MatchCandidate]:
        candidate = self.nearest(query, enrolled)
        if candidate is None or candidate.distance > self.threshold:
            return None
        return candidate

    def confidence(self, distance: float) -> float:
        return confidence_from_distance(distance, self.threshold)
