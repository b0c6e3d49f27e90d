from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union


class UserType(str, Enum):
    STUDENT = "student"
    EMPLOYEE = "employee"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class NoFace:
    pass


@dataclass(frozen=True)
class FacePresentUnmatched:
    # None when nothing is enrolled to compare against.
    distance: Optional[float]
    region: Any = None


@dataclass(frozen=True)
class Matched:
    user_id: str
    user_type: UserType
    distance: float
    confidence: float
    region: Any = None


RecognitionOutcome = Union[NoFace, FacePresentUnmatched, Matched]

NO_FACE = NoFace()


@dataclass(frozen=True)
class EnrollmentResult:
    success: bool
    error: Optional[str] = None
    samples_captured: int = 0
    descriptors_stored: int = 0


@dataclass(frozen=True)
class EngineState:
    initialized: bool = False
    camera_active: bool = False
    loading: bool = False
    error: Optional[str] = None
    detection: RecognitionOutcome = NO_FACE
    enrolling: bool = False
    enrollment_progress: int = 0
