import numpy as np
import pytest

from rollcall.database import FaceDescriptor
from rollcall.face_types import UserType
from rollcall.matcher import FaceMatcher, confidence_from_distance

DIM = 128


def record(user_id, vector, user_type=UserType.STUDENT):
    return FaceDescriptor(
        id=f"{user_id}-1",
        user_id=user_id,
        user_type=user_type,
        descriptor=np.asarray(vector, dtype=np.float64),
        timestamp=0,
    )


def axis(value, index=0):
    vector = np.zeros(DIM)
    vector[index] = value
    return vector


def test_distance_on_threshold_matches():
    matcher = FaceMatcher(threshold=0.6)
    result = matcher.match(np.zeros(DIM), [record("42", axis(0.6))])
    assert result is not None
    assert result.user_id == "42"
    assert result.distance == 0.6


def test_distance_over_threshold_does_not_match():
    matcher = FaceMatcher(threshold=0.6)
    assert matcher.match(np.zeros(DIM), [record("42", axis(0.6000001))]) is None
    assert matcher.nearest(np.zeros(DIM), [record("42", axis(0.6000001))]) is not None


def test_empty_enrolled_set_never_matches():
    matcher = FaceMatcher()
    assert matcher.match(np.zeros(DIM), []) is None
    assert matcher.nearest(np.ones(DIM), []) is None


def test_nearest_identity_wins():
    matcher = FaceMatcher(threshold=0.6)
    enrolled = [record("A", axis(0.1)), record("B", axis(0.5, index=1))]
    result = matcher.match(axis(0.15), enrolled)
    assert result.user_id == "A"
    assert result.distance == pytest.approx(0.05)


def test_two_identities_and_midpoint():
    matcher = FaceMatcher(threshold=0.6)
    a, b = np.zeros(DIM), axis(0.9)
    enrolled = [record("A", a), record("B", b, UserType.EMPLOYEE)]

    exact = matcher.match(b, enrolled)
    assert (exact.user_id, exact.user_type, exact.distance) == ("B", UserType.EMPLOYEE, 0.0)

    midpoint = matcher.match(axis(0.45), enrolled)
    assert midpoint is not None
    assert midpoint.user_id in {"A", "B"}
    assert midpoint.distance == pytest.approx(0.45)


def test_mismatched_dimensions_are_skipped():
    matcher = FaceMatcher()
    enrolled = [record("old", np.zeros(DIM)), record("new", np.zeros(512))]
    result = matcher.match(np.zeros(512), enrolled)
    assert result.user_id == "new"


def test_confidence_curve():
    assert confidence_from_distance(0.0) == 1.0
    assert confidence_from_distance(0.6) == 0.0
    assert confidence_from_distance(0.3) == pytest.approx(0.5)
    assert confidence_from_distance(0.9) == 0.0

    samples = [confidence_from_distance(d) for d in np.linspace(0.0, 0.6, 13)]
    assert all(later < earlier for earlier, later in zip(samples, samples[1:]))
