import pytest

from conftest import LOS_ANGELES, NYC, NYC_NEARBY
from presence import proximity
from presence.errors import ClassLocationMissing
from presence.geo import distance


def test_nearby_claim_is_accepted_with_default_tolerance():
    result = proximity.verify(NYC_NEARBY, NYC)
    assert result.accepted
    assert result.tolerance_meters == 50.0
    assert result.message() == "Location verified successfully"


def test_far_claim_is_rejected_with_rounded_message():
    result = proximity.verify(LOS_ANGELES, NYC)
    assert not result.accepted
    assert result.distance > 3_900_000
    assert f"{round(result.distance)}m away" in result.message()
    assert "within 50m" in result.message()


def test_tolerance_is_inclusive_on_unrounded_distance():
    exact = distance(NYC_NEARBY, NYC)
    assert proximity.verify(NYC_NEARBY, NYC, tolerance_meters=exact).accepted
    assert not proximity.verify(NYC_NEARBY, NYC, tolerance_meters=exact - 1e-6).accepted


def test_missing_reference_is_a_system_fault():
    with pytest.raises(ClassLocationMissing) as exc:
        proximity.verify(NYC, None)
    assert exc.value.status_code == 500
