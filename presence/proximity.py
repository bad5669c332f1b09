from dataclasses import dataclass
from typing import Any, Optional

from presence.config import settings
from presence.errors import ClassLocationMissing
from presence.geo import distance


@dataclass(frozen=True)
class ProximityResult:
    accepted: bool
    distance: float
    tolerance_meters: float

    def message(self) -> str:
        if self.accepted:
            return "Location verified successfully"
        return (
            f"You are {round(self.distance)}m away from the classroom. "
            f"You must be within {self.tolerance_meters:g}m to mark attendance."
        )


def verify(claimed: Any, reference: Any, tolerance_meters: Optional[float] = None) -> ProximityResult:
    """Accept the claim iff it lies within the tolerance radius (inclusive).

    The tolerance absorbs consumer GPS error; it is a usability threshold and
    says nothing about whether the claimed position is genuine.
    """
    if reference is None:
        raise ClassLocationMissing()
    if tolerance_meters is None:
        tolerance_meters = settings.PROXIMITY_TOLERANCE_METERS

    measured = distance(claimed, reference)
    return ProximityResult(
        accepted=measured <= tolerance_meters,
        distance=measured,
        tolerance_meters=tolerance_meters,
    )
