# backend/lib/water_meter_core/processor.py
from dataclasses import dataclass
from typing import Dict, List, Optional

from .models import UsageReading

NEGATIVE_CONSUMPTION = "negative_consumption"


@dataclass
class ConsumptionDelta:
    reading: UsageReading
    previous_volume: Optional[float]
    consumption: Optional[float]

    @property
    def is_negative(self) -> bool:
        return self.consumption is not None and self.consumption < 0

    def to_dict(self) -> Dict:
        data = self.reading.to_dict()
        data["previous_volume"] = self.previous_volume
        data["consumption"] = self.consumption
        data["flags"] = [NEGATIVE_CONSUMPTION] if self.is_negative else []
        return data


def is_negative_consumption(previous_volume: Optional[float], new_volume: float) -> bool:
    return previous_volume is not None and new_volume < previous_volume


class ConsumptionAnalyzer:
    def __init__(self, readings: List[UsageReading]):
        # Ensure readings are sorted by timestamp
        self.readings = sorted(readings, key=lambda r: (r.device_id, r.timestamp))

    def deltas(self) -> List[ConsumptionDelta]:
        """
        Consumption between consecutive absolute readings of the same device.

        The first reading of a device has no previous value. Negative values
        are kept as reported and flagged, never corrected.
        """
        result = []
        previous: Dict[str, float] = {}
        for r in self.readings:
            prev = previous.get(r.device_id)
            consumption = round(r.volume - prev, 6) if prev is not None else None
            result.append(ConsumptionDelta(r, prev, consumption))
            previous[r.device_id] = r.volume
        return result

    def negative_consumption(self) -> List[ConsumptionDelta]:
        return [d for d in self.deltas() if d.is_negative]
