# backend/lib/water_meter_core/parser.py
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

DEVICE_ID_KEY = "MTRID"


def _to_volume(value: str) -> float:
    volume = float(value)
    if not math.isfinite(volume):
        raise ValueError(f"volume must be finite, got {value!r}")
    return volume


class TelemetryField(Enum):
    """Closed set of fields a meter report can update.

    Each member carries its wire key, the name used in the structured result
    and the converter applied to the raw value.
    """

    VOLUME = ("VOL", "volume", _to_volume)
    BATTERY = ("BATT", "battery", str)
    SIGNAL = ("SIG", "signal", str)

    def __init__(self, key: str, field_name: str, convert: Callable[[str], Any]):
        self.key = key
        self.field_name = field_name
        self.convert = convert

    @classmethod
    def for_key(cls, key: str) -> Optional["TelemetryField"]:
        return _FIELDS_BY_KEY.get(key)


_FIELDS_BY_KEY = {f.key: f for f in TelemetryField}


class ParseOutcome(str, Enum):
    MISSING_DEVICE_ID = "MissingDeviceId"
    NO_UPDATABLE_FIELDS = "NoUpdatableFields"
    PARSED = "Parsed"
    PARSE_EXCEPTION = "ParseException"


@dataclass
class ParsedReport:
    raw: Any
    outcome: ParseOutcome
    meter_id: Optional[str] = None
    updates: Dict[TelemetryField, Any] = field(default_factory=dict)
    parameters: Dict[str, str] = field(default_factory=dict)
    unrecognized: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def fields(self) -> Dict[str, Any]:
        """Updates keyed by field name, e.g. {'volume': 120.5, 'battery': '3.7V'}."""
        return {f.field_name: v for f, v in self.updates.items()}

    @property
    def volume(self) -> Optional[float]:
        return self.updates.get(TelemetryField.VOLUME)


def parse_report(data_string: Any) -> ParsedReport:
    """
    Parse a meter status string of the form KEY:value;KEY:value;...

    Keys are case-insensitive, order and count are free, MTRID is required.
    Never raises: unexpected failures are reported as PARSE_EXCEPTION.
    """
    meter_id = None
    updates: Dict[TelemetryField, Any] = {}
    parameters: Dict[str, str] = {}
    unrecognized: List[str] = []

    try:
        for segment in data_string.strip().split(";"):
            if ":" not in segment:
                continue
            key, value = segment.split(":", 1)
            key = key.strip().upper()
            value = value.strip()
            if not key:
                continue
            parameters[key] = value

            if key == DEVICE_ID_KEY:
                meter_id = value or None
                continue

            telemetry_field = TelemetryField.for_key(key)
            if telemetry_field is None:
                if key not in unrecognized:
                    unrecognized.append(key)
                continue
            try:
                updates[telemetry_field] = telemetry_field.convert(value)
            except ValueError:
                # kept in parameters for the audit log, no update
                updates.pop(telemetry_field, None)
    except Exception as e:
        return ParsedReport(
            raw=data_string,
            outcome=ParseOutcome.PARSE_EXCEPTION,
            meter_id=meter_id,
            parameters=parameters,
            error=f"{type(e).__name__}: {e}",
        )

    if meter_id is None:
        outcome = ParseOutcome.MISSING_DEVICE_ID
    elif not updates:
        outcome = ParseOutcome.NO_UPDATABLE_FIELDS
    else:
        outcome = ParseOutcome.PARSED

    return ParsedReport(
        raw=data_string,
        outcome=outcome,
        meter_id=meter_id,
        updates=updates,
        parameters=parameters,
        unrecognized=unrecognized,
    )
