# backend/lib/water_meter_core/ingestion.py
"""
Telemetry ingestion pipeline.

    Received -> parse -> lookup -> apply -> {Rejected | Acknowledged | Updated}

Every report ends in exactly one terminal state and exactly one CommandLog
record. Parse, lookup and store failures become Rejected results; nothing in
here raises to the caller.

When a volume is reported the UsageReading is appended before the device is
written, so a crash can leave a reading the device does not reflect yet but
never a device volume without its history entry.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from .command_log import CommandLogWriter
from .errors import PersistenceFailure, RecordNotFound, StoreError, UnknownDevice, VersionConflict
from .models import (
    CommandLog,
    CommandStatus,
    Device,
    ReadingSource,
    UsageReading,
    as_utc,
    utcnow,
)
from .parser import ParseOutcome, ParsedReport, TelemetryField, parse_report
from .processor import NEGATIVE_CONSUMPTION, is_negative_consumption
from .store import EntityStore

logger = logging.getLogger(__name__)

DEVICE_ATTRIBUTES = {
    TelemetryField.VOLUME: "current_volume",
    TelemetryField.BATTERY: "battery_voltage",
    TelemetryField.SIGNAL: "network_strength",
}


class TerminalState(str, Enum):
    REJECTED = "Rejected"
    ACKNOWLEDGED = "Acknowledged"
    UPDATED = "Updated"


class RejectionReason(str, Enum):
    MALFORMED_INPUT = "MalformedInput"
    UNKNOWN_DEVICE = "UnknownDevice"
    PERSISTENCE_FAILURE = "PersistenceFailure"


_HTTP_STATUS = {
    RejectionReason.MALFORMED_INPUT: 400,
    RejectionReason.UNKNOWN_DEVICE: 404,
    RejectionReason.PERSISTENCE_FAILURE: 500,
}


@dataclass
class IngestionResult:
    state: TerminalState
    log: CommandLog
    report: ParsedReport
    reason: Optional[RejectionReason] = None
    device: Optional[Device] = None
    reading: Optional[UsageReading] = None

    @property
    def meter_id(self) -> Optional[str]:
        return self.report.meter_id

    @property
    def response(self) -> str:
        return self.log.response

    @property
    def http_status(self) -> int:
        if self.state == TerminalState.REJECTED:
            return _HTTP_STATUS[self.reason]
        return 200

    def to_dict(self):
        return {
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "meter_id": self.meter_id,
            "response": self.response,
            "flags": list(self.log.flags),
            "log_id": self.log.log_id,
        }


class IngestionPipeline:
    def __init__(self, store: EntityStore, alerts=None,
                 clock: Callable[[], datetime] = utcnow, max_attempts: int = 5):
        self.store = store
        self.alerts = alerts
        self.clock = clock
        self.max_attempts = max_attempts
        self.audit = CommandLogWriter(store)

    def ingest(self, raw, technician_id: Optional[str] = None) -> IngestionResult:
        report = parse_report(raw)

        if report.outcome == ParseOutcome.MISSING_DEVICE_ID:
            logger.warning("Parse error, Meter ID missing: %r", raw)
            return self._reject(report, RejectionReason.MALFORMED_INPUT, CommandStatus.PARSE_ERROR,
                                "Meter ID not found in data string.", technician_id)
        if report.outcome == ParseOutcome.PARSE_EXCEPTION:
            logger.error("Exception while parsing %r: %s", raw, report.error)
            return self._reject(report, RejectionReason.MALFORMED_INPUT, CommandStatus.PARSE_EXCEPTION,
                                f"Exception during parsing: {report.error}", technician_id)

        meter_id = report.meter_id
        try:
            device = self.store.find_device_by_meter(meter_id)
            if device is None:
                message = f"Device with Meter ID {meter_id} not registered in system."
                logger.warning(message)
                return self._reject(report, RejectionReason.UNKNOWN_DEVICE,
                                    CommandStatus.DEVICE_NOT_FOUND, message, technician_id)

            now = self.clock()
            if report.updates:
                return self._update(report, device, now, technician_id)
            return self._acknowledge(report, device, now, technician_id)
        except (StoreError, PersistenceFailure) as e:
            logger.error("Database error for %s while ingesting %r: %s", meter_id, raw, e)
            return self._reject(report, RejectionReason.PERSISTENCE_FAILURE, CommandStatus.DB_ERROR,
                                f"Error processing data for {meter_id}: {e}", technician_id)
        except UnknownDevice as e:
            logger.warning("Device for %s disappeared during ingestion", meter_id)
            return self._reject(report, RejectionReason.UNKNOWN_DEVICE,
                                CommandStatus.DEVICE_NOT_FOUND, str(e), technician_id)

    # -------------------------------------------------------------------------
    # terminal states
    # -------------------------------------------------------------------------

    def _update(self, report, device, now, technician_id) -> IngestionResult:
        volume = report.volume
        reading = None
        if volume is not None:
            reading = UsageReading(device_id=device.device_id, meter_id=device.meter_id,
                                   volume=volume, timestamp=now,
                                   source=ReadingSource.METER_INGRESS)
            self.store.append_reading(reading)
            logger.info("Saved new UsageReading for %s: %s", device.meter_id, volume)

        flags: List[str] = []
        previous = {}

        def apply(d):
            flags.clear()
            previous["volume"] = d.current_volume
            if volume is not None and is_negative_consumption(d.current_volume, volume):
                flags.append(NEGATIVE_CONSUMPTION)
            for telemetry_field, value in report.updates.items():
                setattr(d, DEVICE_ATTRIBUTES[telemetry_field], value)
            d.last_seen = now
            return True

        updated = self._update_device(device.device_id, apply)
        if flags:
            self._flag_negative(device.meter_id, previous["volume"], volume)

        log = self._log(report, CommandStatus.SUCCESS_UPDATED,
                        f"Device {device.meter_id} updated successfully.", technician_id, flags, now)
        logger.info("Device %s updated with %s", device.meter_id, report.fields)
        return IngestionResult(TerminalState.UPDATED, log, report, device=updated, reading=reading)

    def _acknowledge(self, report, device, now, technician_id) -> IngestionResult:
        def touch(d):
            d.last_seen = now
            return True

        updated = self._update_device(device.device_id, touch)
        log = self._log(report, CommandStatus.SUCCESS_PING,
                        f"Device {device.meter_id} acknowledged (ping or no new data).",
                        technician_id, [], now)
        logger.info("Device %s acknowledged", device.meter_id)
        return IngestionResult(TerminalState.ACKNOWLEDGED, log, report, device=updated)

    def _reject(self, report, reason, status, message, technician_id) -> IngestionResult:
        log = self._log(report, status, message, technician_id, [], self.clock())
        return IngestionResult(TerminalState.REJECTED, log, report, reason=reason)

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------

    def _log(self, report, status, message, technician_id, flags, timestamp) -> CommandLog:
        raw = report.raw if isinstance(report.raw, str) else repr(report.raw)
        log = CommandLog(
            raw_command=raw,
            status=status,
            response=message,
            meter_id=report.meter_id,
            parameters=dict(report.parameters),
            technician_id=technician_id,
            flags=list(flags),
            timestamp=timestamp,
        )
        self.audit.record(log)
        return log

    def _update_device(self, device_id: str, mutate) -> Device:
        """Conditional read-modify-write; a lost race re-reads and re-applies."""
        for _ in range(self.max_attempts):
            device = self.store.get_device(device_id)
            if device is None:
                raise UnknownDevice(device_id)
            expected = device.version
            mutate(device)
            try:
                return self.store.put_device(device, expected)
            except VersionConflict:
                logger.debug("Device %s changed concurrently, retrying", device_id)
            except RecordNotFound:
                raise UnknownDevice(device_id)
        raise PersistenceFailure(f"device {device_id} kept changing, gave up after "
                                 f"{self.max_attempts} attempts")

    def _flag_negative(self, meter_id: str, previous: float, new: float) -> None:
        logger.warning("Negative consumption on %s: %s -> %s (recorded as reported)",
                       meter_id, previous, new)
        if self.alerts is not None:
            self.alerts.send_negative_consumption_alert(meter_id, previous, new)

    # -------------------------------------------------------------------------
    # manual entry
    # -------------------------------------------------------------------------

    def record_manual_reading(self, device_id: str, volume: float,
                              timestamp: Optional[datetime] = None) -> UsageReading:
        """Append a manual_entry reading and move the device volume to it."""
        device = self.store.get_device(device_id)
        if device is None:
            raise UnknownDevice(device_id)
        volume = float(volume)
        # readings are ordered against ingestion timestamps, which are UTC-aware
        timestamp = as_utc(timestamp) if timestamp else self.clock()
        reading = UsageReading(device_id=device.device_id, meter_id=device.meter_id,
                               volume=volume, timestamp=timestamp,
                               source=ReadingSource.MANUAL_ENTRY)
        try:
            self.store.append_reading(reading)
            previous = {}

            def apply(d):
                previous["volume"] = d.current_volume
                d.current_volume = volume
                return True

            self._update_device(device_id, apply)
        except StoreError as e:
            raise PersistenceFailure(f"manual reading for {device.meter_id} failed: {e}") from e

        if is_negative_consumption(previous["volume"], volume):
            self._flag_negative(device.meter_id, previous["volume"], volume)
        logger.info("Manual reading for %s: %s", device.meter_id, volume)
        return reading
