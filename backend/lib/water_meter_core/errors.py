# backend/lib/water_meter_core/errors.py
"""
Error taxonomy for the meter tracker core.

Store-level errors (StoreError and its subclasses) are raised by the entity
stores and translated at the assignment manager / ingestion boundary. The
HTTP layer only ever sees the domain errors below them.
"""
from typing import Optional


class MeterTrackerError(Exception):
    """Base class for every error raised by the core."""


# -----------------------------------------------------------------------------
# Store level
# -----------------------------------------------------------------------------

class StoreError(MeterTrackerError):
    """The store is unavailable or rejected a write."""


class VersionConflict(StoreError):
    """A conditional write lost against a concurrent writer."""

    def __init__(self, kind: str, key: str, expected_version: Optional[int]):
        self.kind = kind
        self.key = key
        self.expected_version = expected_version
        super().__init__(f"{kind} {key} changed since version {expected_version}")


class RecordNotFound(StoreError):
    """A conditional write targeted a record that no longer exists."""


# -----------------------------------------------------------------------------
# Domain level
# -----------------------------------------------------------------------------

class MalformedInput(MeterTrackerError):
    """A telemetry report could not be parsed into a device context."""


class UnknownDevice(MeterTrackerError):
    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Device {ref} not registered in system.")


class UnknownUser(MeterTrackerError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found.")


class InvalidAssignee(MeterTrackerError):
    """Target user is missing or is not a customer."""

    def __init__(self, user_id: Optional[str], reason: str):
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Cannot assign devices to user {user_id}: {reason}")


class PersistenceFailure(MeterTrackerError):
    """A write failed after retry; the operation must be treated as not applied."""


class ConsistencyRepairNeeded(MeterTrackerError):
    """Owner pointer and owned-device set disagree for a device."""

    def __init__(self, device_id: str, pointer_owner: Optional[str], set_owners):
        self.device_id = device_id
        self.pointer_owner = pointer_owner
        self.set_owners = sorted(set_owners)
        super().__init__(
            f"Device {device_id} points to {pointer_owner} "
            f"but is listed by {self.set_owners or 'no user'}"
        )

    def to_dict(self):
        return {
            "device_id": self.device_id,
            "pointer_owner": self.pointer_owner,
            "set_owners": self.set_owners,
        }


class DuplicateMeterId(MeterTrackerError):
    def __init__(self, meter_id: str):
        self.meter_id = meter_id
        super().__init__(f"Device with Meter ID {meter_id} already exists")


class DuplicateEmail(MeterTrackerError):
    def __init__(self, email: str):
        self.email = email
        super().__init__(f"User already exists with email {email}")


class ImmutableField(MeterTrackerError):
    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"{field_name} cannot be changed once assigned")
