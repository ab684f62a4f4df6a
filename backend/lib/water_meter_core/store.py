# backend/lib/water_meter_core/store.py
"""
Entity store interface and the local in-memory implementation.

Every store offers atomic single-record reads and writes plus a conditional
write: put_device / put_user take the version the caller read and only write
if the stored record still carries it. expected_version=None means "create,
must not exist yet". The stored copy gets version + 1.

MemoryStore is the local fallback used when DynamoDB is disabled, and by the
tests. DynamoDBService (backend/lib/dynamodb_service.py) is the cloud one.
"""
import copy
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .errors import RecordNotFound, VersionConflict
from .models import CommandLog, Device, UsageReading, User, utcnow


class EntityStore(ABC):

    # -- devices --------------------------------------------------------------

    @abstractmethod
    def get_device(self, device_id: str) -> Optional[Device]:
        ...

    @abstractmethod
    def find_device_by_meter(self, meter_id: str) -> Optional[Device]:
        ...

    @abstractmethod
    def list_devices(self) -> List[Device]:
        ...

    @abstractmethod
    def put_device(self, device: Device, expected_version: Optional[int]) -> Device:
        ...

    @abstractmethod
    def delete_device(self, device_id: str) -> None:
        ...

    # -- users ----------------------------------------------------------------

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    def find_user_by_email(self, email: str) -> Optional[User]:
        ...

    @abstractmethod
    def list_users(self) -> List[User]:
        ...

    @abstractmethod
    def put_user(self, user: User, expected_version: Optional[int]) -> User:
        ...

    @abstractmethod
    def delete_user(self, user_id: str) -> None:
        ...

    # -- append-only history ----------------------------------------------------

    @abstractmethod
    def append_reading(self, reading: UsageReading) -> None:
        ...

    @abstractmethod
    def readings_for_device(self, device_id: str) -> List[UsageReading]:
        """Readings of one device, oldest first."""

    @abstractmethod
    def append_command_log(self, log: CommandLog) -> None:
        ...

    @abstractmethod
    def command_logs(self, meter_id: Optional[str] = None) -> List[CommandLog]:
        """Audit records, newest first, optionally for a single meter."""


def _check_version(kind: str, key: str, current, expected_version: Optional[int]):
    if expected_version is None:
        if current is not None:
            raise VersionConflict(kind, key, None)
        return
    if current is None:
        raise RecordNotFound(f"{kind} {key} does not exist")
    if current.version != expected_version:
        raise VersionConflict(kind, key, expected_version)


class MemoryStore(EntityStore):
    """Thread-safe in-process store. Records are copied on the way in and out."""

    def __init__(self):
        self._lock = threading.Lock()
        self._devices: Dict[str, Device] = {}
        self._users: Dict[str, User] = {}
        self._readings: List[UsageReading] = []
        self._logs: List[CommandLog] = []

    def get_device(self, device_id):
        with self._lock:
            return copy.deepcopy(self._devices.get(device_id))

    def find_device_by_meter(self, meter_id):
        with self._lock:
            for device in self._devices.values():
                if device.meter_id == meter_id:
                    return copy.deepcopy(device)
        return None

    def list_devices(self):
        with self._lock:
            return [copy.deepcopy(d) for d in self._devices.values()]

    def put_device(self, device, expected_version):
        with self._lock:
            _check_version("Device", device.device_id,
                           self._devices.get(device.device_id), expected_version)
            stored = copy.deepcopy(device)
            stored.version = (expected_version or 0) + 1
            stored.updated_at = utcnow()
            self._devices[stored.device_id] = stored
            return copy.deepcopy(stored)

    def delete_device(self, device_id):
        with self._lock:
            self._devices.pop(device_id, None)

    def get_user(self, user_id):
        with self._lock:
            return copy.deepcopy(self._users.get(user_id))

    def find_user_by_email(self, email):
        email = email.strip().lower()
        with self._lock:
            for user in self._users.values():
                if user.email == email:
                    return copy.deepcopy(user)
        return None

    def list_users(self):
        with self._lock:
            return [copy.deepcopy(u) for u in self._users.values()]

    def put_user(self, user, expected_version):
        with self._lock:
            _check_version("User", user.user_id,
                           self._users.get(user.user_id), expected_version)
            stored = copy.deepcopy(user)
            stored.version = (expected_version or 0) + 1
            self._users[stored.user_id] = stored
            return copy.deepcopy(stored)

    def delete_user(self, user_id):
        with self._lock:
            self._users.pop(user_id, None)

    def append_reading(self, reading):
        with self._lock:
            self._readings.append(reading)

    def readings_for_device(self, device_id):
        with self._lock:
            readings = [r for r in self._readings if r.device_id == device_id]
        return sorted(readings, key=lambda r: r.timestamp)

    def append_command_log(self, log):
        with self._lock:
            self._logs.append(log)

    def command_logs(self, meter_id=None):
        with self._lock:
            logs = [l for l in self._logs if meter_id is None or l.meter_id == meter_id]
        return sorted(logs, key=lambda l: l.timestamp, reverse=True)
