# backend/lib/water_meter_core/models.py
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Short prefixed identifier, e.g. 'DEV-3f9c1a7b2e'."""
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def as_utc(ts: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


class DeviceStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    PENDING_INSTALLATION = "pending_installation"
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


class UserRole(str, Enum):
    CUSTOMER = "customer"
    TECHNICIAN = "technician"
    ADMIN = "admin"


class ReadingSource(str, Enum):
    METER_INGRESS = "meter_ingress"
    MANUAL_ENTRY = "manual_entry"
    INITIALIZATION = "initialization"
    BILLING_PROCESS = "billing_process"


class CommandStatus(str, Enum):
    """Audit status written to every CommandLog record."""
    PARSE_ERROR = "parse_error"
    PARSE_EXCEPTION = "parse_exception"
    DEVICE_NOT_FOUND = "device_not_found"
    DB_ERROR = "db_error"
    SUCCESS_PING = "success_ping"
    SUCCESS_UPDATED = "success_updated"


@dataclass
class Device:
    meter_id: str
    device_id: str = field(default_factory=lambda: new_id("DEV"))
    status: DeviceStatus = DeviceStatus.UNINITIALIZED
    current_volume: float = 0.0
    initialization_volume: float = 0.0
    battery_voltage: str = "N/A"
    network_strength: str = "N/A"
    owner_id: Optional[str] = None
    last_seen: Optional[datetime] = None
    notes: Optional[str] = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["last_seen"] = _iso(self.last_seen)
        data["created_at"] = _iso(self.created_at)
        data["updated_at"] = _iso(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Device":
        return cls(
            meter_id=data["meter_id"],
            device_id=data["device_id"],
            status=DeviceStatus(data.get("status", DeviceStatus.UNINITIALIZED.value)),
            current_volume=float(data.get("current_volume", 0)),
            initialization_volume=float(data.get("initialization_volume", 0)),
            battery_voltage=data.get("battery_voltage", "N/A"),
            network_strength=data.get("network_strength", "N/A"),
            owner_id=data.get("owner_id"),
            last_seen=_parse_ts(data.get("last_seen")),
            notes=data.get("notes"),
            version=int(data.get("version", 0)),
            created_at=_parse_ts(data.get("created_at")) or utcnow(),
            updated_at=_parse_ts(data.get("updated_at")) or utcnow(),
        )


@dataclass
class User:
    name: str
    email: str
    role: UserRole
    user_id: str = field(default_factory=lambda: new_id("USR"))
    owned_device_ids: Set[str] = field(default_factory=set)
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.email = self.email.strip().lower()

    @property
    def is_customer(self) -> bool:
        return self.role == UserRole.CUSTOMER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "owned_device_ids": sorted(self.owned_device_ids),
            "version": self.version,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            name=data["name"],
            email=data["email"],
            role=UserRole(data["role"]),
            user_id=data["user_id"],
            owned_device_ids=set(data.get("owned_device_ids") or []),
            version=int(data.get("version", 0)),
            created_at=_parse_ts(data.get("created_at")) or utcnow(),
        )


@dataclass(frozen=True)
class UsageReading:
    device_id: str
    meter_id: str
    volume: float
    timestamp: datetime = field(default_factory=utcnow)
    source: ReadingSource = ReadingSource.METER_INGRESS
    reading_id: str = field(default_factory=lambda: new_id("RDG"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reading_id": self.reading_id,
            "device_id": self.device_id,
            "meter_id": self.meter_id,
            "volume": self.volume,
            "timestamp": _iso(self.timestamp),
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageReading":
        return cls(
            device_id=data["device_id"],
            meter_id=data["meter_id"],
            volume=float(data["volume"]),
            timestamp=_parse_ts(data["timestamp"]),
            source=ReadingSource(data.get("source", ReadingSource.METER_INGRESS.value)),
            reading_id=data["reading_id"],
        )


@dataclass(frozen=True)
class CommandLog:
    raw_command: str
    status: CommandStatus
    response: str
    meter_id: Optional[str] = None
    command_type: str = "DATA_UPLOAD"
    parameters: Dict[str, str] = field(default_factory=dict)
    technician_id: Optional[str] = None
    flags: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)
    log_id: str = field(default_factory=lambda: new_id("LOG"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "log_id": self.log_id,
            "meter_id": self.meter_id,
            "command_type": self.command_type,
            "raw_command": self.raw_command,
            "parameters": dict(self.parameters),
            "status": self.status.value,
            "response": self.response,
            "technician_id": self.technician_id,
            "flags": list(self.flags),
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandLog":
        return cls(
            raw_command=data["raw_command"],
            status=CommandStatus(data["status"]),
            response=data.get("response", ""),
            meter_id=data.get("meter_id"),
            command_type=data.get("command_type", "DATA_UPLOAD"),
            parameters=dict(data.get("parameters") or {}),
            technician_id=data.get("technician_id"),
            flags=list(data.get("flags") or []),
            timestamp=_parse_ts(data["timestamp"]),
            log_id=data["log_id"],
        )
