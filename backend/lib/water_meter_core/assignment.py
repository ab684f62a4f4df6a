# backend/lib/water_meter_core/assignment.py
"""
Assignment consistency manager.

Owns the edge between Device.owner_id and User.owned_device_ids. Nothing else
in the code base writes either side of it.

Write order for a single device: the owner pointer is written first, then the
owned-device sets. If the process dies in between, the pointer is the truth
and reconcile() rebuilds every owned set from the pointers.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from .errors import (
    ConsistencyRepairNeeded,
    DuplicateEmail,
    DuplicateMeterId,
    ImmutableField,
    InvalidAssignee,
    MalformedInput,
    PersistenceFailure,
    RecordNotFound,
    StoreError,
    UnknownDevice,
    UnknownUser,
    VersionConflict,
)
from .models import Device, DeviceStatus, User, UserRole
from .store import EntityStore

logger = logging.getLogger(__name__)

_UNSET = object()

UPDATABLE_DEVICE_FIELDS = (
    "status",
    "notes",
    "battery_voltage",
    "network_strength",
    "current_volume",
    "initialization_volume",
)


@dataclass
class ReconciliationReport:
    devices_scanned: int = 0
    users_scanned: int = 0
    users_repaired: List[str] = field(default_factory=list)
    devices_detached: List[str] = field(default_factory=list)
    divergences: List[ConsistencyRepairNeeded] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "devices_scanned": self.devices_scanned,
            "users_scanned": self.users_scanned,
            "users_repaired": self.users_repaired,
            "devices_detached": self.devices_detached,
            "divergences": [d.to_dict() for d in self.divergences],
        }


class AssignmentManager:
    def __init__(self, store: EntityStore, alerts=None, max_attempts: int = 5):
        self.store = store
        self.alerts = alerts
        self.max_attempts = max_attempts

    # =========================================================================
    # Store boundary
    # =========================================================================

    def _with_retry(self, action: str, fn: Callable, *args):
        """Run one store call, retrying once on a store error.

        Version conflicts and missing records are not failures of the store
        and go straight back to the caller.
        """
        try:
            return fn(*args)
        except (VersionConflict, RecordNotFound):
            raise
        except StoreError as e:
            logger.warning("%s failed (%s), retrying once", action, e)
        try:
            return fn(*args)
        except (VersionConflict, RecordNotFound):
            raise
        except StoreError as e:
            logger.error("%s failed after retry: %s", action, e)
            raise PersistenceFailure(f"{action} failed: {e}") from e

    def _update_device(self, device_id: str, mutate: Callable[[Device], bool]) -> Optional[Device]:
        """Read-modify-write a device with a conditional write.

        mutate() edits the record in place and returns False when nothing
        needs writing. Returns the stored device, or None if it is gone.
        """
        for _ in range(self.max_attempts):
            device = self._with_retry(f"read device {device_id}", self.store.get_device, device_id)
            if device is None:
                return None
            expected = device.version
            if not mutate(device):
                return device
            try:
                return self._with_retry(f"write device {device_id}",
                                        self.store.put_device, device, expected)
            except VersionConflict:
                logger.debug("device %s changed under us, re-reading", device_id)
            except RecordNotFound:
                return None
        raise PersistenceFailure(f"device {device_id} kept changing, gave up after "
                                 f"{self.max_attempts} attempts")

    def _update_user(self, user_id: str, mutate: Callable[[User], bool]) -> Optional[User]:
        for _ in range(self.max_attempts):
            user = self._with_retry(f"read user {user_id}", self.store.get_user, user_id)
            if user is None:
                return None
            expected = user.version
            if not mutate(user):
                return user
            try:
                return self._with_retry(f"write user {user_id}",
                                        self.store.put_user, user, expected)
            except VersionConflict:
                logger.debug("user %s changed under us, re-reading", user_id)
            except RecordNotFound:
                return None
        raise PersistenceFailure(f"user {user_id} kept changing, gave up after "
                                 f"{self.max_attempts} attempts")

    def _get_device(self, device_id: str) -> Device:
        device = self._with_retry(f"read device {device_id}", self.store.get_device, device_id)
        if device is None:
            raise UnknownDevice(device_id)
        return device

    def _get_user(self, user_id: str) -> User:
        user = self._with_retry(f"read user {user_id}", self.store.get_user, user_id)
        if user is None:
            raise UnknownUser(user_id)
        return user

    def _get_customer(self, user_id: str) -> User:
        user = self._with_retry(f"read user {user_id}", self.store.get_user, user_id)
        if user is None:
            raise InvalidAssignee(user_id, "user does not exist")
        if not user.is_customer:
            raise InvalidAssignee(user_id, f"role is {user.role.value}, not customer")
        return user

    def _add_to_set(self, user_id: str, device_id: str) -> Optional[User]:
        def add(user):
            if device_id in user.owned_device_ids:
                return False
            user.owned_device_ids.add(device_id)
            return True
        return self._update_user(user_id, add)

    def _remove_from_set(self, user_id: str, device_id: str) -> Optional[User]:
        def discard(user):
            if device_id not in user.owned_device_ids:
                return False
            user.owned_device_ids.discard(device_id)
            return True
        return self._update_user(user_id, discard)

    # =========================================================================
    # Single device
    # =========================================================================

    def reassign(self, device_id: str, new_owner_id: Optional[str]) -> Device:
        """
        Point a device at new_owner_id (a customer) or detach it (None).

        A device held by another user is taken from them. Raises UnknownDevice,
        InvalidAssignee (nothing written) or PersistenceFailure.
        """
        device = self._get_device(device_id)
        old_owner = device.owner_id

        if new_owner_id == old_owner:
            if new_owner_id is not None:
                # a stale pointer to a non-customer is left for reconcile() to detach
                self._get_customer(new_owner_id)
                # heal a missing set entry left by an interrupted reassignment
                self._add_to_set(new_owner_id, device_id)
            return device

        if new_owner_id is not None:
            self._get_customer(new_owner_id)

        seen_owners = {old_owner}

        def point(d):
            seen_owners.add(d.owner_id)
            if d.owner_id == new_owner_id:
                return False
            d.owner_id = new_owner_id
            return True

        updated = self._update_device(device_id, point)
        if updated is None:
            raise UnknownDevice(device_id)

        for former in sorted(o for o in seen_owners if o and o != new_owner_id):
            logger.info("Unassigning device %s from user %s", device_id, former)
            self._remove_from_set(former, device_id)

        if new_owner_id is not None:
            logger.info("Assigning device %s to user %s", device_id, new_owner_id)
            if self._add_to_set(new_owner_id, device_id) is None:
                logger.warning("User %s vanished while device %s was being assigned; "
                               "reconciliation will detach the pointer", new_owner_id, device_id)
        return updated

    def unassign(self, device_id: str) -> Device:
        return self.reassign(device_id, None)

    # =========================================================================
    # Bulk
    # =========================================================================

    def set_owned_devices(self, user_id: str, device_ids: Iterable[str]) -> User:
        """
        Make the user's owned set equal device_ids.

        Devices held by other users are taken from them; unknown ids are
        skipped. Each device is handled independently, so order is irrelevant.
        """
        user = self._get_user(user_id)
        desired = set(device_ids)
        if desired and not user.is_customer:
            raise InvalidAssignee(user_id, f"role is {user.role.value}, not customer")

        known = set()
        for device_id in sorted(desired):
            if self._with_retry(f"read device {device_id}", self.store.get_device, device_id) is None:
                logger.warning("Skipping unknown device %s for user %s", device_id, user_id)
                continue
            known.add(device_id)

        to_remove = user.owned_device_ids - known
        to_add = known - user.owned_device_ids

        for device_id in sorted(to_remove):
            self._release(user_id, device_id)
        for device_id in sorted(to_add):
            self.reassign(device_id, user_id)

        return self._get_user(user_id)

    def _release(self, user_id: str, device_id: str) -> None:
        """Drop device_id from user_id, detaching the pointer if it is theirs."""
        device = self._with_retry(f"read device {device_id}", self.store.get_device, device_id)
        if device is not None and device.owner_id == user_id:
            self.reassign(device_id, None)
        else:
            self._remove_from_set(user_id, device_id)

    # =========================================================================
    # Administrative surface
    # =========================================================================

    def create_device(self, meter_id: str, owner_id: Optional[str] = None,
                      status=DeviceStatus.UNINITIALIZED, notes: Optional[str] = None,
                      initialization_volume: float = 0.0) -> Device:
        meter_id = (meter_id or "").strip()
        if not meter_id:
            raise MalformedInput("Meter ID is required")
        existing = self._with_retry(f"find meter {meter_id}", self.store.find_device_by_meter, meter_id)
        if existing is not None:
            raise DuplicateMeterId(meter_id)
        if owner_id:
            self._get_customer(owner_id)

        device = Device(
            meter_id=meter_id,
            status=DeviceStatus(status),
            notes=notes,
            initialization_volume=float(initialization_volume),
        )
        try:
            stored = self._with_retry(f"create device {meter_id}", self.store.put_device, device, None)
        except VersionConflict as e:
            raise PersistenceFailure(f"device id collision for {meter_id}") from e
        logger.info("Created device %s (meter %s)", stored.device_id, meter_id)

        if owner_id:
            stored = self.reassign(stored.device_id, owner_id)
        return stored

    def update_device(self, device_id: str, owner_id=_UNSET, **fields) -> Device:
        """Update plain device fields and, when owner_id is given, the owner."""
        if "meter_id" in fields:
            current = self._get_device(device_id)
            if fields.pop("meter_id") != current.meter_id:
                raise ImmutableField("meter_id")
        unknown = set(fields) - set(UPDATABLE_DEVICE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown device fields: {', '.join(sorted(unknown))}")
        if "status" in fields:
            fields["status"] = DeviceStatus(fields["status"])
        for name in ("current_volume", "initialization_volume"):
            if name in fields:
                fields[name] = float(fields[name])

        if owner_id is not _UNSET and not owner_id:
            owner_id = None
        if owner_id is not _UNSET and owner_id is not None:
            self._get_customer(owner_id)

        def apply(d):
            changed = False
            for name, value in fields.items():
                if getattr(d, name) != value:
                    setattr(d, name, value)
                    changed = True
            return changed

        device = self._update_device(device_id, apply)
        if device is None:
            raise UnknownDevice(device_id)
        if owner_id is not _UNSET:
            device = self.reassign(device_id, owner_id)
        return device

    def delete_device(self, device_id: str) -> None:
        device = self._get_device(device_id)
        if device.owner_id:
            logger.info("Unassigning device %s from user %s before deletion",
                        device_id, device.owner_id)
            self.reassign(device_id, None)
        self._with_retry(f"delete device {device_id}", self.store.delete_device, device_id)
        logger.info("Deleted device %s", device_id)

    def create_user(self, name: str, email: str, role, device_ids: Optional[Iterable[str]] = None) -> User:
        role = UserRole(role)
        user = User(name=name, email=email, role=role)
        if self._with_retry(f"find email {user.email}", self.store.find_user_by_email, user.email):
            raise DuplicateEmail(user.email)

        device_ids = list(device_ids or [])
        if device_ids and role != UserRole.CUSTOMER:
            logger.warning("Ignoring %d device(s) given for %s user %s",
                           len(device_ids), role.value, user.email)
            device_ids = []

        try:
            stored = self._with_retry(f"create user {user.email}", self.store.put_user, user, None)
        except VersionConflict as e:
            raise PersistenceFailure(f"user id collision for {user.email}") from e
        logger.info("Created %s user %s", role.value, stored.user_id)

        if device_ids:
            stored = self.set_owned_devices(stored.user_id, device_ids)
        return stored

    def update_user(self, user_id: str, name: Optional[str] = None, email: Optional[str] = None,
                    role=None, device_ids: Optional[Iterable[str]] = None) -> User:
        """
        Update a user. Leaving the customer role releases every owned device
        before the role change is written; becoming a customer writes the role
        first so the new device set can be assigned.
        """
        user = self._get_user(user_id)
        new_role = UserRole(role) if role else user.role
        if email is not None:
            email = email.strip().lower()
            if email != user.email:
                other = self._with_retry(f"find email {email}", self.store.find_user_by_email, email)
                if other is not None and other.user_id != user_id:
                    raise DuplicateEmail(email)

        def apply(u):
            changed = False
            if name and name != u.name:
                u.name = name
                changed = True
            if email and email != u.email:
                u.email = email
                changed = True
            if new_role != u.role:
                u.role = new_role
                changed = True
            return changed

        if new_role != UserRole.CUSTOMER:
            if device_ids:
                logger.warning("Ignoring device set for %s user %s", new_role.value, user_id)
            if user.owned_device_ids:
                logger.info("Role of %s is %s, unassigning devices %s", user_id,
                            new_role.value, ", ".join(sorted(user.owned_device_ids)))
                self.set_owned_devices(user_id, set())
            updated = self._update_user(user_id, apply)
            if updated is None:
                raise UnknownUser(user_id)
            if updated.owned_device_ids:
                # assigned concurrently before the role change landed
                updated = self.set_owned_devices(user_id, set())
            return updated

        updated = self._update_user(user_id, apply)
        if updated is None:
            raise UnknownUser(user_id)
        if device_ids is not None:
            updated = self.set_owned_devices(user_id, device_ids)
        return updated

    def change_role(self, user_id: str, role) -> User:
        return self.update_user(user_id, role=role)

    def delete_user(self, user_id: str) -> None:
        user = self._get_user(user_id)
        if user.owned_device_ids:
            logger.info("Unassigning devices from user %s before deletion", user_id)
            self.set_owned_devices(user_id, set())
        self._with_retry(f"delete user {user_id}", self.store.delete_user, user_id)
        logger.info("Deleted user %s", user_id)

    # =========================================================================
    # Consistency
    # =========================================================================

    def find_divergences(self, devices: Optional[List[Device]] = None,
                         users: Optional[List[User]] = None) -> List[ConsistencyRepairNeeded]:
        """Compare pointers and owned sets without writing anything."""
        if devices is None:
            devices = self._with_retry("list devices", self.store.list_devices)
        if users is None:
            users = self._with_retry("list users", self.store.list_users)
        users_by_id = {u.user_id: u for u in users}

        listed_by = defaultdict(set)
        for user in users:
            for device_id in user.owned_device_ids:
                listed_by[device_id].add(user.user_id)

        issues = []
        for device in devices:
            listers = listed_by.pop(device.device_id, set())
            owner = users_by_id.get(device.owner_id)
            valid_owner = device.owner_id if owner is not None and owner.is_customer else None
            expected = {valid_owner} if valid_owner else set()
            if device.owner_id != valid_owner or listers != expected:
                issues.append(ConsistencyRepairNeeded(device.device_id, device.owner_id, listers))
        for device_id, listers in sorted(listed_by.items()):
            issues.append(ConsistencyRepairNeeded(device_id, None, listers))
        return issues

    def check_consistency(self) -> List[ConsistencyRepairNeeded]:
        issues = self.find_divergences()
        self._report(issues)
        return issues

    def reconcile(self) -> ReconciliationReport:
        """
        Rebuild every owned-device set from the device owner pointers.

        Pointers to missing or non-customer users are cleared first. Safe to
        run repeatedly, but not while a reassignment of the same device is in
        flight.
        """
        devices = self._with_retry("list devices", self.store.list_devices)
        users = self._with_retry("list users", self.store.list_users)
        users_by_id = {u.user_id: u for u in users}
        report = ReconciliationReport(devices_scanned=len(devices), users_scanned=len(users))
        report.divergences = self.find_divergences(devices, users)
        self._report(report.divergences)

        derived = defaultdict(set)
        for device in devices:
            if device.owner_id is None:
                continue
            owner = users_by_id.get(device.owner_id)
            if owner is None or not owner.is_customer:
                stale = device.owner_id

                def detach(d, stale=stale):
                    if d.owner_id != stale:
                        return False
                    d.owner_id = None
                    return True

                self._update_device(device.device_id, detach)
                report.devices_detached.append(device.device_id)
                logger.warning("Detached device %s from invalid owner %s", device.device_id, stale)
                continue
            derived[owner.user_id].add(device.device_id)

        for user in users:
            wanted = derived.get(user.user_id, set())
            if user.owned_device_ids == wanted:
                continue

            def replace(u, wanted=wanted):
                if u.owned_device_ids == wanted:
                    return False
                u.owned_device_ids = set(wanted)
                return True

            self._update_user(user.user_id, replace)
            report.users_repaired.append(user.user_id)
            logger.warning("Rebuilt owned devices of user %s: %s", user.user_id,
                           ", ".join(sorted(wanted)) or "none")

        logger.info("Reconciliation done: %d user(s) repaired, %d device(s) detached",
                    len(report.users_repaired), len(report.devices_detached))
        return report

    def _report(self, issues: List[ConsistencyRepairNeeded]) -> None:
        for issue in issues:
            logger.warning("Consistency repair needed: %s", issue)
        if issues and self.alerts is not None:
            self.alerts.send_consistency_alert(issues)
