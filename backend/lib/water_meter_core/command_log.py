# backend/lib/water_meter_core/command_log.py
import logging
from typing import Optional

from .errors import StoreError
from .models import CommandLog
from .store import EntityStore

logger = logging.getLogger(__name__)


class CommandLogWriter:
    """Appends audit records. Never raises: a lost record is logged instead."""

    def __init__(self, store: EntityStore):
        self.store = store

    def record(self, log: CommandLog) -> bool:
        for attempt in (1, 2):
            try:
                self.store.append_command_log(log)
                return True
            except StoreError as e:
                logger.warning("Audit write attempt %d failed for meter %s: %s",
                               attempt, log.meter_id, e)
        logger.error(
            "Audit record lost: meter=%s status=%s at=%s raw=%r params=%s",
            log.meter_id, log.status.value, log.timestamp.isoformat(),
            log.raw_command, log.parameters,
        )
        return False

    def history(self, meter_id: Optional[str] = None):
        return self.store.command_logs(meter_id)
