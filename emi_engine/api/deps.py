"""
Service wiring and request dependencies
"""

import threading
from typing import Optional

from ..audit import AuditTrail
from ..clock import Clock, SystemClock
from ..config import get_config
from ..service import EmiService
from ..storage import StorageInterface, create_storage


class EmiSystem:
    """Storage, audit trail and service initialized together"""

    def __init__(self, storage: Optional[StorageInterface] = None, clock: Optional[Clock] = None):
        config = get_config()

        self.storage = storage or create_storage(config.database_url)
        self.clock = clock or SystemClock()
        self.audit_trail = AuditTrail(self.storage) if config.enable_audit_logging else None
        self.service = EmiService(
            self.storage,
            clock=self.clock,
            audit_trail=self.audit_trail,
            grace_installments=config.default_grace_installments,
            lock_timeout_seconds=config.lock_timeout_seconds,
            default_currency=config.default_currency,
        )

    def close(self) -> None:
        self.storage.close()


_system: Optional[EmiSystem] = None
_system_lock = threading.Lock()


def get_emi_system() -> EmiSystem:
    """Dependency returning the process-wide system, built on first use"""
    global _system
    with _system_lock:
        if _system is None:
            _system = EmiSystem()
        return _system
