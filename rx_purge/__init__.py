"""
Rx History Purge - bounded, resumable reclamation of aged prescription history.

Removes history Rxs older than a retention period together with everything
they exclusively own, and reclaims shared objects (groups, patients,
prescribers, shipments, manifests, pallets, loads, canister replenishments,
paperwork sets, images) once nothing references them any more. Work is cut
into bounded blocks so no single transaction grows large.

Key Features
------------
* **Bounded work**: block size and per-invocation cap on every pass
* **Dependency cascade**: dependents always removed before their owner
* **Reference counting**: shared objects removed only when unreferenced
* **Resumable**: oldest first, so a rerun continues where the last stopped
* **Chunk driver**: walks a wide backlog in day-sized sub-ranges

Quick Start
-----------
>>> from sqlalchemy import create_engine
>>> from rx_purge import HistoryPurgeEngine, PurgeConfig, PurgeRequest
>>>
>>> engine = create_engine("sqlite:///pharmacy.db")
>>> purge = HistoryPurgeEngine(engine, PurgeConfig(retention_days=730))
>>> result = purge.run(PurgeRequest(block_size=10000, max_to_delete=500000))
>>> print(result.history_rows_deleted, result.accept_reject_rows_deleted)
"""

__version__ = "1.0.0"

from .config import PurgeConfig, configure, get_config, set_config
from .driver import WindowedChunkDriver
from .engine import HistoryPurgeEngine
from .events import CompositeEventSink, EventSink, LoggingEventSink, SqlEventLog
from .exceptions import (
    DeleteFailureError,
    InvalidParameterError,
    PurgeDisabledError,
    PurgeError,
    SafetyCapExceededError,
)
from .maintenance import MaintenanceStep, NightlyMaintenance, SysPropertyStore
from .models import (
    BacklogReport,
    DriverReport,
    DriverRequest,
    DriverState,
    PurgeRequest,
    PurgeResult,
    PurgeStatus,
    PurgeWindow,
)
from .schema import init_db
from .secondary import AcceptRejectStream

__all__ = [
    # Version
    "__version__",
    # Configuration
    "PurgeConfig",
    "get_config",
    "set_config",
    "configure",
    # Engine
    "HistoryPurgeEngine",
    "WindowedChunkDriver",
    "AcceptRejectStream",
    "init_db",
    # Models
    "PurgeRequest",
    "PurgeResult",
    "PurgeStatus",
    "PurgeWindow",
    "DriverRequest",
    "DriverReport",
    "DriverState",
    "BacklogReport",
    # Events
    "EventSink",
    "LoggingEventSink",
    "SqlEventLog",
    "CompositeEventSink",
    # Nightly job
    "NightlyMaintenance",
    "MaintenanceStep",
    "SysPropertyStore",
    # Exceptions
    "PurgeError",
    "InvalidParameterError",
    "DeleteFailureError",
    "SafetyCapExceededError",
    "PurgeDisabledError",
]
