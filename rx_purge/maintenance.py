"""
Nightly maintenance job.

Runs a list of named, bypassable steps. The history purge is one of them;
backups, integrity checks and index rebuilds are registered by the caller as
further steps. A failing step does not stop the job: its name is appended to
the failing-steps list, and a failing *critical* step also marks the whole
run as Failed. The outcome is written to sys_property for monitoring.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update, insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import PurgeConfig
from .engine import HistoryPurgeEngine
from .exceptions import PurgeError
from .models import PurgeRequest, PurgeResult
from .schema import SysProperty

logger = logging.getLogger(__name__)

RETENTION_KEYWORD = "DelRxsAndRelatedDataOlderThanXDays"
LAST_RUN_DTTM_KEYWORD = "JobNightly_LastRunDtTm"
LAST_RUN_OUTCOME_KEYWORD = "JobNightly_LastRunOutcome"
LAST_RUN_FAIL_STEPS_KEYWORD = "JobNightly_LastRunFailSteps"

OUTCOME_SUCCEEDED = "Succeeded"
OUTCOME_FAILED = "Failed"

PURGE_STEP_NAME = "Delete Old Rx Data"

# sys_property values are truncated to this length on write
MAX_VALUE_LENGTH = 255


class SysPropertyStore:
    """Keyword/value settings in the sys_property table."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.table = SysProperty.__table__

    def get(self, keyword: str) -> Optional[str]:
        with self.engine.connect() as conn:
            return conn.execute(
                select(self.table.c.value).where(self.table.c.keyword == keyword)
            ).scalar_one_or_none()

    def get_int(self, keyword: str) -> Optional[int]:
        """Integer value of ``keyword``, or None when unset or not a number."""
        value = self.get(keyword)
        if value is None:
            return None
        try:
            return int(value.strip())
        except ValueError:
            logger.warning(f"sys_property {keyword}={value!r} is not an integer; ignored")
            return None

    def set(self, keyword: str, value: str) -> None:
        """Insert or update ``keyword``."""
        value = (value or "")[:MAX_VALUE_LENGTH]
        table = self.table
        with self.engine.begin() as conn:
            updated = conn.execute(
                update(table).where(table.c.keyword == keyword).values(value=value)
            ).rowcount
            if not updated:
                conn.execute(insert(table).values(keyword=keyword, value=value))


@dataclass
class MaintenanceStep:
    """One named step of the nightly job.

    ``action`` either returns normally (success), raises a PurgeError or
    SQLAlchemyError (failure), or returns a PurgeResult whose status says
    which.
    """

    name: str
    action: Callable[[], Any]
    critical: bool = False
    enabled: bool = True


@dataclass
class NightlyReport:
    """What the nightly job did."""

    started_at: datetime
    outcome: str = OUTCOME_SUCCEEDED
    failing_steps: List[str] = field(default_factory=list)
    bypassed_steps: List[str] = field(default_factory=list)
    results: Dict[str, Any] = field(default_factory=dict)
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_SUCCEEDED

    @property
    def failing_steps_list(self) -> str:
        """Failing step names as stored in sys_property, e.g. "a;b;"."""
        return "".join(f"{name};" for name in self.failing_steps)


class NightlyMaintenance:
    """Runs the nightly steps and records their outcome."""

    def __init__(
        self,
        engine: Engine,
        config: Optional[PurgeConfig] = None,
        purge_engine: Optional[HistoryPurgeEngine] = None,
        steps: Optional[List[MaintenanceStep]] = None,
    ):
        self.engine = engine
        self.config = config or PurgeConfig()
        self.purge_engine = purge_engine or HistoryPurgeEngine(engine, self.config)
        self.properties = SysPropertyStore(engine)
        self.steps: List[MaintenanceStep] = (
            steps if steps is not None else [self.history_purge_step()]
        )

    def add_step(self, step: MaintenanceStep) -> None:
        self.steps.append(step)

    def retention_days(self) -> int:
        """Retention period, from sys_property when configured to read it there."""
        if self.config.retention_from_sys_property:
            days = self.properties.get_int(RETENTION_KEYWORD)
            if days is not None:
                return days
        return self.config.retention_days

    def history_purge_step(self) -> MaintenanceStep:
        """The history purge as a non-critical nightly step."""
        return MaintenanceStep(
            name=PURGE_STEP_NAME,
            action=self._run_history_purge,
            critical=False,
            enabled=self.config.purge_enabled,
        )

    def _run_history_purge(self) -> PurgeResult:
        days = self.retention_days()
        return self.purge_engine.run(
            PurgeRequest(
                older_than_days=days,
                block_size=self.config.block_size,
                max_to_delete=self.config.max_to_delete,
            )
        )

    def run(self) -> NightlyReport:
        """
        Run every step in order and record the outcome.

        Returns:
            Report with the overall outcome and failing step names
        """
        report = NightlyReport(started_at=datetime.now())
        self.properties.set(LAST_RUN_DTTM_KEYWORD, f"{report.started_at:%Y-%m-%d %H:%M:%S}")

        for step in self.steps:
            logger.info(f"--- {step.name} ({datetime.now():%Y-%m-%d %H:%M:%S}) ---")

            if not step.enabled or (step.name == PURGE_STEP_NAME and self.retention_days() <= 0):
                logger.info("Bypassing step. Step not configured to run.")
                report.bypassed_steps.append(step.name)
                continue

            try:
                result = step.action()
            except (PurgeError, SQLAlchemyError) as e:
                logger.error(f"Step '{step.name}' failed: {e}")
                self._fail(report, step)
                continue

            report.results[step.name] = result
            if isinstance(result, PurgeResult) and not result.succeeded:
                logger.error(
                    f"Step '{step.name}' failed ({result.error_code}): {result.error_message}"
                )
                self._fail(report, step)

        report.finished_at = datetime.now()
        self.properties.set(LAST_RUN_OUTCOME_KEYWORD, report.outcome)
        self.properties.set(LAST_RUN_FAIL_STEPS_KEYWORD, report.failing_steps_list)
        logger.info(f"Nightly maintenance complete: {report.outcome}")
        return report

    @staticmethod
    def _fail(report: NightlyReport, step: MaintenanceStep) -> None:
        report.failing_steps.append(step.name)
        if step.critical:
            report.outcome = OUTCOME_FAILED
