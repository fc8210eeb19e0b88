"""
Dependency cascade for one batch of history Rxs.

Steps run in a fixed order so that no row is ever left pointing at a row
already removed:

    1. owned dependents keyed by (order_id, history_dttm)
    2. Rx images (both image generations)
    3. dose schedule trees
    4. paperwork sets
    5. canister replenishments and their images
    6. the shipment graph (shipment <- manifest <- pallet <- load)
    7. the history Rx rows themselves
    8. order-id-only tables whose order id has no remaining Rx

Shared groups, patients and prescribers are reclaimed afterwards from the
candidates captured with the batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from sqlalchemy import exists, or_
from sqlalchemy.sql.elements import ColumnElement

from .block_delete import StepRunner, delete_by_keys
from .reclaimer import CANISTER_REPLENISHMENT, PAPERWORK_SET, SharedObjectReclaimer
from .references import ReferenceChecker, Referrer
from .schema import (
    ORDER_KEYED_TABLES,
    OWNED_DEPENDENT_TABLES,
    CanisterImageAssoc,
    DoseSched,
    DoseSchedDose,
    DoseSchedDoseByDayOfWeek,
    Image,
    ImageIntId,
    Order,
    OrderCanReplenAssoc,
    OrderHistory,
    OrderShipmentAssoc,
    PaperworkSetOrderAssoc,
    RxDoseSchedAssoc,
    RxImageAssoc,
)
from .selector import Batch

logger = logging.getLogger(__name__)

ROOT_KEY = ("order_id", "history_dttm")


@dataclass
class CascadeOutcome:
    """Rows removed while processing one batch."""

    root_rows_deleted: int = 0
    rows_by_table: Dict[str, int] = field(default_factory=dict)
    reclaimed: Dict[str, List] = field(default_factory=dict)


def movable_image(image_id_column) -> ColumnElement[bool]:
    """True when the referenced image exists in either generation and is on file."""
    conditions = []
    for model in (Image, ImageIntId):
        table = model.__table__
        conditions.append(
            exists().where(table.c.id == image_id_column).where(
                table.c.is_moved_to_file.is_(True)
            )
        )
    return or_(*conditions)


class CascadeExecutor:
    """Deletes everything exclusively owned by a batch, then its shared leftovers."""

    def __init__(
        self,
        runner: StepRunner,
        reclaimer: Optional[SharedObjectReclaimer] = None,
        max_group_depth: int = 16,
        reclaim_prescribers: bool = True,
    ):
        """
        Initialize the cascade executor.

        Args:
            runner: Step runner shared with the rest of the pass
            reclaimer: Shared-object reclaimer (built from ``runner`` if omitted)
            max_group_depth: Parent-group levels walked per batch
            reclaim_prescribers: Whether unreferenced prescribers are deleted
        """
        self.runner = runner
        self.reclaimer = reclaimer or SharedObjectReclaimer(runner)
        self.max_group_depth = max_group_depth
        self.reclaim_prescribers = reclaim_prescribers
        self._order_checker = ReferenceChecker(
            "order id",
            (
                Referrer(Order.__table__, ("order_id",)),
                Referrer(OrderHistory.__table__, ("order_id",)),
            ),
            chunk_size=runner.chunk_size,
        )

    def process(self, batch: Batch) -> CascadeOutcome:
        """
        Run every cascade step for ``batch`` and reclaim its shared objects.

        Each step commits on its own. A failing step raises
        DeleteFailureError and leaves earlier steps committed.
        """
        outcome = CascadeOutcome()
        if not batch:
            return outcome

        self.runner.reset_tally()
        keys = list(batch)

        self.delete_owned_dependents(keys)
        outcome.reclaimed["image"] = self.delete_rx_images(keys)
        self.delete_dose_schedules(keys)
        outcome.reclaimed["paperwork_set"] = self.delete_paperwork(keys)
        outcome.reclaimed.update(self.delete_canister_replenishments(keys))
        outcome.reclaimed.update(self.delete_shipments(keys))
        outcome.root_rows_deleted = self.delete_roots(keys)
        self.delete_order_keyed_orphans(batch.order_ids)
        outcome.reclaimed.update(self.reclaim_shared(batch))

        outcome.rows_by_table = self.runner.reset_tally()
        return outcome

    def delete_owned_dependents(self, keys: Sequence) -> int:
        removed = 0
        for table in OWNED_DEPENDENT_TABLES:
            removed += self.runner.delete_keys(
                f"delete {table.name}", table, ROOT_KEY, keys
            )
        return removed

    def delete_rx_images(self, keys: Sequence) -> List[int]:
        """
        Remove Rx image associations for externalized images, then the images.

        Associations of images not yet moved to file stay in place with
        their image.
        """
        assoc = RxImageAssoc.__table__
        image_ids = self.runner.select_keys(
            "capture Rx images", assoc, ROOT_KEY, keys, ("img_id",)
        )
        if not image_ids:
            return []
        self.runner.delete_keys(
            "delete Rx image associations",
            assoc,
            ROOT_KEY,
            keys,
            where=movable_image(assoc.c.img_id),
        )
        return self.reclaimer.reclaim_images(image_ids)

    def delete_dose_schedules(self, keys: Sequence) -> int:
        """Remove dose schedules detail first, header last."""
        assoc = RxDoseSchedAssoc.__table__
        sched_ids = self.runner.select_keys(
            "capture dose schedules", assoc, ROOT_KEY, keys, ("rx_dose_sched_id",)
        )
        removed = self.runner.delete_keys("delete Rx dose schedules", assoc, ROOT_KEY, keys)
        if not sched_ids:
            return removed

        for model in (DoseSchedDose, DoseSchedDoseByDayOfWeek):
            table = model.__table__
            removed += self.runner.delete_keys(
                f"delete {table.name}", table, ("rx_dose_sched_id",), sched_ids
            )
        header = DoseSched.__table__
        removed += self.runner.delete_keys(
            "delete dose schedule headers", header, ("id",), sched_ids
        )
        return removed

    def delete_paperwork(self, keys: Sequence) -> List[int]:
        assoc = PaperworkSetOrderAssoc.__table__
        set_ids = self.runner.select_keys(
            "capture paperwork sets", assoc, ROOT_KEY, keys, ("paperwork_set_id",)
        )
        self.runner.delete_keys("delete paperwork set associations", assoc, ROOT_KEY, keys)
        return self.reclaimer.reclaim(PAPERWORK_SET, set_ids)

    def delete_canister_replenishments(self, keys: Sequence) -> Dict[str, List]:
        """
        Remove the batch's replenishment associations, then replenishments
        no association names any more, then their externalized images.
        """
        assoc = OrderCanReplenAssoc.__table__
        replen_keys = self.runner.select_keys(
            "capture canister replenishments",
            assoc,
            ROOT_KEY,
            keys,
            ("canister_sn", "replen_dttm"),
        )
        self.runner.delete_keys(
            "delete canister replenishment associations", assoc, ROOT_KEY, keys
        )
        freed = self.reclaimer.reclaim(CANISTER_REPLENISHMENT, replen_keys)
        if not freed:
            return {"canister_replenishment": []}

        img_assoc = CanisterImageAssoc.__table__
        replen_columns = ("canister_sn", "last_replen_dttm")
        image_ids = self.runner.select_keys(
            "capture canister images", img_assoc, replen_columns, freed, ("img_id",)
        )
        self.runner.delete_keys(
            "delete canister image associations",
            img_assoc,
            replen_columns,
            freed,
            where=movable_image(img_assoc.c.img_id),
        )
        return {
            "canister_replenishment": freed,
            "canister_image": self.reclaimer.reclaim_images(image_ids),
        }

    def delete_shipments(self, keys: Sequence) -> Dict[str, List[int]]:
        assoc = OrderShipmentAssoc.__table__
        shipment_ids = self.runner.select_keys(
            "capture shipments", assoc, ROOT_KEY, keys, ("shipment_id",)
        )
        self.runner.delete_keys("delete order shipment associations", assoc, ROOT_KEY, keys)
        if not shipment_ids:
            return {}
        return self.reclaimer.reclaim_shipment_graph(shipment_ids)

    def delete_roots(self, keys: Sequence) -> int:
        """Delete the history Rx rows; the returned count is authoritative."""
        return self.runner.delete_keys(
            "delete history Rxs", OrderHistory.__table__, ROOT_KEY, keys
        )

    def delete_order_keyed_orphans(self, order_ids: Sequence[int]) -> int:
        """
        Clean order-id-only tables for ids no live or history Rx still uses.

        Another history version of the same order keeps these rows alive.
        """
        if not order_ids:
            return 0

        counts: Dict[str, int] = {}
        with self.runner.step("delete order-keyed orphans") as conn:
            free = self._order_checker.unreferenced(conn, order_ids)
            if free:
                for table in ORDER_KEYED_TABLES.values():
                    key = table.info["order_key"]
                    counts[table.name] = delete_by_keys(
                        conn, table, (key,), free, self.runner.chunk_size
                    )

        for name, count in counts.items():
            self.runner.record(name, count)
        return sum(counts.values())

    def reclaim_shared(self, batch: Batch) -> Dict[str, List[int]]:
        """Reclaim groups (walking parents), then patients, then prescribers."""
        groups = self.reclaimer.reclaim_groups(batch.group_nums, self.max_group_depth)
        patient_ids = set(batch.patient_ids) | groups.patient_ids

        reclaimed = {
            "group": groups.groups,
            "patient": self.reclaimer.reclaim_patients(patient_ids),
        }
        if self.reclaim_prescribers:
            reclaimed["prescriber"] = self.reclaimer.reclaim_prescribers(
                batch.prescriber_ids
            )
        return reclaimed
