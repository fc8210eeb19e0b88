"""
Reclamation of objects shared between history Rxs.

A shared object (group, patient, prescriber, shipment, manifest, pallet,
load, canister replenishment, paperwork set, image) outlives any single Rx.
It is deleted only once no row anywhere in the schema still references it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import Table, and_
from sqlalchemy.sql.elements import ColumnElement

from .block_delete import StepRunner, delete_by_keys, select_by_keys
from .references import ReferenceChecker, Referrer
from .schema import (
    GROUP_DEPENDENT_TABLES,
    PATIENT_DEPENDENT_TABLES,
    SHIPMENT_DEPENDENT_TABLES,
    SHIPMENT_SAFETY_TABLES,
    CanisterHistory,
    CanisterImageAssoc,
    CanisterLotCodeHistory,
    Group,
    Image,
    ImageIntId,
    Load,
    LoadPalletAssoc,
    Manifest,
    ManifestShipmentAssoc,
    Order,
    OrderCanReplenAssoc,
    OrderHistory,
    OrderShipmentAssoc,
    Pallet,
    PalletManifestAssoc,
    PaperworkSet,
    PaperworkSetOrderAssoc,
    PatientCust,
    Prescriber,
    RxImageAssoc,
    RxRequest,
    Shipment,
)

logger = logging.getLogger(__name__)

Dependent = Tuple[Table, Tuple[str, ...]]


@dataclass(frozen=True)
class SharedKind:
    """How one kind of shared object is referenced and what goes with it."""

    name: str
    table: Table
    key_columns: Tuple[str, ...]
    referrers: Tuple[Referrer, ...]
    dependents: Tuple[Dependent, ...] = ()
    safety_tables: Tuple[str, ...] = ()
    eligible: Optional[Callable[[Table], ColumnElement[bool]]] = None


def _moved_to_file(table: Table) -> ColumnElement[bool]:
    return table.c.is_moved_to_file.is_(True)


def _t(model: Any) -> Table:
    return model.__table__


_IMAGE_REFERRERS = (
    Referrer(_t(RxImageAssoc), ("img_id",)),
    Referrer(_t(CanisterImageAssoc), ("img_id",)),
)

IMAGE = SharedKind(
    name="image",
    table=_t(Image),
    key_columns=("id",),
    referrers=_IMAGE_REFERRERS,
    eligible=_moved_to_file,
)

IMAGE_INT_ID = SharedKind(
    name="image_int_id",
    table=_t(ImageIntId),
    key_columns=("id",),
    referrers=_IMAGE_REFERRERS,
    eligible=_moved_to_file,
)

PAPERWORK_SET = SharedKind(
    name="paperwork_set",
    table=_t(PaperworkSet),
    key_columns=("id",),
    referrers=(Referrer(_t(PaperworkSetOrderAssoc), ("paperwork_set_id",)),),
)

CANISTER_REPLENISHMENT = SharedKind(
    name="canister_replenishment",
    table=_t(CanisterHistory),
    key_columns=("canister_sn", "last_replen_dttm"),
    referrers=(Referrer(_t(OrderCanReplenAssoc), ("canister_sn", "replen_dttm")),),
    dependents=((_t(CanisterLotCodeHistory), ("canister_sn", "last_replen_dttm")),),
)

SHIPMENT = SharedKind(
    name="shipment",
    table=_t(Shipment),
    key_columns=("id",),
    referrers=(Referrer(_t(OrderShipmentAssoc), ("shipment_id",)),),
    dependents=tuple((table, ("shipment_id",)) for table in SHIPMENT_DEPENDENT_TABLES)
    + ((_t(ManifestShipmentAssoc), ("shipment_id",)),),
    safety_tables=tuple(table.name for table in SHIPMENT_SAFETY_TABLES),
)

MANIFEST = SharedKind(
    name="manifest",
    table=_t(Manifest),
    key_columns=("id",),
    referrers=(Referrer(_t(ManifestShipmentAssoc), ("manifest_id",)),),
    dependents=((_t(PalletManifestAssoc), ("manifest_id",)),),
)

PALLET = SharedKind(
    name="pallet",
    table=_t(Pallet),
    key_columns=("id",),
    referrers=(Referrer(_t(PalletManifestAssoc), ("pallet_id",)),),
    dependents=((_t(LoadPalletAssoc), ("pallet_id",)),),
)

LOAD = SharedKind(
    name="load",
    table=_t(Load),
    key_columns=("id",),
    referrers=(Referrer(_t(LoadPalletAssoc), ("load_id",)),),
)

GROUP = SharedKind(
    name="group",
    table=_t(Group),
    key_columns=("group_num",),
    referrers=(
        Referrer(_t(OrderHistory), ("group_num",)),
        Referrer(_t(Order), ("group_num",)),
        Referrer(_t(RxRequest), ("group_num",)),
        Referrer(_t(Group), ("parent_group_num",)),
    ),
    dependents=tuple((table, ("group_num",)) for table in GROUP_DEPENDENT_TABLES),
    safety_tables=("gov_on_hold_groups", "oe_exception_groups", "oe_group_cvy_fill_data"),
)

PATIENT = SharedKind(
    name="patient",
    table=_t(PatientCust),
    key_columns=("pat_cust_id",),
    referrers=(
        Referrer(_t(OrderHistory), ("pat_cust_id",)),
        Referrer(_t(Order), ("pat_cust_id",)),
        Referrer(_t(RxRequest), ("pat_cust_id",)),
        Referrer(_t(Group), ("pat_cust_id",)),
    ),
    dependents=tuple((table, ("pat_cust_id",)) for table in PATIENT_DEPENDENT_TABLES),
)

PRESCRIBER = SharedKind(
    name="prescriber",
    table=_t(Prescriber),
    key_columns=("prescr_id",),
    referrers=(
        Referrer(_t(OrderHistory), ("prescr_id",)),
        Referrer(_t(Order), ("prescr_id",)),
        Referrer(_t(RxRequest), ("prescr_id",)),
    ),
)


@dataclass
class GroupReclaim:
    """Outcome of reclaiming a group hierarchy."""

    groups: List[int] = field(default_factory=list)
    patient_ids: Set[int] = field(default_factory=set)
    levels: int = 0
    unfinished_parents: List[int] = field(default_factory=list)


class SharedObjectReclaimer:
    """
    Deletes shared objects once nothing references them.

    Reference counting is done by exclusion: every candidate still named by
    a referencing row is dropped from the set, and only the remainder is
    deleted. Check and delete run in one transaction over the same captured
    candidate set, and the delete re-checks each row's references in its own
    predicate so a reference added after the check still protects the row
    and its dependents.
    """

    def __init__(self, runner: StepRunner):
        self.runner = runner
        self.group_table = _t(Group)
        self._checkers: Dict[str, ReferenceChecker] = {}

    def checker(self, kind: SharedKind) -> ReferenceChecker:
        """Return the (cached) reference checker for ``kind``."""
        if kind.name not in self._checkers:
            self._checkers[kind.name] = ReferenceChecker(
                kind.name, kind.referrers, chunk_size=self.runner.chunk_size
            )
        return self._checkers[kind.name]

    def reclaim(self, kind: SharedKind, candidates: Iterable[Any]) -> List[Any]:
        """
        Delete every unreferenced candidate of ``kind`` with its dependents.

        The guarded delete of the shared rows decides what goes: dependents
        are removed only for keys whose shared row was actually deleted.

        Args:
            kind: Shared object kind
            candidates: Keys captured from the batch before its deletions

        Returns:
            Keys whose shared row was removed
        """
        candidates = [key for key in candidates if key is not None]
        if not candidates:
            return []

        checker = self.checker(kind)
        chunk_size = self.runner.chunk_size
        key_columns = kind.key_columns

        with self.runner.step(f"reclaim {kind.name}") as conn:
            free = checker.unreferenced(conn, candidates)
            if not free:
                return []

            present = select_by_keys(
                conn, kind.table, key_columns, free, key_columns, chunk_size
            )
            guard = checker.not_referenced(kind.table, key_columns)
            if kind.eligible is not None:
                guard = and_(guard, kind.eligible(kind.table))

            counts: Dict[str, int] = {}
            counts[kind.table.name] = delete_by_keys(
                conn, kind.table, key_columns, free, chunk_size, where=guard
            )
            kept = select_by_keys(
                conn, kind.table, key_columns, free, key_columns, chunk_size
            )
            removed = sorted(present - kept)

            for table, columns in kind.dependents:
                counts[table.name] = delete_by_keys(conn, table, columns, removed, chunk_size)

        for table_name, count in counts.items():
            self.runner.record(table_name, count)
            if count and table_name in kind.safety_tables:
                logger.warning(
                    f"Removed {count} {table_name} rows for reclaimed {kind.name}s; "
                    "expected none for inactive objects"
                )

        logger.info(
            f"Reclaimed {len(removed)} {kind.name} rows "
            f"({len(free)} of {len(candidates)} candidates unreferenced)"
        )
        return removed

    def reclaim_groups(self, group_nums: Iterable[int], max_depth: int) -> GroupReclaim:
        """
        Reclaim groups, then walk up to parents that became unreferenced.

        A parent group stays while any child group still names it. The walk
        stops after ``max_depth`` levels; remaining parents are picked up by
        a later pass through the ordinary reference check.
        """
        outcome = GroupReclaim()
        group_table = self.group_table
        candidates = sorted({g for g in group_nums if g is not None})
        seen: Set[int] = set()

        while candidates and outcome.levels < max_depth:
            outcome.levels += 1
            seen.update(candidates)

            info = self.runner.select_keys(
                "capture group parents",
                group_table,
                ("group_num",),
                candidates,
                ("group_num", "parent_group_num", "pat_cust_id"),
            )

            freed = set(self.reclaim(GROUP, candidates))
            outcome.groups.extend(sorted(freed))

            parents = set()
            for group_num, parent_group_num, pat_cust_id in info:
                if group_num not in freed:
                    continue
                if parent_group_num is not None:
                    parents.add(parent_group_num)
                if pat_cust_id is not None:
                    outcome.patient_ids.add(pat_cust_id)

            candidates = sorted(parents - seen)

        if candidates:
            outcome.unfinished_parents = candidates
            logger.warning(
                f"Group hierarchy deeper than {max_depth} levels; "
                f"{len(candidates)} parent groups left for a later pass"
            )
        return outcome

    def reclaim_patients(self, patient_ids: Iterable[int]) -> List[int]:
        return self.reclaim(PATIENT, sorted(set(patient_ids)))

    def reclaim_prescribers(self, prescriber_ids: Iterable[int]) -> List[int]:
        return self.reclaim(PRESCRIBER, sorted(set(prescriber_ids)))

    def reclaim_images(self, image_ids: Sequence[int]) -> List[int]:
        """Reclaim externalized images from both image generations."""
        freed = self.reclaim(IMAGE_INT_ID, image_ids)
        freed += self.reclaim(IMAGE, image_ids)
        return sorted(set(freed))

    def reclaim_shipment_graph(self, shipment_ids: Sequence[int]) -> Dict[str, List[int]]:
        """
        Reclaim shipments, then manifests, pallets and loads bottom-up.

        Each level's candidates are captured from its association table
        before the level below deletes those associations.
        """
        reclaimed: Dict[str, List[int]] = {}

        manifest_ids = self.runner.select_keys(
            "capture manifests",
            _t(ManifestShipmentAssoc),
            ("shipment_id",),
            shipment_ids,
            ("manifest_id",),
        )
        reclaimed["shipment"] = self.reclaim(SHIPMENT, shipment_ids)

        pallet_ids = self.runner.select_keys(
            "capture pallets",
            _t(PalletManifestAssoc),
            ("manifest_id",),
            manifest_ids,
            ("pallet_id",),
        )
        reclaimed["manifest"] = self.reclaim(MANIFEST, manifest_ids)

        load_ids = self.runner.select_keys(
            "capture loads",
            _t(LoadPalletAssoc),
            ("pallet_id",),
            pallet_ids,
            ("load_id",),
        )
        reclaimed["pallet"] = self.reclaim(PALLET, pallet_ids)
        reclaimed["load"] = self.reclaim(LOAD, load_ids)

        return reclaimed
