"""
Database schema touched by the history purge.

The pharmacy schema declares no foreign keys between these tables, so the
purge engine does all ownership and reference bookkeeping itself. Only the
columns the purge reads or filters on are declared here.
"""

from typing import Dict, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()
metadata = Base.metadata


# ---------------------------------------------------------------------------
# Roots
# ---------------------------------------------------------------------------


class OrderHistory(Base):  # type: ignore[valid-type,misc]
    """A completed Rx moved to history. The root of every purge cascade."""

    __tablename__ = "oe_order_history"

    order_id = Column(Integer, primary_key=True, autoincrement=False)
    history_dttm = Column(DateTime, primary_key=True)
    group_num = Column(Integer, nullable=True)
    pat_cust_id = Column(Integer, nullable=True)
    prescr_id = Column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_order_history_dttm", history_dttm),
        Index("idx_order_history_group", group_num),
        Index("idx_order_history_patient", pat_cust_id),
        Index("idx_order_history_prescriber", prescr_id),
    )


class Order(Base):  # type: ignore[valid-type,misc]
    """A live (not yet historical) Rx."""

    __tablename__ = "oe_order"

    order_id = Column(Integer, primary_key=True, autoincrement=False)
    group_num = Column(Integer, nullable=True, index=True)
    pat_cust_id = Column(Integer, nullable=True, index=True)
    prescr_id = Column(Integer, nullable=True, index=True)


class RxRequest(Base):  # type: ignore[valid-type,misc]
    """A pending Rx request. References groups, patients and prescribers."""

    __tablename__ = "oe_rx_request"

    id = Column(Integer, primary_key=True)
    group_num = Column(Integer, nullable=True, index=True)
    pat_cust_id = Column(Integer, nullable=True, index=True)
    prescr_id = Column(Integer, nullable=True, index=True)


class OrderAcceptReject(Base):  # type: ignore[valid-type,misc]
    """Order accept/reject audit record. Aged independently of history Rxs."""

    __tablename__ = "oe_order_accept_reject"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, nullable=True)
    reject_dttm = Column(DateTime, nullable=False, index=True)
    reason = Column(String(255), nullable=True)


# ---------------------------------------------------------------------------
# Owned dependents keyed by (order_id, history_dttm)
# ---------------------------------------------------------------------------


def _history_keyed(name: str) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True),
        Column("order_id", Integer, nullable=False),
        Column("history_dttm", DateTime, nullable=False),
        Column("data", Text, nullable=True),
        Index(f"idx_{name}_order", "order_id", "history_dttm"),
    )


OWNED_DEPENDENT_TABLES: Tuple[Table, ...] = tuple(
    _history_keyed(name)
    for name in (
        "oe_order_secondary_data",
        "oe_order_curr_history_dttm",
        "ca_audit",
        "cvy_rx_route",
        "oe_dur_data",
        "oe_dur_free_form_text",
        "oe_flagged_rxs",
        "oe_lot_code",
        "oe_order_aux_label_file",
        "oe_order_aux_label_text",
        "oe_order_ext_sys_document",
        "oe_order_ext_user_def",
        "oe_order_tcd_assoc",
        "oe_order_text_document",
        "oe_order_third_party_plan",
        "oe_rx_bag_assoc",
        "oe_rx_item_history",
        "oe_rx_pouch_dispenser_assoc",
        "oe_rx_pref_lang_data",
    )
)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


class Image(Base):  # type: ignore[valid-type,misc]
    """Stored image. Only images already moved to file may be purged."""

    __tablename__ = "img_image"

    id = Column(Integer, primary_key=True, autoincrement=False)
    is_moved_to_file = Column(Boolean, nullable=False, default=False)
    content_code = Column(Integer, nullable=True)


class ImageIntId(Base):  # type: ignore[valid-type,misc]
    """Legacy integer-keyed image generation."""

    __tablename__ = "img_image_int_id"

    id = Column(Integer, primary_key=True, autoincrement=False)
    is_moved_to_file = Column(Boolean, nullable=False, default=False)
    content_code = Column(Integer, nullable=True)


class RxImageAssoc(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "img_rx_img_assoc"

    id = Column(Integer, primary_key=True)
    img_id = Column(Integer, nullable=False, index=True)
    order_id = Column(Integer, nullable=False)
    history_dttm = Column(DateTime, nullable=False)

    __table_args__ = (Index("idx_img_rx_img_assoc_order", order_id, history_dttm),)


class CanisterImageAssoc(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "img_can_img_assoc"

    id = Column(Integer, primary_key=True)
    img_id = Column(Integer, nullable=False, index=True)
    canister_sn = Column(String(50), nullable=False)
    last_replen_dttm = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_img_can_img_assoc_replen", canister_sn, last_replen_dttm),
    )


# ---------------------------------------------------------------------------
# Dose schedules
# ---------------------------------------------------------------------------


class RxDoseSchedAssoc(Base):  # type: ignore[valid-type,misc]
    """Links a history Rx to its dose schedule."""

    __tablename__ = "oe_rx_dose_sched"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, nullable=False)
    history_dttm = Column(DateTime, nullable=False)
    rx_dose_sched_id = Column(Integer, nullable=False)

    __table_args__ = (Index("idx_oe_rx_dose_sched_order", order_id, history_dttm),)


class DoseSched(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "ds_rx_dose_sched"

    id = Column(Integer, primary_key=True, autoincrement=False)


class DoseSchedDose(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "ds_rx_dose_sched_dose"

    id = Column(Integer, primary_key=True)
    rx_dose_sched_id = Column(Integer, nullable=False, index=True)


class DoseSchedDoseByDayOfWeek(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "ds_rx_dose_sched_dose_by_day_of_week"

    id = Column(Integer, primary_key=True)
    rx_dose_sched_id = Column(Integer, nullable=False, index=True)
    day_of_week = Column(Integer, nullable=True)


# ---------------------------------------------------------------------------
# Paperwork sets
# ---------------------------------------------------------------------------


class PaperworkSet(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "pwk_paperwork_set"

    id = Column(Integer, primary_key=True, autoincrement=False)


class PaperworkSetOrderAssoc(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "pwk_paperwork_set_order_assoc"

    id = Column(Integer, primary_key=True)
    paperwork_set_id = Column(Integer, nullable=False, index=True)
    order_id = Column(Integer, nullable=False)
    history_dttm = Column(DateTime, nullable=False)

    __table_args__ = (Index("idx_pwk_set_order_assoc_order", order_id, history_dttm),)


# ---------------------------------------------------------------------------
# Canister replenishments
# ---------------------------------------------------------------------------


class OrderCanReplenAssoc(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "oe_order_can_replen_assoc"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, nullable=False)
    history_dttm = Column(DateTime, nullable=False)
    canister_sn = Column(String(50), nullable=False)
    replen_dttm = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_order_can_replen_order", order_id, history_dttm),
        Index("idx_order_can_replen_key", canister_sn, replen_dttm),
    )


class CanisterHistory(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "can_canister_history"

    canister_sn = Column(String(50), primary_key=True)
    last_replen_dttm = Column(DateTime, primary_key=True)


class CanisterLotCodeHistory(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "can_lot_code_history"

    id = Column(Integer, primary_key=True)
    canister_sn = Column(String(50), nullable=False)
    last_replen_dttm = Column(DateTime, nullable=False)
    lot_code = Column(String(50), nullable=True)

    __table_args__ = (
        Index("idx_can_lot_code_history_key", canister_sn, last_replen_dttm),
    )


# ---------------------------------------------------------------------------
# Shipment graph: load <- pallet <- manifest <- shipment <- order
# ---------------------------------------------------------------------------


class OrderShipmentAssoc(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "oe_order_shipment_assoc"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, nullable=False)
    history_dttm = Column(DateTime, nullable=False)
    shipment_id = Column(Integer, nullable=False, index=True)

    __table_args__ = (Index("idx_order_shipment_assoc_order", order_id, history_dttm),)


class Shipment(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "shp_shipment"

    id = Column(Integer, primary_key=True, autoincrement=False)


def _shipment_keyed(name: str) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True),
        Column("shipment_id", Integer, nullable=False, index=True),
        Column("data", Text, nullable=True),
    )


PACKAGE_ROUTE = _shipment_keyed("cvy_package_route")
PRINTER_TRAY = _shipment_keyed("pwk_printer_tray")
SHIPMENT_PKG_LABEL_DATA = _shipment_keyed("shp_shipment_pkg_label_data")
SHIPMENT_SPECIAL_SERVICE_ASSOC = _shipment_keyed("shp_shipment_special_service_assoc")
SHIP_TOTE_SHIPMENT_ASSOC = _shipment_keyed("srt_ship_tote_shipment_assoc")
SHIPMENT_PACKAGE_LABEL_INSTANCE = _shipment_keyed(
    "shp_shipment_package_label_instance"
)

# These should only ever hold rows for active shipments.
SHIPMENT_SAFETY_TABLES: Tuple[Table, ...] = (
    PACKAGE_ROUTE,
    PRINTER_TRAY,
    SHIP_TOTE_SHIPMENT_ASSOC,
)

SHIPMENT_DEPENDENT_TABLES: Tuple[Table, ...] = (
    PACKAGE_ROUTE,
    PRINTER_TRAY,
    SHIPMENT_PKG_LABEL_DATA,
    SHIPMENT_SPECIAL_SERVICE_ASSOC,
    SHIP_TOTE_SHIPMENT_ASSOC,
    SHIPMENT_PACKAGE_LABEL_INSTANCE,
)


class Manifest(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "shp_manifest"

    id = Column(Integer, primary_key=True, autoincrement=False)


class ManifestShipmentAssoc(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "shp_manifest_shipment_assoc"

    id = Column(Integer, primary_key=True)
    manifest_id = Column(Integer, nullable=False, index=True)
    shipment_id = Column(Integer, nullable=False, index=True)


class Pallet(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "shp_pallet"

    id = Column(Integer, primary_key=True, autoincrement=False)


class PalletManifestAssoc(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "shp_pallet_manifest_assoc"

    id = Column(Integer, primary_key=True)
    pallet_id = Column(Integer, nullable=False, index=True)
    manifest_id = Column(Integer, nullable=False, index=True)


class Load(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "shp_load"

    id = Column(Integer, primary_key=True, autoincrement=False)


class LoadPalletAssoc(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "shp_load_pallet_assoc"

    id = Column(Integer, primary_key=True)
    load_id = Column(Integer, nullable=False, index=True)
    pallet_id = Column(Integer, nullable=False, index=True)


# ---------------------------------------------------------------------------
# Tables keyed by order id alone
# ---------------------------------------------------------------------------


def _order_keyed(name: str, key: str = "order_id") -> Table:
    """An order-id-only table; ``info["order_key"]`` names its order id column."""
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True),
        Column(key, Integer, nullable=False, index=True),
        Column("data", Text, nullable=True),
        info={"order_key": key},
    )


ORDER_KEYED_TABLES: Dict[str, Table] = {
    "oe_comments": _order_keyed("oe_comments"),
    "oe_order_po_num_assoc": _order_keyed("oe_order_po_num_assoc"),
    "oe_problem_rxs": _order_keyed("oe_problem_rxs"),
    "oe_require_correspondence_rxs": _order_keyed(
        "oe_require_correspondence_rxs", key="rx_num_or_order_id"
    ),
    "oe_status_trail": _order_keyed("oe_status_trail"),
}


# ---------------------------------------------------------------------------
# Groups, patients, prescribers
# ---------------------------------------------------------------------------


class Group(Base):  # type: ignore[valid-type,misc]
    """A batch container for orders. Groups may name a parent group."""

    __tablename__ = "oe_group"

    group_num = Column(Integer, primary_key=True, autoincrement=False)
    parent_group_num = Column(Integer, nullable=True, index=True)
    pat_cust_id = Column(Integer, nullable=True, index=True)


def _group_keyed(name: str) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True),
        Column("group_num", Integer, nullable=False, index=True),
        Column("data", Text, nullable=True),
    )


GROUP_DEPENDENT_TABLES: Tuple[Table, ...] = tuple(
    _group_keyed(name)
    for name in (
        "gov_on_hold_groups",
        "oe_exception_groups",
        "oe_group_cvy_fill_data",
        "oe_group_order_data",
        "oe_group_payment",
        "oe_group_user_def",
    )
)


class PatientCust(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "oe_patient_cust"

    pat_cust_id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(200), nullable=True)


def _patient_keyed(name: str) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True),
        Column("pat_cust_id", Integer, nullable=False, index=True),
        Column("data", Text, nullable=True),
    )


PATIENT_DEPENDENT_TABLES: Tuple[Table, ...] = (
    _patient_keyed("oe_patient_cust_secondary_data"),
    _patient_keyed("privacy_signature"),
)


class Prescriber(Base):  # type: ignore[valid-type,misc]
    __tablename__ = "oe_prescriber"

    prescr_id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(200), nullable=True)


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------


class SqlEvent(Base):  # type: ignore[valid-type,misc]
    """Begin/end events logged by maintenance procedures."""

    __tablename__ = "sql_event_log"

    id = Column(Integer, primary_key=True)
    logged_at = Column(DateTime, nullable=False, index=True)
    category = Column(String(10), nullable=False)
    event_name = Column(String(50), nullable=False)
    outcome = Column(String(50), nullable=True)
    notes = Column(String(255), nullable=True)
    source = Column(String(100), nullable=True)


class SqlError(Base):  # type: ignore[valid-type,misc]
    """Errors logged by maintenance procedures."""

    __tablename__ = "sql_error_log"

    id = Column(Integer, primary_key=True)
    logged_at = Column(DateTime, nullable=False, index=True)
    event_name = Column(String(50), nullable=False)
    error_code = Column(Integer, nullable=False)
    error_message = Column(Text, nullable=True)
    source = Column(String(100), nullable=True)


class SysProperty(Base):  # type: ignore[valid-type,misc]
    """System keyword/value settings shared with the nightly job."""

    __tablename__ = "sys_property"

    keyword = Column(String(100), primary_key=True)
    value = Column(String(400), nullable=True)


def init_db(engine: Engine) -> None:
    """Create every table the purge touches."""
    metadata.create_all(bind=engine)
