import logging

from pg_cluster_manager.utils import db
from pg_cluster_manager.utils.errors import DbQueryError
from pg_cluster_manager.utils.logger import log_detail


class SlotRecord:
    def __init__(self, slot_name, slot_type, active):
        self.slot_name = slot_name
        self.slot_type = slot_type
        self.active = bool(active)

    def __repr__(self):
        return f"SlotRecord({self.slot_name!r}, {self.slot_type!r}, active={self.active})"


class SlotReconciliation:
    """Result of comparing the slots expected by downstream nodes with the slots present on the upstream."""

    def __init__(self):
        self.missing = []
        self.misconfigured = []
        self.extra_inactive = []

    @property
    def ok(self):
        return not self.missing and not self.misconfigured

    @property
    def warnings(self):
        messages = [f"node \"{r.node_name}\" (ID: {r.node_id}) has no slot name set"
                    for r in self.misconfigured]
        messages += [f"inactive replication slot \"{name}\" is not used by any downstream node"
                     for name in self.extra_inactive]
        return messages


def get_slot_record(conn, slot_name):
    row = db.fetch_one(conn, "SELECT slot_name, slot_type, active FROM pg_catalog.pg_replication_slots "
                             "WHERE slot_name = %s", (slot_name,))
    return SlotRecord(*row) if row else None


def get_all_slots(conn):
    rows = db.fetch_all(conn, "SELECT slot_name, slot_type, active FROM pg_catalog.pg_replication_slots "
                              "ORDER BY slot_name")
    return [SlotRecord(*r) for r in rows]


def create_replication_slot(conn, slot_name, dry_run=False):
    """Creates a physical replication slot which reserves WAL immediately. No-op if an inactive physical slot
    with the same name exists. Returns True on success."""
    logger = logging.getLogger("logger")
    slot = get_slot_record(conn, slot_name)
    if slot is not None:
        if slot.slot_type != "physical":
            logger.error(f"Slot \"{slot_name}\" exists and is not a physical slot.")
            return False
        if slot.active:
            logger.error(f"Slot \"{slot_name}\" already exists as an active slot.")
            return False
        logger.debug(f"Replication slot \"{slot_name}\" exists but is inactive; reusing.")
        return True

    if dry_run:
        logger.info(f"Would create replication slot \"{slot_name}\".")
        return True

    try:
        db.fetch_one(conn, "SELECT pg_catalog.pg_create_physical_replication_slot(%s, true)", (slot_name,))
    except DbQueryError as ex:
        logger.error(f"Unable to create slot \"{slot_name}\": {ex.detail}")
        return False
    logger.info(f"Replication slot \"{slot_name}\" created.")
    return True


def drop_replication_slot_if_exists(conn, node_id, slot_name):
    """Drops the slot if it exists and is not in use. Returns True if the slot does not exist afterwards."""
    logger = logging.getLogger("logger")
    if not slot_name:
        return True

    slot = get_slot_record(conn, slot_name)
    if slot is None:
        logger.debug(f"Replication slot \"{slot_name}\" does not exist on node {node_id}.")
        return True

    if slot.active:
        logger.warning(f"Replication slot \"{slot_name}\" is still active on node {node_id}; not dropping.")
        return False

    try:
        db.fetch_one(conn, "SELECT pg_catalog.pg_drop_replication_slot(%s)", (slot_name,))
    except DbQueryError as ex:
        logger.warning(f"Unable to drop replication slot \"{slot_name}\" on node {node_id}: {ex.detail}")
        return False
    logger.info(f"Replication slot \"{slot_name}\" dropped on node {node_id}.")
    return True


def get_inactive_replication_slots(conn):
    """Returns (slot_name, reason) for every slot not in use."""
    return [(name, f"{slot_type} slot is not active") for name, slot_type in db.get_inactive_replication_slots(conn)]


def reconcile_downstream_slots(downstream_records, slots, use_replication_slots=True):
    """Compares the slot names recorded for downstream nodes with the slots present on their upstream.
    A downstream node with an empty slot name is a misconfiguration when slots are in use."""
    result = SlotReconciliation()
    present = {s.slot_name: s for s in slots if s.slot_type == "physical"}
    expected = set()

    for record in downstream_records:
        if not record.slot_name:
            if use_replication_slots:
                result.misconfigured.append(record)
            continue
        expected.add(record.slot_name)
        if record.slot_name not in present:
            result.missing.append(record)

    result.extra_inactive = sorted(name for name, slot in present.items()
                                   if not slot.active and name not in expected)
    return result


def get_downstream_nodes_with_missing_slot(conn, node_id, downstream_records=None, use_replication_slots=True):
    """Returns the active downstream node records of node_id whose slot is absent on conn."""
    if downstream_records is None:
        from pg_cluster_manager.cluster import node_store
        downstream_records = node_store.get_downstream_node_records(conn, node_id)
    return reconcile_downstream_slots([r for r in downstream_records if r.active],
                                      get_all_slots(conn), use_replication_slots).missing


def check_replication_slots_available(primary_id, primary_conn):
    """Returns True if the primary has at least one free replication slot."""
    logger = logging.getLogger("logger")
    stats = db.get_node_replication_stats(primary_conn)
    used = stats["active_replication_slots"] + stats["inactive_replication_slots"]
    free = stats["max_replication_slots"] - used
    if free < 1:
        logger.error(f"All replication slots on node {primary_id} are in use.")
        log_detail(f"{used} of {stats['max_replication_slots']} replication slots used.")
        return False
    if stats["inactive_replication_slots"] > 0:
        logger.warning(f"Node {primary_id} has {stats['inactive_replication_slots']} inactive replication slots.")
    return True
