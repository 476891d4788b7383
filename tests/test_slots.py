from unittest import mock

from pg_cluster_manager.utils import slots
from pg_cluster_manager.utils.slots import SlotRecord
from tests.fakes import FakeConnection, make_record


def test_reconcile_downstream_slots():
    downstream = [make_record(2, slot_name="repmgr_slot_2"), make_record(3, slot_name="repmgr_slot_3"),
                  make_record(4)]
    present = [SlotRecord("repmgr_slot_2", "physical", True), SlotRecord("repmgr_slot_9", "physical", False),
               SlotRecord("logical_slot", "logical", False)]

    result = slots.reconcile_downstream_slots(downstream, present)

    assert [r.node_id for r in result.missing] == [3]
    assert [r.node_id for r in result.misconfigured] == [4]
    assert result.extra_inactive == ["repmgr_slot_9"]
    assert not result.ok
    assert len(result.warnings) == 2


def test_empty_slot_name_without_slots_is_not_misconfigured():
    result = slots.reconcile_downstream_slots([make_record(2)], [], use_replication_slots=False)
    assert result.ok


def test_create_reuses_inactive_physical_slot():
    with mock.patch.object(slots, "get_slot_record", return_value=SlotRecord("repmgr_slot_2", "physical", False)), \
            mock.patch.object(slots.db, "fetch_one") as fetch_one:
        assert slots.create_replication_slot(FakeConnection(), "repmgr_slot_2")
    fetch_one.assert_not_called()


def test_create_refuses_active_slot():
    with mock.patch.object(slots, "get_slot_record", return_value=SlotRecord("repmgr_slot_2", "physical", True)):
        assert not slots.create_replication_slot(FakeConnection(), "repmgr_slot_2")


def test_create_new_slot():
    with mock.patch.object(slots, "get_slot_record", return_value=None), \
            mock.patch.object(slots.db, "fetch_one") as fetch_one:
        assert slots.create_replication_slot(FakeConnection(), "repmgr_slot_2")
    fetch_one.assert_called_once_with(mock.ANY, "SELECT pg_catalog.pg_create_physical_replication_slot(%s, true)",
                                      ("repmgr_slot_2",))


def test_drop_missing_slot_is_success():
    with mock.patch.object(slots, "get_slot_record", return_value=None):
        assert slots.drop_replication_slot_if_exists(FakeConnection(), 1, "repmgr_slot_2")


def test_drop_keeps_active_slot():
    with mock.patch.object(slots, "get_slot_record", return_value=SlotRecord("repmgr_slot_2", "physical", True)), \
            mock.patch.object(slots.db, "fetch_one") as fetch_one:
        assert not slots.drop_replication_slot_if_exists(FakeConnection(), 1, "repmgr_slot_2")
    fetch_one.assert_not_called()


def test_slots_available():
    stats = {"max_replication_slots": 4, "active_replication_slots": 2, "inactive_replication_slots": 1}
    with mock.patch.object(slots.db, "get_node_replication_stats", return_value=stats):
        assert slots.check_replication_slots_available(1, FakeConnection())
    stats["active_replication_slots"] = 3
    with mock.patch.object(slots.db, "get_node_replication_stats", return_value=stats):
        assert not slots.check_replication_slots_available(1, FakeConnection())
