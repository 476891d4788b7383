from unittest import mock

import pytest

from pg_cluster_manager.cluster import node_store
from pg_cluster_manager.cluster.node_role import NodeRole
from pg_cluster_manager.utils.errors import DbQueryError
from tests.fakes import FakeConnection, make_record

ROW = (3, 1, True, "node3", "standby", "default", 100, "host=node3 dbname=repmgr user=repmgr", "repmgr",
       "repmgr_slot_3", "/etc/pg-cluster-manager/node3.ini", "node1")


def statements(execute):
    return [c.args[1] for c in execute.call_args_list]


def test_transaction_commits():
    conn = FakeConnection()
    with mock.patch.object(node_store.db, "execute") as execute:
        with node_store.transaction(conn):
            assert conn.in_transaction
    assert statements(execute) == ["BEGIN", "COMMIT"]
    assert not conn.in_transaction


def test_transaction_rolls_back():
    conn = FakeConnection()
    with mock.patch.object(node_store.db, "execute") as execute:
        with pytest.raises(DbQueryError):
            with node_store.transaction(conn):
                raise DbQueryError("unable to update node record")
    assert statements(execute) == ["BEGIN", "ROLLBACK"]
    assert not conn.in_transaction


def test_no_rollback_on_broken_connection():
    conn = FakeConnection()
    with mock.patch.object(node_store.db, "execute") as execute:
        with pytest.raises(DbQueryError):
            with node_store.transaction(conn):
                conn.close()
                raise DbQueryError("server closed the connection unexpectedly")
    assert statements(execute) == ["BEGIN"]


def test_failed_rollback_keeps_original_error():
    conn = FakeConnection()

    def execute(conn, sql, params=None):
        if sql == "ROLLBACK":
            raise DbQueryError("connection lost during transaction", detail="server closed the connection")

    original = DbQueryError("unable to store record for node 3")
    with mock.patch.object(node_store.db, "execute", side_effect=execute):
        with pytest.raises(DbQueryError) as ex:
            with node_store.transaction(conn):
                raise original
    assert ex.value is original
    assert not conn.in_transaction


def test_get_node_record_by_name():
    with mock.patch.object(node_store.db, "fetch_one", return_value=ROW) as fetch_one:
        record = node_store.get_node_record_by_name(FakeConnection(), "node3")

    assert fetch_one.call_args.args[2] == ("node3",)
    assert (record.node_id, record.role, record.upstream_node_id) == (3, NodeRole.STANDBY, 1)
    assert record.upstream_node_name == "node1"
    assert record.slot_name == "repmgr_slot_3"


def test_missing_record():
    with mock.patch.object(node_store.db, "fetch_one", return_value=None):
        assert node_store.get_node_record_by_name(FakeConnection(), "node9") is None
        assert node_store.get_primary_node_id(FakeConnection()) is None


def test_get_primary_node_id():
    row = (1, None, True, "node1", "primary") + ROW[5:11]
    with mock.patch.object(node_store.db, "fetch_one", return_value=row):
        assert node_store.get_primary_node_id(FakeConnection()) == 1


def unique_violation(constraint_name):
    ex = DbQueryError("unable to execute query", detail="duplicate key value violates unique constraint")
    ex.pgcode = node_store.UNIQUE_VIOLATION
    ex.constraint_name = constraint_name
    return ex


def test_duplicate_node_name():
    record = make_record(3, name="node2")
    with mock.patch.object(node_store.db, "execute", side_effect=unique_violation("nodes_node_name_key")):
        with pytest.raises(DbQueryError) as ex:
            node_store.create_node_record(FakeConnection(), record)
    assert "node_name \"node2\" is already used by another node" in ex.value.message
    assert ex.value.detail == "duplicate key value violates unique constraint"


def test_second_active_primary():
    with mock.patch.object(node_store.db, "execute", side_effect=unique_violation("nodes_one_active_primary")):
        with pytest.raises(DbQueryError) as ex:
            node_store.update_node_record(FakeConnection(), make_record(3, NodeRole.PRIMARY))
    assert "an active primary is already registered" in ex.value.message


def test_other_query_errors_propagate():
    error = DbQueryError("unable to execute query", detail="relation \"repmgr.nodes\" does not exist")
    with mock.patch.object(node_store.db, "execute", side_effect=error):
        with pytest.raises(DbQueryError) as ex:
            node_store.create_node_record(FakeConnection(), make_record(3))
    assert ex.value is error


def test_set_primary_deactivates_other_primaries():
    with mock.patch.object(node_store.db, "execute", return_value=1) as execute:
        assert node_store.update_node_record_set_primary(FakeConnection(), 2) is True
    first, second = execute.call_args_list
    assert "SET active = FALSE" in first.args[1]
    assert first.args[2] == ("primary", 2)
    assert second.args[2] == ("primary", 2)
