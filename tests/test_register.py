from unittest import mock

import pytest

from pg_cluster_manager.cluster.node_role import NodeRole, RecoveryType
from pg_cluster_manager.orchestrator import register
from pg_cluster_manager.orchestrator.register import RegisterHandler
from pg_cluster_manager.utils.errors import BadConfigError, DbConnectionError, DbQueryError
from tests.fakes import FakeConnection, make_record


@pytest.fixture
def handler(make_config, options, remote, service):
    return RegisterHandler(make_config(), options, remote, service)


@pytest.fixture
def store():
    patches = {
        "schema_exists": mock.patch.object(register.node_store, "schema_exists", return_value=True),
        "get_node_record": mock.patch.object(register.node_store, "get_node_record"),
        "get_primary_node_record": mock.patch.object(register.node_store, "get_primary_node_record",
                                                     return_value=None),
        "execute": mock.patch.object(register.node_store.db, "execute"),
        "create_node_record": mock.patch.object(register.node_store, "create_node_record"),
        "update_node_record": mock.patch.object(register.node_store, "update_node_record"),
        "update_node_record_set_active": mock.patch.object(register.node_store, "update_node_record_set_active"),
        "delete_node_record": mock.patch.object(register.node_store, "delete_node_record"),
        "create_event_record": mock.patch.object(register.node_store, "create_event_record",
                                                 return_value="2026-10-18 10:00:00+0000"),
        "notify": mock.patch.object(register.events, "notify"),
    }
    mocks = {name: p.start() for name, p in patches.items()}
    yield mocks
    for p in patches.values():
        p.stop()


def test_primary_register(handler, store):
    store["get_node_record"].return_value = None
    with mock.patch.object(handler, "connect_local", return_value=FakeConnection()), \
            mock.patch.object(register.db, "get_recovery_type", return_value=RecoveryType.PRIMARY):
        assert handler.primary_register() is True

    record = store["create_node_record"].call_args.args[1]
    assert (record.node_id, record.node_name, record.role, record.upstream_node_id) == (2, "node2", NodeRole.PRIMARY,
                                                                                         None)
    assert record.config_file == handler.config.config_file
    store["create_event_record"].assert_called_once_with(mock.ANY, 2, "primary_register", True, mock.ANY)
    store["notify"].assert_called_once_with(handler.config, 2, "primary_register", True, mock.ANY,
                                            "2026-10-18 10:00:00+0000")
    assert transaction_statements(store) == ["BEGIN", "COMMIT"]


def transaction_statements(store):
    return [c.args[1] for c in store["execute"].call_args_list]


def test_event_failure_rolls_back_record(handler, store):
    store["get_node_record"].return_value = None
    store["create_event_record"].side_effect = DbQueryError("unable to create event record")
    with pytest.raises(DbQueryError):
        handler.store_record(FakeConnection(), make_record(3, upstream_node_id=1), "standby_register")

    store["create_node_record"].assert_called_once()
    assert transaction_statements(store) == ["BEGIN", "ROLLBACK"]
    store["notify"].assert_not_called()


def test_unregister_commits_event_with_delete(handler, store):
    conn = FakeConnection()
    assert handler.unregister(conn, make_record(3, upstream_node_id=1), "standby_unregister") is True
    store["create_event_record"].assert_called_once_with(conn, 3, "standby_unregister", True, mock.ANY)
    assert transaction_statements(store) == ["BEGIN", "COMMIT"]


def test_forced_primary_register_replaces_old_primary_atomically(handler, store):
    handler.options.force = True
    store["get_node_record"].return_value = None
    store["get_primary_node_record"].return_value = make_record(1, NodeRole.PRIMARY)
    store["create_node_record"].side_effect = DbQueryError("unable to store record for node 2")
    conn = FakeConnection()
    with mock.patch.object(handler, "connect_local", return_value=conn), \
            mock.patch.object(handler, "connect_quiet", return_value=FakeConnection("node1", ok=False)), \
            mock.patch.object(register.db, "get_recovery_type", return_value=RecoveryType.PRIMARY):
        with pytest.raises(DbQueryError):
            handler.primary_register()

    store["update_node_record_set_active"].assert_called_once_with(conn, 1, False)
    assert transaction_statements(store) == ["BEGIN", "ROLLBACK"]
    store["create_event_record"].assert_not_called()


def test_primary_register_requires_primary(handler, store):
    with mock.patch.object(handler, "connect_local", return_value=FakeConnection()), \
            mock.patch.object(register.db, "get_recovery_type", return_value=RecoveryType.STANDBY):
        with pytest.raises(BadConfigError):
            handler.primary_register()
    store["create_node_record"].assert_not_called()


def test_existing_record_requires_force(handler, store):
    store["get_node_record"].return_value = make_record(2, NodeRole.PRIMARY)
    conn = FakeConnection()
    record = make_record(2, NodeRole.PRIMARY)
    with pytest.raises(BadConfigError):
        handler.store_record(conn, record, "primary_register")

    handler.options.force = True
    assert handler.store_record(conn, record, "primary_register") is True
    store["update_node_record"].assert_called_once_with(conn, record)
    store["create_node_record"].assert_not_called()


def test_dry_run_stores_nothing(handler, store):
    store["get_node_record"].return_value = None
    handler.options.dry_run = True
    assert handler.store_record(FakeConnection(), make_record(2), "standby_register") is False
    store["create_node_record"].assert_not_called()
    store["create_event_record"].assert_not_called()
    store["execute"].assert_not_called()


def test_standby_register_attaches_to_primary(handler, store):
    primary = make_record(1, NodeRole.PRIMARY)
    store["get_node_record"].side_effect = lambda conn, node_id: primary if node_id == 1 else None
    local_conn, primary_conn = FakeConnection("node2"), FakeConnection("node1")
    with mock.patch.object(handler, "connect", return_value=local_conn), \
            mock.patch.object(handler, "connect_primary", return_value=(primary, primary_conn)), \
            mock.patch.object(register.db, "get_recovery_type", return_value=RecoveryType.STANDBY):
        assert handler.standby_register() is True

    conn, record = store["create_node_record"].call_args.args
    assert conn is primary_conn
    assert record.role == NodeRole.STANDBY
    assert record.upstream_node_id == 1


def test_standby_register_rejects_witness_upstream(handler, store):
    primary = make_record(1, NodeRole.PRIMARY)
    store["get_node_record"].return_value = make_record(3, NodeRole.WITNESS)
    with mock.patch.object(handler, "connect", return_value=FakeConnection()), \
            mock.patch.object(handler, "connect_primary", return_value=(primary, FakeConnection("node1"))), \
            mock.patch.object(register.db, "get_recovery_type", return_value=RecoveryType.STANDBY):
        with pytest.raises(BadConfigError):
            handler.standby_register(upstream_node_id=3)


def test_stopped_standby_requires_force(handler, store):
    with mock.patch.object(handler, "connect", return_value=FakeConnection(ok=False)):
        with pytest.raises(DbConnectionError):
            handler.standby_register()


def test_wait_sync_times_out(handler, store):
    store["get_node_record"].return_value = None
    with pytest.raises(register.NodeStatusError):
        handler.wait_sync(FakeConnection(), make_record(2, upstream_node_id=1), 0)


def test_standby_unregister_by_node_id(handler, store):
    handler.options.node_id = 3
    primary_conn = FakeConnection("node1")
    with mock.patch.object(handler, "connect_local", return_value=FakeConnection()), \
            mock.patch.object(handler, "connect_primary",
                              return_value=(make_record(1, NodeRole.PRIMARY), primary_conn)), \
            mock.patch.object(register.node_store, "require_node_record",
                              return_value=make_record(3, upstream_node_id=1)):
        assert handler.standby_unregister() is True
    store["delete_node_record"].assert_called_once_with(primary_conn, 3)
