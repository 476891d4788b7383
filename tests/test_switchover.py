from unittest import mock

import pytest

from pg_cluster_manager.cluster.node_role import NodeRole, RecoveryType
from pg_cluster_manager.orchestrator import promote, switchover
from pg_cluster_manager.orchestrator.switchover import SwitchoverHandler, SwitchoverState, lag_below_threshold
from pg_cluster_manager.utils.errors import SwitchoverFailError, SwitchoverIncompleteError
from pg_cluster_manager.utils.remote import RemoteResult
from pg_cluster_manager.utils.replication import parse_lsn
from tests.fakes import FakeConnection, make_record

CHECKPOINT_LSN = "0/5000028"
NODE_CHECK_OK = "--role=OK --role-name=primary --archive-ready=OK --files=0 --threshold=128 " \
                "--data-directory-config=OK"


def test_lag_gate():
    threshold = 16777216
    assert lag_below_threshold(parse_lsn(CHECKPOINT_LSN), parse_lsn(CHECKPOINT_LSN), threshold)
    assert lag_below_threshold(parse_lsn("0/5FFFFFF"), parse_lsn("0/5000000"), threshold)
    assert not lag_below_threshold(parse_lsn("0/6000000"), parse_lsn("0/5000000"), threshold)
    assert lag_below_threshold(100, 200, 0)
    assert lag_below_threshold(100, 100, 0)


class Cluster:
    """Primary node1 with standby node2 (the local node); remote commands answer as a healthy primary."""

    def __init__(self):
        self.primary = make_record(1, NodeRole.PRIMARY)
        self.local = make_record(2, upstream_node_id=1)
        self.local_conn = FakeConnection("node2")
        self.primary_conn = FakeConnection("node1")
        self.promoted = False
        self.replay_lsn = CHECKPOINT_LSN
        self.remote_outputs = {
            "node check --optformat": RemoteResult(0, NODE_CHECK_OK + "\n"),
            "node service --action=stop --checkpoint": RemoteResult(0, ""),
            "node status --is-shutdown-cleanly": RemoteResult(0, f"--state=SHUTDOWN "
                                                                 f"--last-checkpoint-lsn={CHECKPOINT_LSN}\n"),
            "node rejoin": RemoteResult(0, ""),
            "node rejoin --force-rewind": RemoteResult(0, ""),
        }
        self.remote_calls = []
        self.paused = []
        self.unpaused = []

    def recovery_type(self, conn):
        if conn is self.primary_conn:
            return RecoveryType.PRIMARY
        return RecoveryType.PRIMARY if self.promoted else RecoveryType.STANDBY

    def do_promote(self, conn, wait=False):
        self.promoted = True

    def remote_command(self, host, command):
        self.remote_calls.append((host, command))
        return self.remote_outputs.get(command, RemoteResult(1, "", "unknown command"))

    def set_paused(self, records, paused, raise_on_failure=True):
        ids = [r.node_id for r in records]
        (self.paused if paused else self.unpaused).append(ids)
        return ids


@pytest.fixture
def cluster():
    return Cluster()


@pytest.fixture
def store(cluster):
    patches = {
        "require_node_record": mock.patch.object(switchover.node_store, "require_node_record",
                                                 return_value=cluster.local),
        "get_primary_node_record": mock.patch.object(switchover.node_store, "get_primary_node_record",
                                                     return_value=cluster.primary),
        "get_downstream_node_records": mock.patch.object(switchover.node_store, "get_downstream_node_records",
                                                         return_value=[cluster.local]),
        "get_all_node_records": mock.patch.object(switchover.node_store, "get_all_node_records",
                                                  return_value=[cluster.primary, cluster.local]),
        "transaction": mock.patch.object(switchover.node_store, "transaction"),
        "set_primary": mock.patch.object(switchover.node_store, "update_node_record_set_primary"),
        "update_status": mock.patch.object(switchover.node_store, "update_node_record_status"),
        "create_event_record": mock.patch.object(switchover.node_store, "create_event_record",
                                                 return_value="2024-01-01 10:00:00"),
        "get_recovery_type": mock.patch.object(switchover.db, "get_recovery_type", side_effect=cluster.recovery_type),
        "get_current_wal_lsn": mock.patch.object(switchover.db, "get_current_wal_lsn", return_value=CHECKPOINT_LSN),
        "get_last_wal_replay_lsn": mock.patch.object(switchover.db, "get_last_wal_replay_lsn",
                                                     side_effect=lambda conn: cluster.replay_lsn),
        "get_server_version": mock.patch.object(promote.db, "get_server_version", return_value=(150004, "15.4")),
        "promote": mock.patch.object(promote.db, "promote", side_effect=cluster.do_promote),
        "set_paused": mock.patch.object(switchover.RepmgrdHandler, "set_paused", side_effect=cluster.set_paused),
        "wait_until_attached": mock.patch.object(switchover.replication, "wait_until_attached", return_value=True),
        "notify": mock.patch.object(switchover.events, "notify"),
    }
    mocks = {name: p.start() for name, p in patches.items()}
    yield mocks
    for p in patches.values():
        p.stop()


@pytest.fixture
def handler(make_config, options, remote, service, cluster):
    remote.remote_command.side_effect = cluster.remote_command
    service.has_override.return_value = False
    sw = SwitchoverHandler(make_config(), options, remote, service)
    sw.connect_local = mock.Mock(return_value=cluster.local_conn)
    sw.connect_quiet = mock.Mock(return_value=cluster.primary_conn)
    return sw


def test_switchover(handler, cluster, store):
    assert handler.run() is True

    assert handler.state == SwitchoverState.DONE
    events = [c.args[2] for c in store["create_event_record"].call_args_list]
    assert events == ["standby_promote", "repmgrd_pause", "standby_switchover"]
    assert all(c.args[3] is True for c in store["create_event_record"].call_args_list)

    store["set_primary"].assert_called_once_with(cluster.local_conn, 2)
    store["update_status"].assert_called_once_with(cluster.local_conn, 1, NodeRole.STANDBY, 2, False)

    commands = [command for _, command in cluster.remote_calls]
    assert commands == ["node check --optformat", "node service --action=stop --checkpoint",
                        "node status --is-shutdown-cleanly", "node rejoin"]
    assert all(host == "node1" for host, _ in cluster.remote_calls)
    rejoin_call = handler.remote.make_remote_invocation.call_args_list[-1]
    assert rejoin_call.kwargs["conninfo"] == cluster.local.conninfo

    assert cluster.paused == [[1, 2]]
    assert cluster.unpaused == [[1, 2]]
    assert handler.replayed_lsn_before_promote >= parse_lsn(CHECKPOINT_LSN)


def test_dry_run_changes_nothing(handler, cluster, store):
    handler.options.dry_run = True
    assert handler.run() is False

    assert cluster.paused == []
    assert [command for _, command in cluster.remote_calls] == ["node check --optformat"]
    store["promote"].assert_not_called()


def test_without_pause(handler, cluster, store):
    handler.repmgrd_no_pause = True
    handler.run()

    events = [c.args[2] for c in store["create_event_record"].call_args_list]
    assert events == ["standby_promote", "standby_switchover"]
    assert cluster.paused == []


def test_failed_primary_check_aborts_before_pause(handler, cluster, store):
    cluster.remote_outputs["node check --optformat"] = RemoteResult(0, "--role=OK --archive-ready=CRITICAL "
                                                                       "--data-directory-config=OK")
    with pytest.raises(SwitchoverFailError):
        handler.run()
    assert cluster.paused == []
    store["promote"].assert_not_called()


def test_primary_check_warning_does_not_block(handler, cluster, store):
    cluster.remote_outputs["node check --optformat"] = RemoteResult(0, "--role=OK --archive-ready=WARNING "
                                                                       "--files=20 --threshold=128 "
                                                                       "--data-directory-config=OK")
    assert handler.run() is True
    assert handler.state == SwitchoverState.DONE
    store["promote"].assert_called_once()


def test_unclean_shutdown_is_critical(handler, cluster, store):
    cluster.remote_outputs["node status --is-shutdown-cleanly"] = RemoteResult(0, "--state=UNCLEAN_SHUTDOWN")
    with pytest.raises(SwitchoverFailError):
        handler.run()

    store["promote"].assert_not_called()
    store["notify"].assert_called_once()
    assert store["notify"].call_args.args[3] is False
    assert cluster.unpaused == [[1, 2]]


def test_local_behind_checkpoint_is_not_promoted(handler, cluster, store):
    store["get_last_wal_replay_lsn"].side_effect = ["0/5000028", "0/5000000"]
    with pytest.raises(SwitchoverFailError):
        handler.run()
    store["promote"].assert_not_called()


def test_rejoin_failure_is_incomplete(handler, cluster, store):
    cluster.remote_outputs["node rejoin"] = RemoteResult(1, "", "pg_rewind required")
    with pytest.raises(SwitchoverIncompleteError):
        handler.run()
    store["set_primary"].assert_called_once()


def test_unreachable_demoted_primary_is_a_warning(handler, cluster, store):
    handler.remote.test_ssh_connection.side_effect = [True, False]
    assert handler.run() is True
    assert "node rejoin" not in [command for _, command in cluster.remote_calls]


def test_force_rewind_is_passed_to_rejoin(handler, cluster, store):
    handler.force_rewind = True
    handler.run()
    assert cluster.remote_calls[-1][1] == "node rejoin --force-rewind"


def test_requires_standby_of_primary(handler, cluster, store):
    cluster.local.upstream_node_id = 3
    with pytest.raises(SwitchoverFailError):
        handler.run()
