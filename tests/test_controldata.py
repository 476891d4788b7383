from unittest import mock

from pg_cluster_manager.utils import controldata
from pg_cluster_manager.utils.controldata import DBState, PingStatus, ServerStatus
from pg_cluster_manager.utils.shell import CommandResult

CONTROLDATA_OUTPUT = """pg_control version number:            1300
Catalog version number:               202307071
Database system identifier:           7212345678901234567
Database cluster state:               shut down in recovery
pg_control last modified:             Mon 01 Jan 2024 10:00:00 AM UTC
Latest checkpoint location:           0/3F000028
Latest checkpoint's REDO location:    0/3F000028
Latest checkpoint's TimeLineID:       3
Minimum recovery ending location:     0/3F0000A0
Min recovery ending loc's timeline:   3
Bytes per WAL segment:                16777216
Data page checksum version:           1
"""


def test_parse_control_file():
    control = controldata.ControlFileSnapshot(controldata.parse_controldata_output(CONTROLDATA_OUTPUT))

    assert control.processed
    assert control.system_identifier == 7212345678901234567
    assert control.state == DBState.SHUTDOWNED_IN_RECOVERY
    assert control.state.is_clean_shutdown
    assert control.checkpoint_lsn == "0/3F000028"
    assert control.timeline_id == 3
    assert control.wal_segment_size == 16777216


def test_unreadable_control_file():
    with mock.patch.object(controldata.shell, "execute_cmd", return_value=CommandResult(1, "", "no such file")):
        control = controldata.read_control_file("/nonexistent")
    assert not control.processed
    assert control.state == DBState.UNKNOWN


def test_unknown_state():
    assert DBState.parse("something else") == DBState.UNKNOWN
    assert not DBState.IN_PRODUCTION.is_clean_shutdown


def test_ping_status_from_pg_isready():
    with mock.patch.object(controldata.shell, "execute_cmd", return_value=CommandResult(2)):
        assert controldata.ping("host=node1") == PingStatus.NO_RESPONSE
    assert PingStatus.from_returncode(42) == PingStatus.UNKNOWN


def test_cleanly_stopped_standby_reports_checkpoint():
    results = [CommandResult(2), CommandResult(0, CONTROLDATA_OUTPUT)]
    with mock.patch.object(controldata.shell, "execute_cmd", side_effect=results):
        status, control = controldata.get_server_status("host=node1", "/var/lib/pgsql/data")

    assert status == ServerStatus.SHUTDOWN
    assert controldata.format_shutdown_status(status, control.checkpoint_lsn) == \
        "--state=SHUTDOWN --last-checkpoint-lsn=0/3F000028"


def test_running_server():
    with mock.patch.object(controldata.shell, "execute_cmd", return_value=CommandResult(0)):
        status, control = controldata.get_server_status("host=node1", "/var/lib/pgsql/data")
    assert status == ServerStatus.RUNNING
    assert controldata.format_shutdown_status(status) == "--state=RUNNING"


def test_crashed_server():
    output = CONTROLDATA_OUTPUT.replace("shut down in recovery", "in production")
    with mock.patch.object(controldata.shell, "execute_cmd", side_effect=[CommandResult(2), CommandResult(0, output)]):
        status, _ = controldata.get_server_status("host=node1", "/var/lib/pgsql/data")
    assert status == ServerStatus.UNCLEAN_SHUTDOWN


def test_parse_shutdown_status():
    assert controldata.parse_shutdown_status("--state=SHUTDOWN --last-checkpoint-lsn=0/3F000028\n") == \
        (ServerStatus.SHUTDOWN, "0/3F000028")
    assert controldata.parse_shutdown_status("--state=SHUTDOWN") == (ServerStatus.UNKNOWN, None)
    assert controldata.parse_shutdown_status("") == (ServerStatus.UNKNOWN, None)
    assert controldata.parse_shutdown_status("--state=RUNNING") == (ServerStatus.RUNNING, None)
