from unittest import mock

import pytest

from pg_cluster_manager.cluster.node_role import NodeRole, RecoveryType
from pg_cluster_manager.orchestrator import node_commands
from pg_cluster_manager.orchestrator.node_commands import CheckResult, CheckStatus, NodeCheck, NodeCheckHandler, \
    NodeServiceHandler, OUTPUT_NAGIOS, OUTPUT_OPTFORMAT, OUTPUT_TEXT
from pg_cluster_manager.utils.errors import BadConfigError, ExitCode
from pg_cluster_manager.utils.service_control import ServerAction
from tests.fakes import FakeConnection, make_record


@pytest.mark.parametrize("lag, recovery_type, expected", [
    (0, RecoveryType.PRIMARY, CheckStatus.OK),
    (10, RecoveryType.STANDBY, CheckStatus.OK),
    (299, RecoveryType.STANDBY, CheckStatus.OK),
    (300, RecoveryType.STANDBY, CheckStatus.WARNING),
    (599, RecoveryType.STANDBY, CheckStatus.WARNING),
    (600, RecoveryType.STANDBY, CheckStatus.CRITICAL),
    (-1, RecoveryType.STANDBY, CheckStatus.UNKNOWN),
    (None, RecoveryType.UNKNOWN, CheckStatus.UNKNOWN),
])
def test_classify_replication_lag(lag, recovery_type, expected):
    status, message = node_commands.classify_replication_lag(lag, 300, 600, recovery_type)
    assert status == expected
    if recovery_type == RecoveryType.PRIMARY:
        assert message.startswith("N/A")


@pytest.mark.parametrize("files, expected", [
    (0, CheckStatus.OK), (16, CheckStatus.WARNING), (128, CheckStatus.CRITICAL), (None, CheckStatus.UNKNOWN),
])
def test_classify_archive_ready(files, expected):
    assert node_commands.classify_archive_ready(files, 16, 128)[0] == expected


def test_result_renderings():
    result = CheckResult(NodeCheck.ARCHIVE_READY, CheckStatus.WARNING, "20 pending archive ready files",
                         metrics=[("files", 20, 16, 128)], options={"files": 20, "threshold": 128})

    assert result.text() == ["\tArchive ready: WARNING (20 pending archive ready files)"]
    assert result.csv() == "\"Archive ready\",\"WARNING\",\"20 pending archive ready files\""
    assert result.nagios() == "REPMGR_ARCHIVE_READY WARNING: 20 pending archive ready files | files=20;16;128"
    assert result.optformat() == "--archive-ready=WARNING --files=20 --threshold=128"


def test_parse_optformat():
    values = node_commands.parse_optformat("--role=OK --role-name=primary --archive-ready=OK --files=0 "
                                           "--threshold=128 --data-directory-config=OK\n")
    assert values == {"role": "OK", "role-name": "primary", "archive-ready": "OK", "files": "0",
                      "threshold": "128", "data-directory-config": "OK"}


def test_exit_codes():
    ok = CheckResult(NodeCheck.ROLE, CheckStatus.OK, "node is primary")
    critical = CheckResult(NodeCheck.SLOTS, CheckStatus.CRITICAL, "1 of 1 replication slots are inactive")

    assert NodeCheckHandler.exit_code([ok], OUTPUT_TEXT) == ExitCode.SUCCESS
    assert NodeCheckHandler.exit_code([ok, critical], OUTPUT_TEXT) == ExitCode.NODE_STATUS
    assert NodeCheckHandler.exit_code([critical], OUTPUT_NAGIOS) == 2
    assert NodeCheckHandler.exit_code([critical], OUTPUT_OPTFORMAT) == ExitCode.SUCCESS


@pytest.fixture
def check_handler(make_config, options, remote, service):
    return NodeCheckHandler(make_config(), options, remote, service)


def run_checks(handler, record, recovery_type, checks, output_mode):
    with mock.patch.object(handler, "connect_local", return_value=FakeConnection()), \
            mock.patch.object(node_commands.node_store, "require_node_record", return_value=record), \
            mock.patch.object(node_commands.db, "get_recovery_type", return_value=recovery_type), \
            mock.patch.object(node_commands.db, "get_data_directory", return_value="/var/lib/pgsql/data"), \
            mock.patch.object(node_commands.db, "get_ready_archive_files", return_value=3), \
            mock.patch.object(node_commands.db, "get_pg_setting", return_value=handler.data_directory):
        return handler.run(checks, output_mode)


def test_optformat_runs_switchover_checks(check_handler):
    results, lines = run_checks(check_handler, make_record(2, NodeRole.PRIMARY), RecoveryType.PRIMARY, None,
                                OUTPUT_OPTFORMAT)

    assert [r.check for r in results] == list(node_commands.SWITCHOVER_CHECKS)
    assert lines == ["--role=OK --role-name=primary --archive-ready=OK --files=3 --threshold=128 "
                     "--data-directory-config=OK"]


def test_role_mismatch_is_critical(check_handler):
    results, lines = run_checks(check_handler, make_record(2, NodeRole.PRIMARY), RecoveryType.STANDBY,
                                [NodeCheck.ROLE], OUTPUT_NAGIOS)
    assert results[0].status == CheckStatus.CRITICAL
    assert lines == ["REPMGR_ROLE CRITICAL: node is registered as primary but running as standby"]


def test_nagios_requires_one_check(check_handler):
    with pytest.raises(BadConfigError):
        check_handler.run([NodeCheck.ROLE, NodeCheck.SLOTS], OUTPUT_NAGIOS)


def test_service_checkpoint_only_for_stop(make_config, options, remote, service):
    handler = NodeServiceHandler(make_config(), options, remote, service)
    with pytest.raises(BadConfigError):
        handler.run("reload", checkpoint=True)
    service.run.assert_not_called()


def test_service_stop_with_checkpoint_in_dry_run(make_config, options, remote, service):
    options.dry_run = True
    handler = NodeServiceHandler(make_config(), options, remote, service)
    with mock.patch.object(handler, "connect_superuser") as connect_superuser:
        handler.run("stop", checkpoint=True)
    connect_superuser.assert_not_called()
    service.run.assert_called_once_with(ServerAction.STOP)


def test_unknown_service_action(make_config, options, remote, service):
    with pytest.raises(BadConfigError):
        NodeServiceHandler(make_config(), options, remote, service).run("explode")
