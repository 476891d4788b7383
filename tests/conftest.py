from unittest import mock

import pytest

from pg_cluster_manager.utils.config import NodeConfig, RuntimeOptions
from tests.fakes import remote_ok


@pytest.fixture
def make_config(tmp_path):
    def factory(**settings):
        values = {
            "node_id": "2",
            "node_name": "node2",
            "conninfo": "host=node2 dbname=repmgr user=repmgr",
            "data_directory": str(tmp_path / "data"),
            "promote_check_timeout": "1",
            "primary_follow_timeout": "0",
            "standby_follow_timeout": "0",
            "shutdown_check_timeout": "0",
            "wal_receive_check_timeout": "0",
            "node_rejoin_timeout": "0",
            "switchover_lag_timeout": "0",
            "config_archive_dir": str(tmp_path / "archive"),
        }
        values.update({k: str(v) for k, v in settings.items()})
        return NodeConfig(values, str(tmp_path / "config.ini"))
    return factory


@pytest.fixture
def options():
    return RuntimeOptions()


@pytest.fixture
def remote():
    executor = mock.Mock()
    executor.make_remote_invocation.side_effect = lambda arguments, **kwargs: arguments
    executor.test_ssh_connection.return_value = True
    executor.remote_command.return_value = remote_ok()
    return executor


@pytest.fixture
def service():
    return mock.Mock()
