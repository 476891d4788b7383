import pytest

from pg_cluster_manager.utils import shell
from pg_cluster_manager.utils.remote import RemoteExecutor


@pytest.mark.parametrize("conninfo, expected", [
    ("host=node1 port=5432 dbname=repmgr", {"host": "node1", "port": "5432", "dbname": "repmgr"}),
    ("host=node1 password='se cret\\'s'", {"host": "node1", "password": "se cret's"}),
    ("postgresql://repmgr:pw@node1:5433/repmgr?connect_timeout=2",
     {"host": "node1", "port": "5433", "user": "repmgr", "password": "pw", "dbname": "repmgr",
      "connect_timeout": "2"}),
])
def test_parse_connection_string(conninfo, expected):
    assert shell.parse_postgre_sql_connection_string(conninfo) == expected


def test_make_connection_string_quotes_values():
    conninfo = shell.make_postgre_sql_connection_string({"host": "node1", "password": "a b", "options": ""})
    assert conninfo == "host=node1 password='a b' options=''"


def test_get_conninfo_value_of_invalid_string():
    assert shell.get_conninfo_value("not a conninfo", "host", "default") == "default"


def test_command_result_sigpipe_is_success():
    assert shell.CommandResult(141).success
    assert not shell.CommandResult(1).success


def test_execute_cmd_captures_output():
    result = shell.execute_cmd("echo out; echo err >&2; exit 3")
    assert result.returncode == 3
    assert result.output.strip() == "out"
    assert result.error_output.strip() == "err"


def test_make_pg_path():
    assert shell.make_pg_path("", "pg_ctl") == "pg_ctl"
    assert shell.make_pg_path("/usr/pgsql/bin", "pg_ctl") == "/usr/pgsql/bin/pg_ctl"


def test_ssh_command():
    executor = RemoteExecutor(ssh_options="-p 2222", remote_user="postgres")
    assert executor.make_ssh_command("node1", "true") == "ssh -o Batchmode=yes -p 2222 postgres@node1 true"


def test_remote_invocation_passes_connection_and_node():
    executor = RemoteExecutor(manager_bindir="/opt/bin", pg_bindir="/usr/pgsql/bin")
    command = executor.make_remote_invocation("cluster matrix --csv", conninfo="host=node2 dbname=repmgr",
                                              node_id=2)
    assert command == shell.quote("/opt/bin/pg-cluster-manager -d 'host=node2 dbname=repmgr' --node-id=2 "
                                  "-b /usr/pgsql/bin --log-level=ERROR --terse cluster matrix --csv")


def test_remote_invocation_with_config_file():
    executor = RemoteExecutor()
    command = executor.make_remote_invocation("node check --optformat", config_file="/etc/node1.ini",
                                              log_level=None, terse=False)
    assert command == shell.quote("pg-cluster-manager -f /etc/node1.ini node check --optformat")
