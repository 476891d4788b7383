import pytest

from pg_cluster_manager.utils.config import DEFAULT_PG_REWIND_COMMAND, RuntimeOptions, load_config_ini
from pg_cluster_manager.utils.errors import BadConfigError


def write_config(tmp_path, body):
    path = tmp_path / "node.ini"
    path.write_text(body, encoding="utf-8")
    return str(path)


def test_load_config_with_defaults(tmp_path):
    path = write_config(tmp_path, "[main]\n"
                                  "node_id = 3\n"
                                  "node_name = node3\n"
                                  "conninfo = host=node3 user=repmgr dbname=repmgr\n"
                                  "use_replication_slots = yes\n")

    config = load_config_ini(path)

    assert config.node_id == 3
    assert config.has_node_identity
    assert config.use_replication_slots is True
    assert config.replication_user == "repmgr"
    assert config.pg_rewind_command == DEFAULT_PG_REWIND_COMMAND
    assert config.switchover_lag_threshold == 16777216
    assert config.config_file_list == ["postgresql.conf", "postgresql.auto.conf", "pg_hba.conf", "pg_ident.conf"]
    assert config.make_slot_name() == "repmgr_slot_3"


def test_overrides_take_precedence(tmp_path):
    path = write_config(tmp_path, "[main]\npg_bindir = /usr/lib/postgresql/15/bin\n")
    config = load_config_ini(path, {"pg_bindir": "/opt/pg/bin", "data_directory": None})
    assert config.pg_bindir == "/opt/pg/bin"
    assert config.data_directory == ""


def test_errors_are_collected(tmp_path):
    path = write_config(tmp_path, "[main]\n"
                                  "priority = high\n"
                                  "archive_ready_warning = 200\n"
                                  "archive_ready_critical = 100\n"
                                  "use_replication_slots = maybe\n")

    with pytest.raises(BadConfigError) as ex:
        load_config_ini(path)

    assert len(ex.value.errors) == 3


def test_missing_file(tmp_path):
    with pytest.raises(BadConfigError):
        load_config_ini(str(tmp_path / "missing.ini"))


def test_missing_main_section(tmp_path):
    with pytest.raises(BadConfigError):
        load_config_ini(write_config(tmp_path, "[other]\nnode_id = 1\n"))


def test_require_node_identity(make_config):
    config = make_config(node_name="")
    with pytest.raises(BadConfigError) as ex:
        config.require_node_identity()
    assert "node_name" in ex.value.message


def test_source_conninfo_from_parameters():
    options = RuntimeOptions(host="node1", port="5433", username="repmgr", dbname="repmgr")
    assert options.source_conninfo() == "dbname=repmgr host=node1 port=5433 user=repmgr"


def test_source_conninfo_from_connection_string():
    options = RuntimeOptions(dbname="host=node1 dbname=repmgr", port="5433")
    assert options.source_conninfo() == "host=node1 dbname=repmgr port=5433"


def test_no_source_conninfo():
    assert RuntimeOptions().source_conninfo() is None
