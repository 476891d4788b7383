import os
import stat

from pg_cluster_manager.utils import config_archive

FILES = ["postgresql.conf", "pg_hba.conf", "postgresql.auto.conf"]


def make_data_directory(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "postgresql.conf").write_bytes(b"shared_buffers = 128MB\n")
    (data_dir / "pg_hba.conf").write_bytes(b"host replication repmgr 10.0.0.0/8 md5\n")
    os.chmod(data_dir / "pg_hba.conf", 0o644)
    return data_dir


def test_archive_then_restore_is_identical(tmp_path):
    data_dir = make_data_directory(tmp_path)
    originals = {name: (data_dir / name).read_bytes() for name in ("postgresql.conf", "pg_hba.conf")}
    archive_root = str(tmp_path / "archive")

    archive_dir, archived = config_archive.archive_config_files(str(data_dir), FILES, archive_root, "node1")

    assert archived == ["postgresql.conf", "pg_hba.conf"]
    assert sorted(os.listdir(archive_dir)) == ["pg_hba.conf", "postgresql.conf"]

    # pg_rewind copies the configuration of the source server
    (data_dir / "postgresql.conf").write_bytes(b"shared_buffers = 1GB\n")
    (data_dir / "pg_hba.conf").unlink()

    restored, failed = config_archive.restore_config_files(str(data_dir), archive_root, "node1")

    assert sorted(restored) == ["pg_hba.conf", "postgresql.conf"]
    assert failed == []
    for name, content in originals.items():
        assert (data_dir / name).read_bytes() == content
        assert stat.S_IMODE(os.stat(data_dir / name).st_mode) == 0o600
    assert not os.path.exists(archive_dir)


def test_archive_clears_stale_files(tmp_path):
    data_dir = make_data_directory(tmp_path)
    archive_root = str(tmp_path / "archive")
    archive_dir = config_archive.get_archive_dir(archive_root, "node1")
    os.makedirs(archive_dir)
    with open(os.path.join(archive_dir, "stale.conf"), "w") as f:
        f.write("old")

    config_archive.archive_config_files(str(data_dir), ["postgresql.conf"], archive_root, "node1")

    assert os.listdir(archive_dir) == ["postgresql.conf"]


def test_restore_without_archive(tmp_path):
    assert config_archive.restore_config_files(str(tmp_path), str(tmp_path / "archive"), "node1") == ([], [])


def test_archive_dir_name():
    assert config_archive.get_archive_dir("/var/tmp", "node1") == "/var/tmp/repmgr-config-archive-node1"
    assert config_archive.get_archive_dir("", "node1") == "/tmp/repmgr-config-archive-node1"
