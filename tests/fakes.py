from pg_cluster_manager.cluster.node_record import NodeRecord
from pg_cluster_manager.cluster.node_role import NodeRole
from pg_cluster_manager.utils.remote import RemoteResult


class FakeConnection:
    """Stands in for DbConnection: tracks whether it is open and is usable as a context manager."""

    def __init__(self, name="local", ok=True):
        self.name = name
        self._ok = ok
        self.closed = False
        self.in_transaction = False

    @property
    def ok(self):
        return self._ok and not self.closed

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        return f"FakeConnection({self.name!r})"


def make_record(node_id, role=NodeRole.STANDBY, upstream_node_id=None, active=True, name=None, slot_name=""):
    name = name or f"node{node_id}"
    return NodeRecord(node_id, name, role, f"host={name} dbname=repmgr user=repmgr",
                      upstream_node_id=upstream_node_id, active=active, slot_name=slot_name,
                      config_file=f"/etc/pg-cluster-manager/{name}.ini")


def remote_ok(output=""):
    return RemoteResult(0, output, "")
