from pg_cluster_manager.cluster.node_role import NodeRole

NO_UPSTREAM = None


class NodeRecord:
    """A row of repmgr.nodes."""

    COLUMNS = ("node_id", "upstream_node_id", "active", "node_name", "type", "location", "priority",
               "conninfo", "repluser", "slot_name", "config_file")

    def __init__(self, node_id, node_name, role, conninfo, upstream_node_id=NO_UPSTREAM, active=True,
                 location="default", priority=100, repluser="", slot_name="", config_file="",
                 upstream_node_name=None):
        self.node_id = node_id
        self.node_name = node_name
        self.role = role
        self.conninfo = conninfo
        self.upstream_node_id = upstream_node_id
        self.active = active
        self.location = location
        self.priority = priority
        self.repluser = repluser
        self.slot_name = slot_name or ""
        self.config_file = config_file or ""
        self.upstream_node_name = upstream_node_name

    @classmethod
    def from_row(cls, row):
        """Builds a record from a row selected with NodeRecord.COLUMNS (plus an optional upstream name)."""
        return cls(node_id=row[0], upstream_node_id=row[1], active=bool(row[2]), node_name=row[3],
                   role=NodeRole.parse(row[4]), location=row[5], priority=row[6], conninfo=row[7],
                   repluser=row[8], slot_name=row[9], config_file=row[10],
                   upstream_node_name=row[11] if len(row) > 11 else None)

    @classmethod
    def from_config(cls, config, role, upstream_node_id=NO_UPSTREAM):
        return cls(node_id=config.node_id, node_name=config.node_name, role=role, conninfo=config.conninfo,
                   upstream_node_id=upstream_node_id, active=True, location=config.location,
                   priority=config.priority, repluser=config.replication_user,
                   slot_name=config.make_slot_name() if config.use_replication_slots else "",
                   config_file=config.config_file)

    def copy(self):
        return NodeRecord(**self.__dict__)

    def __eq__(self, other):
        return isinstance(other, NodeRecord) and self.__dict__ == other.__dict__

    def __str__(self):
        upstream = self.upstream_node_id if self.upstream_node_id is not None else "-"
        return f"node_id={self.node_id} name={self.node_name} role={self.role} upstream={upstream} " \
               f"active={self.active}"

    def __repr__(self):
        return self.__str__()
