from pg_cluster_manager.cluster import node_store
from pg_cluster_manager.cluster.crosscheck import render_table
from pg_cluster_manager.orchestrator.handler import Handler
from pg_cluster_manager.utils import db
from pg_cluster_manager.utils.errors import DbQueryError, RepmgrdPauseError
from pg_cluster_manager.utils.logger import log_detail, notice

PAUSED_SETTING = "repmgrd.paused"
PAUSE_EVENT = "repmgrd_pause"
STATUS_HEADERS = ("ID", "Name", "Role", "Status", "repmgrd", "PID", "Paused?")


class DaemonStatus:
    def __init__(self, record, reachable, paused=None, pid=None):
        self.record = record
        self.reachable = reachable
        self.paused = paused
        self.pid = pid

    @property
    def daemon_status(self):
        if not self.reachable:
            return "n/a"
        return "running" if self.pid else "not running"

    def row(self):
        paused = "n/a" if self.paused is None else ("yes" if self.paused else "no")
        return (self.record.node_id, self.record.node_name, str(self.record.role),
                "running" if self.reachable else "unreachable", self.daemon_status,
                self.pid if self.pid else "n/a", paused)

    def csv(self):
        paused = -1 if self.paused is None else int(self.paused)
        return f"{self.record.node_id},{self.record.node_name},{self.record.role},{int(self.reachable)}," \
               f"{self.pid or -1},{paused}"


class RepmgrdHandler(Handler):
    """Status of the failover daemon on every node and the cluster-wide pause switch."""

    def node_records(self):
        with self.connect_local() as conn:
            return node_store.get_all_node_records(conn)

    def status(self, csv=False):
        """Returns (output lines, warnings)."""
        statuses = []
        warnings = []
        for record in self.node_records():
            with self.connect_quiet(record.conninfo) as conn:
                if not conn.ok:
                    statuses.append(DaemonStatus(record, False))
                    warnings.append(f"unable to connect to node \"{record.node_name}\" (ID: {record.node_id})")
                    continue
                statuses.append(DaemonStatus(record, True, bool(db.get_setting_bool(conn, PAUSED_SETTING)),
                                             db.get_repmgrd_pid(conn)))

        if csv:
            return [s.csv() for s in statuses], warnings
        return render_table(STATUS_HEADERS, [s.row() for s in statuses]), warnings

    def set_paused(self, records, paused, raise_on_failure=True):
        """Writes the pause flag on every node in records. Returns the ids of the nodes which were changed.
        Unreachable nodes make the whole operation fail before anything is changed when raise_on_failure is set."""
        action = "pause" if paused else "unpause"
        connections = []
        unreachable = []
        try:
            for record in records:
                conn = self.connect_superuser(record.conninfo)
                if conn.ok:
                    connections.append((record, conn))
                else:
                    conn.close()
                    unreachable.append(record)

            if unreachable:
                names = ", ".join(f"\"{r.node_name}\" (ID: {r.node_id})" for r in unreachable)
                if raise_on_failure:
                    raise RepmgrdPauseError(f"unable to {action} repmgrd: node(s) unreachable",
                                            detail=f"unable to connect to {names}")
                self.logger.warning(f"Unable to {action} repmgrd on unreachable node(s) {names}.")

            if self.options.dry_run:
                for record, _ in connections:
                    self.logger.info(f"Would {action} repmgrd on node \"{record.node_name}\" (ID: {record.node_id}).")
                return []

            changed = []
            for record, conn in connections:
                try:
                    db.alter_postgre_sql_config(conn, PAUSED_SETTING, "on" if paused else "off")
                except DbQueryError as ex:
                    if raise_on_failure:
                        raise RepmgrdPauseError(f"unable to {action} repmgrd on node {record.node_id}",
                                                detail=ex.detail or ex.message)
                    self.logger.warning(f"Unable to {action} repmgrd on node {record.node_id}.")
                    log_detail(ex.detail or ex.message)
                    continue
                changed.append(record.node_id)
                self.logger.info(f"repmgrd {action}d on node \"{record.node_name}\" (ID: {record.node_id}).")
            return changed
        finally:
            for _, conn in connections:
                conn.close()

    def pause(self, paused=True):
        records = self.node_records()
        changed = self.set_paused(records, paused)
        if self.options.dry_run:
            return changed

        notice(f"repmgrd {'paused' if paused else 'unpaused'} on {len(changed)} node(s).")
        if paused:
            details = f"repmgrd paused on node(s) {', '.join(str(i) for i in changed)}"
            with self.connect_local() as conn:
                primary_record = node_store.get_primary_node_record(conn)
                if primary_record is not None:
                    with self.connect_quiet(primary_record.conninfo) as primary_conn:
                        self.record_event(primary_conn, self.local_node_id, PAUSE_EVENT, True, details)
        return changed
