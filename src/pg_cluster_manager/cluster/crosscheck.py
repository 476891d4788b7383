import logging

from pg_cluster_manager.cluster import matrix as mx
from pg_cluster_manager.cluster import node_store
from pg_cluster_manager.cluster.node_role import NodeRole, RecoveryType
from pg_cluster_manager.utils import db, shell
from pg_cluster_manager.utils.errors import BadConfigError, ExitCode

SHOW_HEADERS = ("ID", "Name", "Role", "Status", "Upstream", "Location", "Connection string")


class ShowRow:
    def __init__(self, record, reachable, recovery_type, details):
        self.record = record
        self.reachable = reachable
        self.recovery_type = recovery_type
        self.details = details

    @property
    def connection_status(self):
        return mx.UP if self.reachable else mx.DOWN

    def csv(self):
        return f"{self.record.node_id},{self.connection_status},{self.recovery_type.csv_value}"


class ShowResult:
    def __init__(self, rows, warnings):
        self.rows = rows
        self.warnings = warnings

    @property
    def exit_code(self):
        return ExitCode.NODE_STATUS if self.warnings else ExitCode.SUCCESS


class MatrixResult:
    def __init__(self, matrix, warnings=None, ssh_failures=None, connection_failures=None, cube=None):
        self.matrix = matrix
        self.warnings = warnings or []
        self.ssh_failures = ssh_failures or []
        self.connection_failures = connection_failures or []
        self.cube = cube

    @property
    def exit_code(self):
        if self.ssh_failures:
            return ExitCode.BAD_SSH
        if self.connection_failures:
            return ExitCode.NODE_STATUS
        return ExitCode.SUCCESS


def node_status_details(record, reachable, recovery_type):
    """Returns (status text, warning or None) for a row of cluster show."""
    label = f"node \"{record.node_name}\" (ID: {record.node_id})"

    if record.role.streams_wal:
        expected = RecoveryType.PRIMARY if record.role == NodeRole.PRIMARY else RecoveryType.STANDBY
        other = "standby" if record.role == NodeRole.PRIMARY else "primary"

        if not reachable:
            if record.active:
                return "? unreachable", f"{label} is registered as an active {record.role} but is unreachable"
            return "- failed", None

        if record.active:
            if recovery_type == expected:
                return ("* running" if record.role == NodeRole.PRIMARY else "  running"), None
            if recovery_type == RecoveryType.UNKNOWN:
                return "! unknown", f"{label} has unknown replication status"
            return f"! running as {other}", f"{label} is registered as {record.role} but running as {other}"

        if recovery_type == expected:
            return "! running", f"{label} is running but the node record is inactive"
        if record.role == NodeRole.PRIMARY:
            return "! running as standby", f"{label} is registered as an inactive primary but running as standby"
        return "! running as primary", f"{label} is running as primary but the node record is inactive"

    if record.role in (NodeRole.WITNESS, NodeRole.BDR):
        if reachable:
            return ("* running" if record.active else "! running"), None
        return ("? unreachable" if record.active else "- failed"), None

    return "? unknown node type", None


def render_table(headers, rows):
    """Renders rows as a left-aligned table with a header and a separator line."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(str(value)))

    lines = [(" " + " | ".join(f"{h:<{widths[i]}}" for i, h in enumerate(headers))).rstrip(),
             "-" + "-+-".join("-" * w for w in widths) + "-"]
    for row in rows:
        lines.append((" " + " | ".join(f"{str(v):<{widths[i]}}" for i, v in enumerate(row))).rstrip())
    return lines


def render_show(result, csv=False):
    if csv:
        return [row.csv() for row in result.rows]
    return render_table(SHOW_HEADERS, [(r.record.node_id, r.record.node_name, str(r.record.role), r.details,
                                        r.record.upstream_node_name or "", r.record.location, r.record.conninfo)
                                       for r in result.rows])


class CrosscheckEngine:
    """Builds the per-node view (show), one node's view of all pairs (matrix) and
    the view of every node (crosscheck)."""

    def __init__(self, conn, remote, connect=db.establish_db_connection_quiet, connect_timeout=5):
        self.logger = logging.getLogger("logger")
        self.conn = conn
        self.remote = remote
        self.connect = connect
        self.connect_timeout = connect_timeout

    def get_node_records(self):
        records = node_store.get_all_node_records_with_upstream(self.conn)
        if not records:
            raise BadConfigError("unable to retrieve any node records")
        return records

    def probe(self, record):
        """Opens a brief connection to the node; returns (reachable, recovery type)."""
        node_conn = self.connect(record.conninfo, self.connect_timeout)
        try:
            if not node_conn.ok:
                return False, RecoveryType.UNKNOWN
            return True, db.get_recovery_type(node_conn)
        finally:
            node_conn.close()

    def show(self):
        rows, warnings = [], []
        for record in self.get_node_records():
            reachable, recovery_type = self.probe(record)
            details, warning = node_status_details(record, reachable, recovery_type)
            rows.append(ShowRow(record, reachable, recovery_type, details))
            if warning:
                warnings.append(warning)
        return ShowResult(rows, warnings)

    def _run_remote(self, record, arguments, node_id=None):
        host = shell.get_conninfo_value(record.conninfo, "host", "")
        command = self.remote.make_remote_invocation(arguments, conninfo=record.conninfo, node_id=node_id)
        self.logger.debug(f"Executing on node {record.node_id}: {command}")
        return self.remote.remote_command(host, command)

    def matrix(self, local_node_id, records=None):
        if records is None:
            records = self.get_node_records()
        self._require_local_node(local_node_id, records)

        matrix = mx.ConnectivityMatrix([(r.node_id, r.node_name) for r in records])
        result = MatrixResult(matrix)

        for record in records:
            node_conn = self.connect(record.conninfo, self.connect_timeout)
            reachable = node_conn.ok
            node_conn.close()

            matrix.set(local_node_id, record.node_id, mx.UP if reachable else mx.DOWN)
            if not reachable:
                result.connection_failures.append(record.node_id)
                continue
            if record.node_id == local_node_id:
                continue

            output = self._run_remote(record, "cluster show --csv")
            if output.inaccessible:
                result.ssh_failures.append(record.node_id)
                result.warnings.append(f"node {record.node_id} inaccessible via SSH")
                continue

            statuses, warnings = mx.parse_show_csv(output.output, record.node_id)
            result.warnings.extend(warnings)
            for node_id, connection_status in statuses.items():
                if node_id in matrix:
                    matrix.set(record.node_id, node_id, mx.DOWN if connection_status == mx.DOWN else mx.UP)

        return result

    def crosscheck(self, local_node_id):
        records = self.get_node_records()
        self._require_local_node(local_node_id, records)

        nodes = [(r.node_id, r.node_name) for r in records]
        cube = mx.ConnectivityCube(nodes)
        warnings, ssh_failures = [], []

        for record in records:
            if record.node_id == local_node_id:
                local_result = self.matrix(local_node_id, records)
                cube.matrices[local_node_id] = local_result.matrix
                warnings.extend(local_result.warnings)
                continue

            output = self._run_remote(record, "cluster matrix --csv", node_id=record.node_id)
            if output.inaccessible:
                ssh_failures.append(record.node_id)
                warnings.append(f"node {record.node_id} inaccessible via SSH")
                continue
            warnings.extend(mx.parse_matrix_csv(output.output, cube[record.node_id], record.node_id))

        folded = cube.fold()
        down = sorted({j for (i, j), status in folded.cells.items() if status == mx.DOWN})
        return MatrixResult(folded, warnings, ssh_failures, down, cube)

    @staticmethod
    def _require_local_node(local_node_id, records):
        if local_node_id is None or local_node_id not in [r.node_id for r in records]:
            raise BadConfigError(f"no record found for local node {local_node_id}",
                                 hint="provide --node-id or a configuration file with -f/--config-file")
