import enum

from pg_cluster_manager.cluster import node_store
from pg_cluster_manager.cluster.node_role import NodeRole, RecoveryType
from pg_cluster_manager.orchestrator.handler import Handler
from pg_cluster_manager.utils import controldata, db, replication, slots
from pg_cluster_manager.utils.errors import BadConfigError, ExitCode
from pg_cluster_manager.utils.service_control import ServerAction

OUTPUT_TEXT = "text"
OUTPUT_CSV = "csv"
OUTPUT_NAGIOS = "nagios"
OUTPUT_OPTFORMAT = "optformat"


class CheckStatus(enum.IntEnum):
    """Nagios plugin states."""
    OK = 0
    WARNING = 1
    CRITICAL = 2
    UNKNOWN = 3

    def __str__(self):
        return self.name

    def __format__(self, format_spec):
        return format(self.name, format_spec)


class NodeCheck(enum.Enum):
    ROLE = "role"
    REPLICATION_LAG = "replication-lag"
    ARCHIVE_READY = "archive-ready"
    DOWNSTREAM = "downstream"
    SLOTS = "slots"
    MISSING_SLOTS = "missing-slots"
    DATA_DIRECTORY_CONFIG = "data-directory-config"

    @property
    def label(self):
        return self.value.replace("-", " ").capitalize()

    @property
    def nagios_name(self):
        return "REPMGR_" + self.name

    def __str__(self):
        return self.value


# checks run by "node check --optformat" without an explicit check; their output gates a switchover
SWITCHOVER_CHECKS = (NodeCheck.ROLE, NodeCheck.ARCHIVE_READY, NodeCheck.DATA_DIRECTORY_CONFIG)


class CheckResult:
    def __init__(self, check, status, message, details=None, metrics=None, options=None):
        self.check = check
        self.status = status
        self.message = message
        self.details = details or []
        # (name, value, warning, critical) tuples for Nagios performance data
        self.metrics = metrics or []
        # extra key=value pairs for optformat output
        self.options = options or {}

    def text(self):
        line = f"\t{self.check.label}: {self.status} ({self.message})"
        return [line] + [f"\t    - {d}" for d in self.details]

    def csv(self):
        return f"\"{self.check.label}\",\"{self.status}\",\"{self.message}\""

    def nagios(self):
        line = f"{self.check.nagios_name} {self.status}: {self.message}"
        if self.metrics:
            line += " | " + " ".join(f"{name}={value};{warn};{crit}" if warn is not None else f"{name}={value}"
                                     for name, value, warn, crit in self.metrics)
        return line

    def optformat(self):
        parts = [f"--{self.check.value}={self.status}"]
        parts += [f"--{key}={value}" for key, value in self.options.items()]
        return " ".join(parts)


def parse_optformat(output):
    """Parses "--key=value ..." tokens into a dictionary."""
    values = {}
    for token in (output or "").split():
        if token.startswith("--") and "=" in token:
            key, value = token[2:].split("=", 1)
            values[key] = value
    return values


def classify_replication_lag(lag_seconds, warning, critical, recovery_type):
    """Returns (CheckStatus, message) for the apply delay of a node."""
    if recovery_type == RecoveryType.PRIMARY:
        return CheckStatus.OK, "N/A - node is primary"
    if recovery_type != RecoveryType.STANDBY or lag_seconds is None or lag_seconds < 0:
        return CheckStatus.UNKNOWN, "unable to retrieve replication lag"
    if lag_seconds >= critical:
        return CheckStatus.CRITICAL, f"{lag_seconds} seconds (critical: {critical})"
    if lag_seconds >= warning:
        return CheckStatus.WARNING, f"{lag_seconds} seconds (warning: {warning})"
    return CheckStatus.OK, f"{lag_seconds} seconds"


def classify_archive_ready(ready_files, warning, critical):
    if ready_files is None:
        return CheckStatus.UNKNOWN, "unable to check archive_status directory"
    if ready_files >= critical:
        return CheckStatus.CRITICAL, f"{ready_files} pending archive ready files (critical: {critical})"
    if ready_files >= warning:
        return CheckStatus.WARNING, f"{ready_files} pending archive ready files (warning: {warning})"
    return CheckStatus.OK, f"{ready_files} pending archive ready files"


class NodeCheckHandler(Handler):
    """Health checks of the local node, the way monitoring and switchover consume them."""

    def run(self, checks=None, output_mode=OUTPUT_TEXT):
        """Runs the checks, returns (results, output lines)."""
        if not checks:
            checks = list(SWITCHOVER_CHECKS) if output_mode == OUTPUT_OPTFORMAT else list(NodeCheck)
        if output_mode == OUTPUT_NAGIOS and len(checks) != 1:
            raise BadConfigError("--nagios requires exactly one check option")

        with self.connect_local() as conn:
            record = node_store.require_node_record(conn, self.local_node_id)
            recovery_type = db.get_recovery_type(conn)
            results = [self.check(check, conn, record, recovery_type) for check in checks]

        return results, self.render(record, results, output_mode)

    @staticmethod
    def exit_code(results, output_mode):
        worst = max((r.status for r in results), default=CheckStatus.OK)
        if output_mode == OUTPUT_NAGIOS:
            return int(worst)
        if output_mode == OUTPUT_OPTFORMAT or worst == CheckStatus.OK:
            return ExitCode.SUCCESS
        return ExitCode.NODE_STATUS

    @staticmethod
    def render(record, results, output_mode):
        if output_mode == OUTPUT_CSV:
            return [r.csv() for r in results]
        if output_mode == OUTPUT_NAGIOS:
            return [r.nagios() for r in results]
        if output_mode == OUTPUT_OPTFORMAT:
            return [" ".join(r.optformat() for r in results)]
        lines = [f"Node \"{record.node_name}\":"]
        for r in results:
            lines += r.text()
        return lines

    def check(self, check, conn, record, recovery_type):
        method = getattr(self, "check_" + check.name.lower())
        return method(conn, record, recovery_type)

    def check_role(self, conn, record, recovery_type):
        if recovery_type == RecoveryType.UNKNOWN:
            return CheckResult(NodeCheck.ROLE, CheckStatus.UNKNOWN, "unable to determine node recovery status")

        expected = RecoveryType.STANDBY if record.role == NodeRole.STANDBY else RecoveryType.PRIMARY
        if record.role == NodeRole.STANDBY:
            running_as = "standby" if recovery_type == RecoveryType.STANDBY else "primary"
        else:
            running_as = "primary" if recovery_type == RecoveryType.PRIMARY else "standby"
        if recovery_type != expected:
            return CheckResult(NodeCheck.ROLE, CheckStatus.CRITICAL,
                               f"node is registered as {record.role} but running as {running_as}")
        return CheckResult(NodeCheck.ROLE, CheckStatus.OK, f"node is {record.role}",
                           options={"role-name": str(record.role)})

    def check_replication_lag(self, conn, record, recovery_type):
        lag = db.get_replication_lag_seconds(conn) if recovery_type == RecoveryType.STANDBY else 0
        status, message = classify_replication_lag(lag, self.config.replication_lag_warning,
                                                   self.config.replication_lag_critical, recovery_type)
        metrics = []
        if recovery_type == RecoveryType.STANDBY and lag >= 0:
            metrics.append(("lag", f"{lag}s", self.config.replication_lag_warning,
                            self.config.replication_lag_critical))
        return CheckResult(NodeCheck.REPLICATION_LAG, status, message, metrics=metrics,
                           options={"lag": lag})

    def check_archive_ready(self, conn, record, recovery_type):
        data_directory = db.get_data_directory(conn, self.data_directory)
        ready = db.get_ready_archive_files(data_directory) if data_directory else None
        status, message = classify_archive_ready(ready, self.config.archive_ready_warning,
                                                 self.config.archive_ready_critical)
        metrics = []
        options = {}
        if ready is not None:
            metrics.append(("files", ready, self.config.archive_ready_warning, self.config.archive_ready_critical))
            options = {"files": ready, "threshold": self.config.archive_ready_critical}
        return CheckResult(NodeCheck.ARCHIVE_READY, status, message, metrics=metrics, options=options)

    def check_downstream(self, conn, record, recovery_type):
        downstream = node_store.get_downstream_node_records(conn, record.node_id, active_only=True)
        if not downstream:
            return CheckResult(NodeCheck.DOWNSTREAM, CheckStatus.OK, "this node has no downstream nodes")

        missing = [r for r in downstream
                   if replication.is_downstream_node_attached(conn, r.node_name) != replication.NodeAttached.ATTACHED]
        attached = len(downstream) - len(missing)
        metrics = [("attached", attached, None, None), ("missing", len(missing), None, None)]
        if missing:
            return CheckResult(NodeCheck.DOWNSTREAM, CheckStatus.CRITICAL,
                               f"{len(missing)} of {len(downstream)} downstream nodes not attached",
                               details=[f"{r.node_name} (ID: {r.node_id})" for r in missing], metrics=metrics)
        return CheckResult(NodeCheck.DOWNSTREAM, CheckStatus.OK, f"{attached} of {len(downstream)} downstream "
                                                                 f"nodes attached", metrics=metrics)

    def check_slots(self, conn, record, recovery_type):
        inactive = slots.get_inactive_replication_slots(conn)
        if inactive:
            return CheckResult(NodeCheck.SLOTS, CheckStatus.CRITICAL,
                               f"{len(inactive)} of {len(slots.get_all_slots(conn))} replication "
                               f"slots are inactive", details=[f"{n}: {r}" for n, r in inactive],
                               metrics=[("inactive", len(inactive), None, None)])
        return CheckResult(NodeCheck.SLOTS, CheckStatus.OK, "node has no inactive physical replication slots")

    def check_missing_slots(self, conn, record, recovery_type):
        missing = slots.get_downstream_nodes_with_missing_slot(conn, record.node_id,
                                                               use_replication_slots=self.config.use_replication_slots)
        if missing:
            return CheckResult(NodeCheck.MISSING_SLOTS, CheckStatus.CRITICAL,
                               f"{len(missing)} physical replication slots are missing",
                               details=[r.slot_name for r in missing],
                               metrics=[("missing", len(missing), None, None)])
        return CheckResult(NodeCheck.MISSING_SLOTS, CheckStatus.OK, "node has no missing physical replication slots")

    def check_data_directory_config(self, conn, record, recovery_type):
        configured = self.data_directory
        if not configured:
            return CheckResult(NodeCheck.DATA_DIRECTORY_CONFIG, CheckStatus.UNKNOWN,
                               "\"data_directory\" is not configured")
        actual = db.get_pg_setting(conn, "data_directory")
        if not actual:
            return CheckResult(NodeCheck.DATA_DIRECTORY_CONFIG, CheckStatus.UNKNOWN,
                               "unable to read the data directory from the server")
        if actual.rstrip("/") != configured.rstrip("/"):
            return CheckResult(NodeCheck.DATA_DIRECTORY_CONFIG, CheckStatus.CRITICAL,
                               f"configured \"data_directory\" is \"{configured}\"; "
                               f"PostgreSQL reports \"{actual}\"")
        return CheckResult(NodeCheck.DATA_DIRECTORY_CONFIG, CheckStatus.OK,
                           "configured \"data_directory\" is the same as the PostgreSQL data directory")


class NodeStatusHandler(Handler):
    """Report of the local node's state, or its shutdown state for a switchover."""

    def is_shutdown_cleanly(self):
        """Returns the single line printed by "node status --is-shutdown-cleanly"."""
        if not self.data_directory:
            self.config.require_data_directory()
        status, control = controldata.get_server_status(self.local_conninfo, self.data_directory,
                                                        self.config.pg_bindir)
        return controldata.format_shutdown_status(status, control.checkpoint_lsn if control else None)

    def run(self, csv=False):
        """Returns (report lines, warnings)."""
        warnings = []
        with self.connect_local() as conn:
            record = node_store.require_node_record(conn, self.local_node_id)
            recovery_type = db.get_recovery_type(conn)
            _, server_version = db.get_server_version(conn)
            info = db.get_replication_info(conn, recovery_type)
            stats = db.get_node_replication_stats(conn)

            items = [
                ("PostgreSQL version", server_version),
                ("Total data size", db.get_cluster_size(conn) or "n/a"),
                ("Conninfo", record.conninfo),
                ("Role", str(record.role)),
                ("WAL archiving", db.get_pg_setting(conn, "archive_mode") or "n/a"),
            ]

            data_directory = db.get_data_directory(conn, self.data_directory)
            ready = db.get_ready_archive_files(data_directory) if data_directory else None
            items.append(("WALs pending archiving", "n/a" if ready is None else f"{ready} pending files"))
            if ready is not None and ready >= self.config.archive_ready_warning:
                warnings.append(f"{ready} WAL files pending archiving")

            items.append(("Replication connections",
                          f"{stats['attached_wal_receivers']} (of maximal {stats['max_wal_senders']})"))
            items.append(("Replication slots",
                          f"{stats['active_replication_slots']} physical (of maximal {stats['max_replication_slots']}; "
                          f"{stats['inactive_replication_slots']} inactive)"))

            if record.role.expects_upstream:
                items.append(("Upstream node", f"{record.upstream_node_name} (ID: {record.upstream_node_id})"))
                lag = info.replication_lag_seconds
                items.append(("Replication lag", "n/a" if lag < 0 else f"{lag} seconds"))
                items.append(("Last received LSN", info.last_wal_receive_lsn or "(none)"))
                items.append(("Last replayed LSN", info.last_wal_replay_lsn or "(none)"))
            else:
                items.append(("Replication lag", "n/a"))

            if record.role == NodeRole.PRIMARY and recovery_type != RecoveryType.PRIMARY or \
                    record.role == NodeRole.STANDBY and recovery_type != RecoveryType.STANDBY:
                warnings.append(f"node \"{record.node_name}\" (ID: {record.node_id}) is registered as {record.role} "
                                f"but running as {recovery_type}")
            if not record.active:
                warnings.append(f"node \"{record.node_name}\" (ID: {record.node_id}) is registered as inactive")
            for name, reason in slots.get_inactive_replication_slots(conn):
                warnings.append(f"replication slot \"{name}\" is inactive ({reason})")
            for missing in slots.get_downstream_nodes_with_missing_slot(
                    conn, record.node_id, use_replication_slots=self.config.use_replication_slots):
                warnings.append(f"physical replication slot \"{missing.slot_name}\" for node "
                                f"\"{missing.node_name}\" (ID: {missing.node_id}) is missing")

        if csv:
            lines = [f"\"{key}\",\"{value}\"" for key, value in items]
        else:
            lines = [f"Node \"{record.node_name}\":"] + [f"\t{key}: {value}" for key, value in items]
        return lines, warnings


class NodeServiceHandler(Handler):
    """Runs a service action on the local server."""

    def list_actions(self):
        return [f"{action}: \"{command}\"" for action, command in self.service.list_actions()]

    def run(self, action, checkpoint=False):
        action = ServerAction.parse(action)
        if checkpoint:
            if action not in (ServerAction.STOP, ServerAction.RESTART):
                raise BadConfigError("--checkpoint can only be used with the \"stop\" or \"restart\" actions")
            self.checkpoint()
        return self.service.run(action)

    def checkpoint(self):
        """CHECKPOINT before a shutdown shortens the shutdown checkpoint; skipped when not a superuser."""
        if self.options.dry_run:
            self.logger.info("Would execute CHECKPOINT.")
            return
        with self.connect_superuser(self.local_conninfo) as conn:
            if not conn.ok:
                self.logger.warning("Unable to connect to the local node; CHECKPOINT not executed.")
                return
            if not db.is_superuser_connection(conn):
                self.logger.warning("CHECKPOINT requires a superuser connection; not executed.")
                return
            db.checkpoint(conn)
