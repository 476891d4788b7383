import enum
import logging
import time

from pg_cluster_manager.cluster.node_role import RecoveryType
from pg_cluster_manager.utils import db, shell
from pg_cluster_manager.utils.errors import DbConnectionError, DbQueryError, NodeStatusError, SuperuserRequiredError
from pg_cluster_manager.utils.logger import log_detail, log_hint

UNKNOWN_REPLICATION_LAG = db.UNKNOWN_REPLICATION_LAG
WALRECEIVER_DISABLE_TIMEOUT_VALUE = 86400000
DEFAULT_WAL_RETRIEVE_RETRY_INTERVAL = 5000
WAL_RECEIVER_TERMINATE_RETRIES = 2
WAL_RECEIVER_STARTUP_TIMEOUT = 30


class NodeAttached(enum.Enum):
    ATTACHED = "attached"
    DETACHED = "detached"
    UNKNOWN = "unknown"


def parse_lsn(lsn):
    """Converts replication position (such as 0/21B1A540) to number."""
    if not lsn:
        return 0

    log_id, offset = lsn.split("/")
    return int(log_id, 16) << 32 | int(offset, 16)


def format_lsn(value):
    return f"{value >> 32:X}/{value & 0xFFFFFFFF:X}"


def is_downstream_node_attached(upstream_conn, node_name):
    """Inspects pg_stat_replication on the upstream for a WAL sender serving node_name."""
    logger = logging.getLogger("logger")
    try:
        rows = db.fetch_all(upstream_conn, "SELECT pid, state FROM pg_catalog.pg_stat_replication "
                                           "WHERE application_name = %s", (node_name,))
    except DbQueryError as ex:
        logger.warning(f"Unable to query pg_stat_replication: {ex.detail}")
        return NodeAttached.UNKNOWN

    if not rows:
        logger.debug(f"Node \"{node_name}\" not found in pg_stat_replication.")
        return NodeAttached.DETACHED
    if len(rows) > 1:
        logger.warning(f"Multiple entries with application_name \"{node_name}\" found in pg_stat_replication.")

    state = rows[0][1]
    if state in ("streaming", "catchup"):
        return NodeAttached.ATTACHED
    logger.debug(f"Node \"{node_name}\" has state \"{state}\" in pg_stat_replication.")
    return NodeAttached.DETACHED


def wait_until_attached(upstream_conn, node_name, timeout, interval=1):
    """Polls the upstream until node_name is attached or the timeout expires."""
    deadline = time.monotonic() + timeout
    while True:
        if is_downstream_node_attached(upstream_conn, node_name) == NodeAttached.ATTACHED:
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)


def get_replication_lag_seconds(conn):
    return db.get_replication_lag_seconds(conn)


def parse_timeline_history(content):
    """Parses a timeline history file into a list of (timeline_id, switchpoint) ordered by timeline.
    The switchpoint is the LSN at which the timeline ended."""
    history = []
    for line in (content or "").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        fields = line.split()
        if len(fields) < 2:
            continue
        try:
            history.append((int(fields[0]), parse_lsn(fields[1])))
        except ValueError:
            continue
    return history


def can_attach(local_tli, local_lsn, upstream_tli, upstream_lsn, history):
    """Checks whether a node whose WAL ends at local_lsn on local_tli can stream from an upstream
    currently at upstream_lsn on upstream_tli. Returns (bool, reason)."""
    if local_tli > upstream_tli:
        return False, f"local timeline {local_tli} is higher than the upstream's timeline {upstream_tli}"

    if local_tli == upstream_tli:
        if upstream_lsn is not None and local_lsn > upstream_lsn:
            return False, f"local node WAL location {format_lsn(local_lsn)} is ahead of the upstream's " \
                          f"location {format_lsn(upstream_lsn)}"
        return True, f"local node and upstream are on timeline {local_tli}"

    switchpoint = None
    for tli, end in history:
        if tli == local_tli:
            switchpoint = end
            break

    if switchpoint is None:
        return False, f"timeline {local_tli} not found in the upstream's timeline history"

    if local_lsn > switchpoint:
        return False, f"local node WAL location {format_lsn(local_lsn)} is ahead of the upstream's " \
                      f"fork point {format_lsn(switchpoint)} on timeline {local_tli}"

    return True, f"local node WAL location {format_lsn(local_lsn)} precedes the upstream's fork point " \
                 f"{format_lsn(switchpoint)} on timeline {local_tli}"


def make_replication_conninfo(record):
    fields = shell.parse_postgre_sql_connection_string(record.conninfo)
    if record.repluser:
        fields["user"] = record.repluser
    fields.pop("replication", None)
    fields["dbname"] = "replication"
    return shell.make_postgre_sql_connection_string(fields)


def check_node_can_attach(local_tli, local_lsn, upstream_record, is_rejoin, local_system_identifier=None,
                          connect_timeout=5):
    """Validates that the local end-of-WAL position is reachable from the upstream's timeline history."""
    logger = logging.getLogger("logger")
    action = "rejoin" if is_rejoin else "follow"

    try:
        repl_conn = db.open_replication_connection(make_replication_conninfo(upstream_record), connect_timeout)
    except DbConnectionError as ex:
        logger.error(f"Unable to establish a replication connection to the {action} target node.")
        log_detail(ex.detail)
        return False

    try:
        system_identifier, upstream_tli, upstream_xlogpos = db.identify_system(repl_conn)

        if local_system_identifier and system_identifier != local_system_identifier:
            logger.error(f"This node is not part of the {action} target node's replication cluster.")
            log_detail(f"This node's system identifier is {local_system_identifier}, "
                       f"{action} target node's system identifier is {system_identifier}.")
            return False

        history = []
        if upstream_tli > local_tli:
            history = parse_timeline_history(db.get_timeline_history(repl_conn, upstream_tli))
    except DbQueryError as ex:
        logger.error(f"Unable to check the {action} target node's timeline.")
        log_detail(ex.detail)
        return False
    finally:
        repl_conn.close()

    local_lsn_value = parse_lsn(local_lsn) if isinstance(local_lsn, str) else local_lsn
    ok, reason = can_attach(local_tli, local_lsn_value, upstream_tli, parse_lsn(upstream_xlogpos), history)
    if not ok:
        logger.error(f"This node cannot attach to {action} target node {upstream_record.node_id}.")
        log_detail(reason)
        if is_rejoin:
            log_hint("use --force-rewind to execute pg_rewind")
        return False

    logger.info(f"Local node {local_tli}/{format_lsn(local_lsn_value)} can attach to {action} target node {upstream_record.node_id}.")
    log_detail(reason)
    return True


def _require_standby_superuser(conn):
    if not db.is_superuser_connection(conn):
        raise SuperuserRequiredError("superuser connection required to control the WAL receiver")
    if db.get_recovery_type(conn) != RecoveryType.STANDBY:
        raise NodeStatusError("the WAL receiver can only be controlled on a standby")


def disable_wal_receiver(conn):
    """Raises wal_retrieve_retry_interval so a terminated WAL receiver is not restarted, then terminates it.
    Returns the remaining WAL receiver pid (0 on success)."""
    logger = logging.getLogger("logger")
    _require_standby_superuser(conn)

    interval = int(db.get_pg_setting(conn, "wal_retrieve_retry_interval") or DEFAULT_WAL_RETRIEVE_RETRY_INTERVAL)
    if interval < WALRECEIVER_DISABLE_TIMEOUT_VALUE:
        new_interval = interval + WALRECEIVER_DISABLE_TIMEOUT_VALUE
        logger.info(f"Setting \"wal_retrieve_retry_interval\" to {new_interval} ms.")
        db.alter_system_int(conn, "wal_retrieve_retry_interval", new_interval)

    pid = db.get_wal_receiver_pid(conn)
    attempt = 0
    while pid > 0 and attempt < WAL_RECEIVER_TERMINATE_RETRIES:
        attempt += 1
        logger.info(f"Terminating WAL receiver with pid {pid}.")
        if not db.terminate_backend(conn, pid):
            logger.warning(f"Unable to terminate WAL receiver with pid {pid}.")
        time.sleep(1)
        pid = db.get_wal_receiver_pid(conn)

    if pid > 0:
        logger.warning(f"WAL receiver is still running with pid {pid}.")
    else:
        logger.info("WAL receiver disabled.")
    return pid


def enable_wal_receiver(conn, wait_startup=True):
    """Restores wal_retrieve_retry_interval and optionally waits for a WAL receiver to start.
    Returns the WAL receiver pid (0 if none started)."""
    logger = logging.getLogger("logger")
    _require_standby_superuser(conn)

    interval = int(db.get_pg_setting(conn, "wal_retrieve_retry_interval") or DEFAULT_WAL_RETRIEVE_RETRY_INTERVAL)
    if interval > WALRECEIVER_DISABLE_TIMEOUT_VALUE:
        new_interval = interval - WALRECEIVER_DISABLE_TIMEOUT_VALUE
        logger.info(f"Setting \"wal_retrieve_retry_interval\" to {new_interval} ms.")
        db.alter_system_int(conn, "wal_retrieve_retry_interval", new_interval)

    if not wait_startup:
        return db.get_wal_receiver_pid(conn)

    deadline = time.monotonic() + WAL_RECEIVER_STARTUP_TIMEOUT
    while True:
        pid = db.get_wal_receiver_pid(conn)
        if pid > 0:
            logger.info(f"WAL receiver started with pid {pid}.")
            return pid
        if time.monotonic() >= deadline:
            logger.warning(f"WAL receiver did not start within {WAL_RECEIVER_STARTUP_TIMEOUT} seconds.")
            return 0
        time.sleep(1)


def check_system_identifier(upstream_record, local_system_identifier, connect_timeout=5):
    """Returns True if the upstream belongs to the same replication cluster as the local data directory."""
    logger = logging.getLogger("logger")
    try:
        repl_conn = db.open_replication_connection(make_replication_conninfo(upstream_record), connect_timeout)
    except DbConnectionError as ex:
        logger.error(f"Unable to establish a replication connection to node {upstream_record.node_id}.")
        log_detail(ex.detail)
        return False
    try:
        system_identifier = db.identify_system(repl_conn)[0]
    except DbQueryError as ex:
        logger.error(f"Unable to identify the system of node {upstream_record.node_id}.")
        log_detail(ex.detail)
        return False
    finally:
        repl_conn.close()

    if system_identifier != local_system_identifier:
        logger.error(f"This node is not part of the replication cluster of node {upstream_record.node_id}.")
        log_detail(f"This node's system identifier is {local_system_identifier}, "
                   f"node {upstream_record.node_id}'s system identifier is {system_identifier}.")
        return False
    return True
