import logging
import os
import time
import psycopg2
import psycopg2.errors
import psycopg2.extras
import psycopg2.sql

from pg_cluster_manager.cluster.node_role import RecoveryType
from pg_cluster_manager.utils import shell
from pg_cluster_manager.utils.errors import DbConnectionError, DbQueryError, SuperuserRequiredError

QUERY_RETRIES = 3
QUERY_RETRY_INTERVAL_SEC = 1
UNKNOWN_REPLICATION_LAG = -1
APPLICATION_NAME = "pg-cluster-manager"


class DbConnection:
    """Database handle. A failed connection attempt is a state of the handle, not an exception."""

    def __init__(self, conninfo, connect_timeout=5):
        self.conninfo = conninfo
        self.connect_timeout = connect_timeout
        self.conn = None
        self.error = None
        self.in_transaction = False

    @property
    def ok(self):
        return self.conn is not None and not self.conn.closed

    @property
    def host(self):
        return shell.get_conninfo_value(self.conninfo, "host", "")

    def open(self):
        self.close()
        kwargs = {"connect_timeout": self.connect_timeout}
        if "application_name" not in shell.parse_postgre_sql_connection_string(self.conninfo):
            kwargs["application_name"] = APPLICATION_NAME
        try:
            self.conn = psycopg2.connect(dsn=self.conninfo, **kwargs)
            self.conn.autocommit = True
            self.error = None
        except (psycopg2.Error, ValueError) as ex:
            self.conn = None
            self.error = str(ex).strip()
        return self

    def close(self):
        if self.conn is not None:
            try:
                self.conn.close()
            except psycopg2.Error:
                pass
            self.conn = None

    def cursor(self):
        return self.conn.cursor()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        return f"DbConnection({self.conninfo!r}, ok={self.ok})"


def establish_db_connection(conninfo, raise_on_failure=True, connect_timeout=5):
    """Opens a connection. Raises DbConnectionError on failure unless raise_on_failure is False."""
    logger = logging.getLogger("logger")
    logger.debug(f"Connecting to database: {conninfo}")
    conn = DbConnection(conninfo, connect_timeout).open()
    if not conn.ok:
        if raise_on_failure:
            raise DbConnectionError("connection to database failed", detail=conn.error)
        logger.warning(f"Connection to database failed: {conn.error}")
    return conn


def establish_db_connection_quiet(conninfo, connect_timeout=5):
    """Opens a connection without logging; the caller inspects conn.ok."""
    return DbConnection(conninfo, connect_timeout).open()


def establish_db_connection_as_user(conninfo, user, raise_on_failure=True, connect_timeout=5):
    fields = shell.parse_postgre_sql_connection_string(conninfo)
    fields["user"] = user
    return establish_db_connection(shell.make_postgre_sql_connection_string(fields), raise_on_failure, connect_timeout)


def _run(conn, sql, params, fetch):
    """Executes SQL on the handle, re-opening it and retrying on transient failures."""
    logger = logging.getLogger("logger")
    last_error = None
    for attempt in range(1, QUERY_RETRIES + 1):
        if not conn.ok:
            if conn.in_transaction:
                raise DbQueryError("connection lost during transaction", detail=conn.error)
            conn.open()
            if not conn.ok:
                last_error = conn.error
                time.sleep(QUERY_RETRY_INTERVAL_SEC)
                continue
        try:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
                if fetch == "one":
                    return cursor.fetchone()
                if fetch == "all":
                    return cursor.fetchall()
                return cursor.rowcount
        except psycopg2.OperationalError as ex:
            last_error = str(ex).strip()
            if conn.in_transaction:
                raise DbQueryError("connection lost during transaction", detail=last_error)
            logger.warning(f"Transient error executing query (attempt {attempt} of {QUERY_RETRIES}): {last_error}")
            conn.close()
            time.sleep(QUERY_RETRY_INTERVAL_SEC)
        except psycopg2.errors.InsufficientPrivilege as ex:
            raise SuperuserRequiredError("insufficient privileges to execute query", detail=str(ex).strip())
        except psycopg2.Error as ex:
            error = DbQueryError("unable to execute query", detail=str(ex).strip())
            error.pgcode = ex.pgcode
            error.constraint_name = getattr(ex.diag, "constraint_name", None)
            raise error
    raise DbQueryError("unable to execute query", detail=last_error)


def fetch_one(conn, sql, params=None):
    """Executes SQL and returns the first row or None."""
    return _run(conn, sql, params, "one")


def fetch_all(conn, sql, params=None):
    return _run(conn, sql, params, "all")


def fetch_value(conn, sql, params=None):
    """Executes SQL and returns first value if it exists, otherwise returns None."""
    row = fetch_one(conn, sql, params)
    return row[0] if row is not None else None


def execute(conn, sql, params=None):
    """Executes SQL, returns the number of affected rows."""
    return _run(conn, sql, params, None)


def try_fetch_one(conn, sql, params=None):
    """Executes SQL and returns (first value, err) without raising."""
    try:
        return fetch_value(conn, sql, params), False
    except DbQueryError as ex:
        logging.getLogger("logger").error(f"Cannot execute {sql}: {ex.detail or ex.message}")
        return None, True


def get_recovery_type(conn):
    value, err = try_fetch_one(conn, "SELECT pg_catalog.pg_is_in_recovery()")
    if err or value is None:
        return RecoveryType.UNKNOWN
    return RecoveryType.STANDBY if value else RecoveryType.PRIMARY


def get_server_version(conn):
    """Returns (server_version_num, server_version)."""
    row = fetch_one(conn, "SELECT pg_catalog.current_setting('server_version_num'), "
                          "pg_catalog.current_setting('server_version')")
    return int(row[0]), row[1]


def is_superuser_connection(conn):
    value, err = try_fetch_one(conn, "SELECT rolsuper FROM pg_catalog.pg_roles WHERE rolname = CURRENT_USER")
    return bool(value) and not err


def get_cluster_size(conn):
    """Returns the total size of all databases as pretty-printed text, or None."""
    value, err = try_fetch_one(conn, "SELECT pg_catalog.pg_size_pretty(SUM(pg_catalog.pg_database_size(datname))::BIGINT) "
                                     "FROM pg_catalog.pg_database")
    return None if err else value


def get_pg_setting(conn, name):
    """Returns the value of a server setting as text, None if it is not visible to the current user."""
    value, err = try_fetch_one(conn, "SELECT setting FROM pg_catalog.pg_settings WHERE name = %s", (name,))
    if err:
        return None
    return value


def get_data_directory(conn, configured_data_directory=""):
    """Reads data_directory; non-privileged users cannot see it, in which case the configured value is used."""
    value = get_pg_setting(conn, "data_directory")
    if value:
        return value
    logging.getLogger("logger").warning("Unable to read \"data_directory\" from the server; "
                                        "this requires superuser or pg_read_all_settings membership. "
                                        "Falling back to the configured value.")
    return configured_data_directory


def get_node_replication_stats(conn):
    """Returns a dictionary with WAL sender and replication slot usage."""
    row = fetch_one(conn, """
        SELECT pg_catalog.current_setting('max_wal_senders')::INT,
               (SELECT COUNT(*) FROM pg_catalog.pg_stat_replication)::INT,
               pg_catalog.current_setting('max_replication_slots')::INT,
               (SELECT COUNT(*) FROM pg_catalog.pg_replication_slots WHERE slot_type = 'physical' AND active)::INT,
               (SELECT COUNT(*) FROM pg_catalog.pg_replication_slots WHERE slot_type = 'physical' AND NOT active)::INT
    """)
    return {
        "max_wal_senders": row[0],
        "attached_wal_receivers": row[1],
        "max_replication_slots": row[2],
        "active_replication_slots": row[3],
        "inactive_replication_slots": row[4],
    }


def get_replication_info(conn, recovery_type=None):
    """Returns ReplicationInfo for a live node."""
    from pg_cluster_manager.cluster.replication_info import ReplicationInfo

    if recovery_type is None:
        recovery_type = get_recovery_type(conn)

    info = ReplicationInfo(recovery_type)
    if recovery_type == RecoveryType.PRIMARY:
        row = fetch_one(conn, """
            SELECT pg_catalog.pg_current_wal_lsn()::TEXT,
                   (SELECT timeline_id FROM pg_catalog.pg_control_checkpoint())
        """)
        info.last_wal_receive_lsn = row[0]
        info.last_wal_replay_lsn = row[0]
        info.timeline_id = row[1]
        info.replication_lag_bytes = 0
        info.replication_lag_seconds = 0
        return info

    if recovery_type == RecoveryType.STANDBY:
        row = fetch_one(conn, """
            SELECT pg_catalog.pg_last_wal_receive_lsn()::TEXT,
                   pg_catalog.pg_last_wal_replay_lsn()::TEXT,
                   CASE WHEN pg_catalog.pg_last_wal_receive_lsn() IS NULL
                          OR pg_catalog.pg_last_wal_receive_lsn() <= pg_catalog.pg_last_wal_replay_lsn()
                        THEN 0
                        ELSE pg_catalog.pg_wal_lsn_diff(pg_catalog.pg_last_wal_receive_lsn(),
                                                        pg_catalog.pg_last_wal_replay_lsn())::BIGINT
                   END,
                   CASE WHEN pg_catalog.pg_last_xact_replay_timestamp() IS NULL THEN NULL
                        WHEN pg_catalog.pg_last_wal_receive_lsn() = pg_catalog.pg_last_wal_replay_lsn() THEN 0
                        ELSE EXTRACT(epoch FROM (pg_catalog.clock_timestamp()
                                                 - pg_catalog.pg_last_xact_replay_timestamp()))::INT
                   END,
                   COALESCE((SELECT received_tli FROM pg_catalog.pg_stat_wal_receiver),
                            (SELECT timeline_id FROM pg_catalog.pg_control_checkpoint())),
                   COALESCE((SELECT pid FROM pg_catalog.pg_stat_wal_receiver), 0),
                   (SELECT status FROM pg_catalog.pg_stat_wal_receiver) = 'streaming'
        """)
        info.last_wal_receive_lsn = row[0]
        info.last_wal_replay_lsn = row[1]
        info.replication_lag_bytes = row[2]
        info.replication_lag_seconds = UNKNOWN_REPLICATION_LAG if row[3] is None else row[3]
        info.timeline_id = row[4]
        info.wal_receiver_pid = row[5]
        info.upstream_attached = bool(row[6])
    return info


def get_replication_lag_seconds(conn):
    """Returns the apply delay of a standby in seconds or UNKNOWN_REPLICATION_LAG."""
    value, err = try_fetch_one(conn, """
        SELECT CASE WHEN pg_catalog.pg_last_wal_receive_lsn() = pg_catalog.pg_last_wal_replay_lsn() THEN 0
                    ELSE EXTRACT(epoch FROM (pg_catalog.clock_timestamp()
                                             - pg_catalog.pg_last_xact_replay_timestamp()))::INT
               END
    """)
    if err or value is None:
        return UNKNOWN_REPLICATION_LAG
    return int(value)


def get_wal_receiver_pid(conn):
    value, err = try_fetch_one(conn, "SELECT pid FROM pg_catalog.pg_stat_wal_receiver")
    if err or value is None:
        return 0
    return int(value)


def is_wal_replay_paused(conn, check_pending_wal=False):
    sql = "SELECT pg_catalog.pg_is_wal_replay_paused()"
    if check_pending_wal:
        sql += " AND pg_catalog.pg_last_wal_replay_lsn() < pg_catalog.pg_last_wal_receive_lsn()"
    value, err = try_fetch_one(conn, sql)
    return bool(value) and not err


def get_node_timeline(conn):
    value, err = try_fetch_one(conn, "SELECT timeline_id FROM pg_catalog.pg_control_checkpoint()")
    if err or value is None:
        return None
    return int(value)


def get_current_wal_lsn(conn):
    return fetch_value(conn, "SELECT pg_catalog.pg_current_wal_lsn()::TEXT")


def get_last_wal_replay_lsn(conn):
    return fetch_value(conn, "SELECT pg_catalog.pg_last_wal_replay_lsn()::TEXT")


def get_last_wal_receive_lsn(conn):
    return fetch_value(conn, "SELECT pg_catalog.pg_last_wal_receive_lsn()::TEXT")


def checkpoint(conn):
    """Executes CHECKPOINT; requires superuser (or pg_checkpoint on newer servers)."""
    logging.getLogger("logger").info("Executing CHECKPOINT.")
    execute(conn, "CHECKPOINT")


def pg_reload_conf(conn):
    return bool(fetch_value(conn, "SELECT pg_catalog.pg_reload_conf()"))


def alter_postgre_sql_config(conn, config_name, val):
    """Update PostgreSQL config value using ALTER SYSTEM SET ... TO ... command and reload the configuration."""
    logger = logging.getLogger("logger")
    sql = psycopg2.sql.SQL("ALTER SYSTEM SET {} TO {}").format(psycopg2.sql.Identifier(config_name),
                                                               psycopg2.sql.Literal(val))
    logger.debug(f"Execute: ALTER SYSTEM SET {config_name} TO {val!r}")
    execute(conn, sql)
    fetch_result = pg_reload_conf(conn)
    if not fetch_result:
        logger.warning("SELECT pg_reload_conf() returns False")
    return fetch_result


def alter_system_int(conn, config_name, val):
    return alter_postgre_sql_config(conn, config_name, int(val))


def get_ready_archive_files(data_directory):
    """Counts WAL files waiting to be archived by inspecting archive_status in the local data directory."""
    for subdir in ("pg_wal", "pg_xlog"):
        status_dir = os.path.join(data_directory, subdir, "archive_status")
        if os.path.isdir(status_dir):
            return sum(1 for entry in os.scandir(status_dir) if entry.name.endswith(".ready"))
    return None


def get_inactive_replication_slots(conn):
    """Returns a list of (slot_name, slot_type) for slots which are not in use."""
    rows = fetch_all(conn, """
        SELECT slot_name, slot_type
          FROM pg_catalog.pg_replication_slots
         WHERE active IS FALSE
      ORDER BY slot_name
    """)
    return [(r[0], r[1]) for r in rows]


def get_setting_bool(conn, name):
    value, err = try_fetch_one(conn, "SELECT pg_catalog.current_setting(%s, TRUE)", (name,))
    if err or value is None:
        return None
    return value.strip().lower() in ("on", "true", "1", "yes")


def get_system_identifier(conn):
    value, err = try_fetch_one(conn, "SELECT system_identifier FROM pg_catalog.pg_control_system()")
    if err or value is None:
        return None
    return int(value)


def get_repmgrd_pid(conn):
    """Pid published by the failover daemon, None when the daemon does not publish one."""
    if not function_exists(conn, "repmgr.get_repmgrd_pid()"):
        return None
    value, err = try_fetch_one(conn, "SELECT repmgr.get_repmgrd_pid()")
    if err or not value:
        return None
    return int(value)


def function_exists(conn, signature):
    value, err = try_fetch_one(conn, "SELECT pg_catalog.to_regprocedure(%s) IS NOT NULL", (signature,))
    return bool(value) and not err


def promote(conn, wait=False):
    """Calls pg_promote() (PostgreSQL 12 and later)."""
    return bool(fetch_value(conn, "SELECT pg_catalog.pg_promote(wait := %s)", (wait,)))


def terminate_backend(conn, pid):
    return bool(fetch_value(conn, "SELECT pg_catalog.pg_terminate_backend(%s)", (pid,)))


def open_replication_connection(conninfo, connect_timeout=5):
    """Opens a physical replication connection, used for IDENTIFY_SYSTEM and TIMELINE_HISTORY."""
    try:
        return psycopg2.connect(dsn=conninfo, connect_timeout=connect_timeout,
                                connection_factory=psycopg2.extras.PhysicalReplicationConnection)
    except psycopg2.Error as ex:
        raise DbConnectionError("unable to establish a replication connection", detail=str(ex).strip())


def identify_system(repl_conn):
    """Returns (system_identifier, timeline, xlogpos) reported by IDENTIFY_SYSTEM."""
    cursor = repl_conn.cursor()
    try:
        cursor.execute("IDENTIFY_SYSTEM")
        row = cursor.fetchone()
    except psycopg2.Error as ex:
        raise DbQueryError("unable to execute IDENTIFY_SYSTEM", detail=str(ex).strip())
    finally:
        cursor.close()
    return int(row[0]), int(row[1]), row[2]


def get_timeline_history(repl_conn, timeline_id):
    """Returns the content of the history file for the timeline as text."""
    cursor = repl_conn.cursor()
    try:
        cursor.execute(f"TIMELINE_HISTORY {int(timeline_id)}")
        row = cursor.fetchone()
    except psycopg2.Error as ex:
        raise DbQueryError(f"unable to execute TIMELINE_HISTORY {timeline_id}", detail=str(ex).strip())
    finally:
        cursor.close()
    content = row[1]
    if isinstance(content, (bytes, memoryview)):
        content = bytes(content).decode("utf-8")
    return content
