import contextlib
import logging

from pg_cluster_manager.cluster.node_record import NodeRecord
from pg_cluster_manager.cluster.node_role import NodeRole
from pg_cluster_manager.utils import db
from pg_cluster_manager.utils.errors import BadConfigError, DbQueryError
from pg_cluster_manager.utils.logger import log_detail

SCHEMA_NAME = "repmgr"
UNIQUE_VIOLATION = "23505"

SCHEMA_SQL = """
CREATE SCHEMA IF NOT EXISTS repmgr;

CREATE TABLE IF NOT EXISTS repmgr.nodes (
  node_id          INTEGER     PRIMARY KEY,
  upstream_node_id INTEGER     NULL REFERENCES repmgr.nodes (node_id) DEFERRABLE,
  active           BOOLEAN     NOT NULL DEFAULT TRUE,
  node_name        TEXT        NOT NULL,
  type             TEXT        NOT NULL CHECK (type IN ('primary', 'standby', 'witness', 'bdr')),
  location         TEXT        NOT NULL DEFAULT 'default',
  priority         INT         NOT NULL DEFAULT 100,
  conninfo         TEXT        NOT NULL,
  repluser         VARCHAR(63) NOT NULL,
  slot_name        TEXT        NULL,
  config_file      TEXT        NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS nodes_node_name_key ON repmgr.nodes (node_name);
CREATE UNIQUE INDEX IF NOT EXISTS nodes_slot_name_key ON repmgr.nodes (slot_name) WHERE slot_name <> '';
CREATE UNIQUE INDEX IF NOT EXISTS nodes_one_active_primary ON repmgr.nodes ((TRUE)) WHERE type = 'primary' AND active;

CREATE TABLE IF NOT EXISTS repmgr.events (
  event_id         BIGSERIAL   PRIMARY KEY,
  node_id          INTEGER     NOT NULL,
  event            TEXT        NOT NULL,
  successful       BOOLEAN     NOT NULL DEFAULT TRUE,
  event_timestamp  TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
  details          TEXT        NULL
);

CREATE TABLE IF NOT EXISTS repmgr.monitoring_history (
  primary_node_id                INTEGER NOT NULL,
  standby_node_id                INTEGER NOT NULL,
  last_monitor_time              TIMESTAMP WITH TIME ZONE NOT NULL,
  last_apply_time                TIMESTAMP WITH TIME ZONE,
  last_wal_primary_location      PG_LSN NOT NULL,
  last_wal_standby_location      PG_LSN,
  replication_lag                BIGINT NOT NULL,
  apply_lag                      BIGINT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_monitoring_history_time
          ON repmgr.monitoring_history (last_monitor_time, standby_node_id);

CREATE OR REPLACE VIEW repmgr.show_nodes AS
   SELECT n.node_id,
          n.node_name,
          n.active,
          n.upstream_node_id,
          un.node_name AS upstream_node_name,
          n.type,
          n.priority,
          n.conninfo
     FROM repmgr.nodes n
LEFT JOIN repmgr.nodes un
       ON un.node_id = n.upstream_node_id;
"""

# constraint name: colliding field
UNIQUE_CONSTRAINT_FIELDS = {
    "nodes_pkey": "node_id",
    "nodes_node_name_key": "node_name",
    "nodes_slot_name_key": "slot_name",
    "nodes_one_active_primary": "active primary",
}

NODE_COLUMNS = ", ".join(f"n.{c}" for c in NodeRecord.COLUMNS)

SELECT_NODES = f"SELECT {NODE_COLUMNS}, un.node_name " \
               f"FROM repmgr.nodes n LEFT JOIN repmgr.nodes un ON un.node_id = n.upstream_node_id"


def schema_exists(conn):
    value, err = db.try_fetch_one(conn, "SELECT pg_catalog.to_regclass('repmgr.nodes') IS NOT NULL")
    return bool(value) and not err


def create_schema(conn):
    logging.getLogger("logger").info(f"Creating metadata schema \"{SCHEMA_NAME}\".")
    db.execute(conn, SCHEMA_SQL)


def begin_transaction(conn):
    db.execute(conn, "BEGIN")
    conn.in_transaction = True


def commit_transaction(conn):
    try:
        db.execute(conn, "COMMIT")
    finally:
        conn.in_transaction = False


def rollback_transaction(conn):
    if not conn.ok:
        conn.in_transaction = False
        return
    try:
        db.execute(conn, "ROLLBACK")
    finally:
        conn.in_transaction = False


@contextlib.contextmanager
def transaction(conn):
    """Commits on success, rolls back if the block raises. A failed rollback is logged and the error
    of the block is raised."""
    begin_transaction(conn)
    try:
        yield conn
    except BaseException:
        try:
            rollback_transaction(conn)
        except DbQueryError as ex:
            logging.getLogger("logger").error(f"Unable to roll back transaction: {ex.message}")
            if ex.detail:
                log_detail(ex.detail)
        raise
    commit_transaction(conn)


def _records(rows):
    return [NodeRecord.from_row(r) for r in rows]


def get_node_record(conn, node_id):
    row = db.fetch_one(conn, f"{SELECT_NODES} WHERE n.node_id = %s", (node_id,))
    return NodeRecord.from_row(row) if row else None


def get_node_record_by_name(conn, node_name):
    row = db.fetch_one(conn, f"{SELECT_NODES} WHERE n.node_name = %s", (node_name,))
    return NodeRecord.from_row(row) if row else None


def require_node_record(conn, node_id):
    """Returns the record of node_id, raises BadConfigError when it does not exist."""
    record = get_node_record(conn, node_id)
    if record is None:
        raise BadConfigError(f"no record found for node {node_id}")
    return record


def get_all_node_records(conn):
    return _records(db.fetch_all(conn, f"{SELECT_NODES} ORDER BY n.node_id"))


def get_all_node_records_with_upstream(conn):
    """All records with upstream_node_name resolved, ordered by node id."""
    return get_all_node_records(conn)


def get_downstream_node_records(conn, upstream_node_id, active_only=False):
    sql = f"{SELECT_NODES} WHERE n.upstream_node_id = %s"
    if active_only:
        sql += " AND n.active"
    return _records(db.fetch_all(conn, sql + " ORDER BY n.node_id", (upstream_node_id,)))


def get_primary_node_record(conn):
    row = db.fetch_one(conn, f"{SELECT_NODES} WHERE n.type = 'primary' AND n.active ORDER BY n.node_id LIMIT 1")
    return NodeRecord.from_row(row) if row else None


def get_primary_node_id(conn):
    record = get_primary_node_record(conn)
    return record.node_id if record else None


def _unique_violation(ex, record):
    field = UNIQUE_CONSTRAINT_FIELDS.get(ex.constraint_name, ex.constraint_name or "unknown")
    if field == "active primary":
        return DbQueryError(f"unable to store record for node {record.node_id}: an active primary is already registered",
                            detail=ex.detail)
    value = getattr(record, field, None) if field in ("node_id", "node_name", "slot_name") else None
    return DbQueryError(f"unable to store record for node {record.node_id}: "
                        f"{field} \"{value}\" is already used by another node", detail=ex.detail)


def _record_params(record):
    return (record.node_id, record.upstream_node_id, record.active, record.node_name, record.role.value,
            record.location, record.priority, record.conninfo, record.repluser, record.slot_name or None,
            record.config_file)


def create_node_record(conn, record):
    try:
        db.execute(conn, f"INSERT INTO repmgr.nodes ({', '.join(NodeRecord.COLUMNS)}) "
                         f"VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)", _record_params(record))
    except DbQueryError as ex:
        if ex.pgcode == UNIQUE_VIOLATION:
            raise _unique_violation(ex, record)
        raise


def update_node_record(conn, record):
    params = _record_params(record)
    try:
        count = db.execute(conn, "UPDATE repmgr.nodes SET upstream_node_id = %s, active = %s, node_name = %s, "
                                 "type = %s, location = %s, priority = %s, conninfo = %s, repluser = %s, "
                                 "slot_name = %s, config_file = %s WHERE node_id = %s", params[1:] + params[:1])
    except DbQueryError as ex:
        if ex.pgcode == UNIQUE_VIOLATION:
            raise _unique_violation(ex, record)
        raise
    return count == 1


def update_node_record_set_active(conn, node_id, active):
    return db.execute(conn, "UPDATE repmgr.nodes SET active = %s WHERE node_id = %s", (active, node_id)) == 1


def update_node_record_set_primary(conn, node_id):
    """Makes node_id the only active primary: other primaries are deactivated first."""
    db.execute(conn, "UPDATE repmgr.nodes SET active = FALSE WHERE type = %s AND active AND node_id != %s",
               (NodeRole.PRIMARY.value, node_id))
    try:
        count = db.execute(conn, "UPDATE repmgr.nodes SET type = %s, upstream_node_id = NULL, active = TRUE "
                                 "WHERE node_id = %s", (NodeRole.PRIMARY.value, node_id))
    except DbQueryError as ex:
        if ex.pgcode == UNIQUE_VIOLATION:
            raise DbQueryError(f"unable to set node {node_id} as primary: another active primary exists",
                               detail=ex.detail)
        raise
    return count == 1


def update_node_record_status(conn, node_id, role, upstream_node_id, active):
    return db.execute(conn, "UPDATE repmgr.nodes SET type = %s, upstream_node_id = %s, active = %s "
                            "WHERE node_id = %s", (role.value, upstream_node_id, active, node_id)) == 1


def update_node_record_slot_name(conn, node_id, slot_name):
    return db.execute(conn, "UPDATE repmgr.nodes SET slot_name = %s WHERE node_id = %s",
                      (slot_name or None, node_id)) == 1


def delete_node_record(conn, node_id):
    return db.execute(conn, "DELETE FROM repmgr.nodes WHERE node_id = %s", (node_id,)) == 1


def copy_node_records(conn, records):
    """Replaces all node records with the given ones (used to keep a witness's copy current)."""
    db.execute(conn, "SET CONSTRAINTS ALL DEFERRED")
    db.execute(conn, "DELETE FROM repmgr.nodes")
    for record in records:
        create_node_record(conn, record)


def create_event_record(conn, node_id, event, successful, details):
    """Appends an event row, returns its timestamp."""
    return db.fetch_value(conn, "INSERT INTO repmgr.events (node_id, event, successful, details) "
                                "VALUES (%s, %s, %s, %s) RETURNING event_timestamp",
                          (node_id, event, successful, details))


class EventRecord:
    def __init__(self, node_id, node_name, event, successful, timestamp, details):
        self.node_id = node_id
        self.node_name = node_name or ""
        self.event = event
        self.successful = successful
        self.timestamp = timestamp
        self.details = details or ""


def get_event_records(conn, limit=20, node_id=None, node_name=None, event=None):
    """Returns event rows, newest first. limit=None returns all rows."""
    conditions, params = [], []
    if node_id is not None:
        conditions.append("e.node_id = %s")
        params.append(node_id)
    elif node_name:
        conditions.append("n.node_name = %s")
        params.append(node_name)
    if event:
        conditions.append("e.event = %s")
        params.append(event)

    sql = "SELECT e.node_id, n.node_name, e.event, e.successful, " \
          "pg_catalog.to_char(e.event_timestamp, 'YYYY-MM-DD HH24:MI:SS'), e.details " \
          "FROM repmgr.events e LEFT JOIN repmgr.nodes n ON e.node_id = n.node_id"
    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    sql += " ORDER BY e.event_timestamp DESC, e.event_id DESC"
    if limit is not None:
        sql += " LIMIT %s"
        params.append(limit)
    return [EventRecord(*r) for r in db.fetch_all(conn, sql, tuple(params))]


def purge_history(conn, keep_days=0, node_id=None):
    """Deletes monitoring history and event rows older than keep_days days. Returns (history rows, event rows)."""
    node_filter = ""
    params = (keep_days,)
    if node_id is not None:
        node_filter = " AND standby_node_id = %s"
        params = (keep_days, node_id)
    history = db.execute(conn, "DELETE FROM repmgr.monitoring_history "
                               "WHERE pg_catalog.age(pg_catalog.now(), last_monitor_time) >= "
                               "pg_catalog.make_interval(days := %s)" + node_filter, params)
    event_filter = node_filter.replace("standby_node_id", "node_id")
    events = db.execute(conn, "DELETE FROM repmgr.events "
                              "WHERE pg_catalog.age(pg_catalog.now(), event_timestamp) >= "
                              "pg_catalog.make_interval(days := %s)" + event_filter, params)
    return history, events
