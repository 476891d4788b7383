import logging

from pg_cluster_manager.cluster import node_store
from pg_cluster_manager.cluster.crosscheck import render_table
from pg_cluster_manager.utils.errors import BadConfigError

DEFAULT_EVENT_LIMIT = 20
EVENT_HEADERS = ("Node ID", "Name", "Event", "OK", "Timestamp", "Details")


def cluster_event(conn, limit=DEFAULT_EVENT_LIMIT, all_events=False, node_id=None, node_name=None, event=None):
    """Returns event records, newest first."""
    if limit is not None and limit < 1:
        raise BadConfigError(f"--limit must be 1 or greater (provided: {limit})")
    return node_store.get_event_records(conn, limit=None if all_events else limit, node_id=node_id,
                                        node_name=node_name, event=event)


def render_events(records, csv=False, compact=False):
    if csv:
        lines = []
        for r in records:
            fields = [str(r.node_id), r.node_name, r.event, "1" if r.successful else "0", r.timestamp]
            if not compact:
                fields.append(_csv_quote(r.details))
            lines.append(",".join(fields))
        return lines

    if not records:
        return ["no matching events found"]

    headers = EVENT_HEADERS[:-1] if compact else EVENT_HEADERS
    rows = []
    for r in records:
        row = [r.node_id, r.node_name, r.event, "t" if r.successful else "f", r.timestamp]
        if not compact:
            row.append(r.details)
        rows.append(row)
    return render_table(headers, rows)


def _csv_quote(value):
    if any(c in value for c in ',"\n'):
        return '"' + value.replace('"', '""') + '"'
    return value


def cluster_cleanup(conn, keep_history=0, node_id=None):
    """Purges monitoring history and events older than keep_history days."""
    logger = logging.getLogger("logger")
    if keep_history < 0:
        raise BadConfigError(f"--keep-history must be 0 or greater (provided: {keep_history})")

    with node_store.transaction(conn):
        history, events = node_store.purge_history(conn, keep_history, node_id)

    target = f" for node {node_id}" if node_id is not None else ""
    if keep_history > 0:
        logger.info(f"Deleted {history} monitoring history and {events} event record(s) older than "
                    f"{keep_history} day(s){target}.")
    else:
        logger.info(f"Deleted {history} monitoring history and {events} event record(s){target}.")
    return history, events
