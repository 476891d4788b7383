import datetime
import logging

from pg_cluster_manager.utils import shell
from pg_cluster_manager.utils.errors import ClusterManagerError
from pg_cluster_manager.utils.logger import log_detail


class EventInfo:
    """Event specific fields: the other node involved in an event (new upstream, former primary...)."""

    def __init__(self, node_id=None, node_name="", conninfo=""):
        self.node_id = node_id
        self.node_name = node_name
        self.conninfo = conninfo

    @classmethod
    def from_record(cls, record):
        return cls(record.node_id, record.node_name, record.conninfo)


def format_event_notification(template, node_id, event, successful, timestamp, details, event_info=None):
    """Replaces the placeholders of event_notification_command:
    %n node id, %e event, %s success (1/0), %t timestamp, %d details,
    %p other node id, %c other node conninfo, %a other node name, %% literal percent."""
    event_info = event_info or EventInfo()
    values = {
        "n": str(node_id),
        "e": event,
        "s": "1" if successful else "0",
        "t": timestamp or "",
        "d": details or "",
        "p": "" if event_info.node_id is None else str(event_info.node_id),
        "c": event_info.conninfo or "",
        "a": event_info.node_name or "",
        "%": "%",
    }

    result = []
    i = 0
    while i < len(template):
        ch = template[i]
        if ch == "%" and i + 1 < len(template) and template[i + 1] in values:
            result.append(values[template[i + 1]])
            i += 2
            continue
        result.append(ch)
        i += 1
    return "".join(result)


def event_enabled(config, event):
    """Events are only notified if they are listed in event_notifications (all events if the list is empty)."""
    names = [e.strip() for e in (config.event_notifications or "").split(",") if e.strip()]
    return not names or event in names


def notify(config, node_id, event, successful, details, timestamp=None, event_info=None):
    """Runs event_notification_command for the event. Failures are logged and do not abort the caller."""
    logger = logging.getLogger("logger")
    if not config.event_notification_command or not event_enabled(config, event):
        return False

    if timestamp is None:
        timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    elif isinstance(timestamp, datetime.datetime):
        timestamp = timestamp.strftime("%Y-%m-%d %H:%M:%S%z")

    command = format_event_notification(config.event_notification_command, node_id, event, successful,
                                        str(timestamp), details, event_info)
    logger.debug(f"Executing event notification command: {command}")
    result = shell.execute_cmd(command)
    if not result.success:
        logger.warning(f"Unable to execute event notification command for event \"{event}\".")
        log_detail((result.error_output or result.output).strip())
        return False
    return True


def create_event_notification(conn, config, node_id, event, successful, details, event_info=None):
    """Writes an event row (when a connection is available) and runs the notification command."""
    from pg_cluster_manager.cluster import node_store

    logger = logging.getLogger("logger")
    timestamp = None
    if conn is not None and conn.ok:
        try:
            timestamp = node_store.create_event_record(conn, node_id, event, successful, details)
        except ClusterManagerError as ex:
            logger.warning(f"Unable to create event record for \"{event}\": {ex.message}")
    notify(config, node_id, event, successful, details, timestamp, event_info)
    return timestamp
