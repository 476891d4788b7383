import logging
import time

from pg_cluster_manager.cluster import node_store
from pg_cluster_manager.utils import db, events, shell
from pg_cluster_manager.utils.config import MIN_NODE_ID
from pg_cluster_manager.utils.errors import BadConfigError
from pg_cluster_manager.utils.remote import RemoteExecutor
from pg_cluster_manager.utils.service_control import ServiceController


class Handler:
    """State shared by the commands: configuration, command line options and the collaborators
    used to reach the local server, peers and the node-record store."""

    def __init__(self, config, options, remote=None, service=None):
        self.logger = logging.getLogger("logger")
        self.config = config
        self.options = options
        self.remote = remote or RemoteExecutor.from_config(config, options.remote_user)
        self.service = service or ServiceController(config, options.data_dir, options.dry_run)
        self.state = None

    @property
    def local_node_id(self):
        if self.config.node_id >= MIN_NODE_ID:
            return self.config.node_id
        return self.options.node_id

    @property
    def local_conninfo(self):
        conninfo = self.config.conninfo or self.options.source_conninfo()
        if not conninfo:
            raise BadConfigError("no database connection parameters provided",
                                 hint="provide a configuration file with -f/--config-file or use -d/--dbname")
        return conninfo

    @property
    def data_directory(self):
        return self.options.data_dir or self.config.data_directory

    def set_state(self, state):
        self.logger.debug(f"{type(self).__name__}: {self.state} -> {state}")
        self.state = state

    def connect(self, conninfo, raise_on_failure=True):
        return db.establish_db_connection(conninfo, raise_on_failure, self.config.connect_timeout)

    def connect_quiet(self, conninfo):
        return db.establish_db_connection_quiet(conninfo, self.config.connect_timeout)

    def connect_superuser(self, conninfo):
        """Connection as the user given with -S/--superuser, or as the configured user."""
        if self.options.superuser:
            return db.establish_db_connection_as_user(conninfo, self.options.superuser, False,
                                                      self.config.connect_timeout)
        return self.connect_quiet(conninfo)

    def connect_local(self):
        return self.connect(self.local_conninfo)

    def connect_primary(self, conn):
        """Looks up the active primary in the records visible on conn and connects to it.
        Returns (record, connection)."""
        record = node_store.get_primary_node_record(conn)
        if record is None:
            raise BadConfigError("unable to find a registered primary node")
        return record, self.connect(record.conninfo)

    def record_event(self, conn, node_id, event, successful, details, event_info=None):
        return events.create_event_notification(conn, self.config, node_id, event, successful, details, event_info)

    def remote_host(self, record):
        host = shell.get_conninfo_value(record.conninfo, "host", "")
        if not host:
            raise BadConfigError(f"no host found in the connection string of node {record.node_id}")
        return host

    def run_remote_command(self, record, arguments, conninfo=None, log_level="ERROR", terse=True):
        """Invokes this program on the host of record, using the configuration file recorded for that node.
        conninfo is passed with -d, for commands which need to reach another node."""
        if not record.config_file:
            raise BadConfigError(f"no configuration file recorded for node {record.node_id}",
                                 hint="re-register the node with -f/--config-file")
        command = self.remote.make_remote_invocation(arguments, config_file=record.config_file, conninfo=conninfo,
                                                     log_level=log_level, terse=terse)
        return self.remote.remote_command(self.remote_host(record), command)

    @staticmethod
    def poll(check, timeout, interval=1):
        """Calls check() every interval seconds until it returns a true value or timeout seconds have passed.
        Returns the last value returned by check()."""
        deadline = time.monotonic() + timeout
        while True:
            value = check()
            if value or time.monotonic() >= deadline:
                return value
            time.sleep(interval)
