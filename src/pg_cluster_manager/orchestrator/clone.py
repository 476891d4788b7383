import os
import shutil

from pg_cluster_manager.cluster import node_store
from pg_cluster_manager.cluster.node_record import NodeRecord
from pg_cluster_manager.cluster.node_role import NodeRole, RecoveryType
from pg_cluster_manager.orchestrator.handler import Handler
from pg_cluster_manager.utils import db, recovery_config, shell, slots
from pg_cluster_manager.utils.errors import BadConfigError, BaseBackupError
from pg_cluster_manager.utils.logger import log_hint, notice

BACKUP_LABEL = "pg-cluster-manager base backup"
DATA_DIRECTORY_MODE = 0o700


class CloneHandler(Handler):
    """Clones a standby from an upstream node with pg_basebackup."""

    EVENT = "standby_clone"

    def __init__(self, config, options, remote=None, service=None, upstream_node_id=None, upstream_conninfo=None,
                 fast_checkpoint=False):
        super().__init__(config, options, remote, service)
        self.upstream_node_id = upstream_node_id
        self.upstream_conninfo = upstream_conninfo
        self.fast_checkpoint = fast_checkpoint

    def run(self):
        source_conninfo = self.options.source_conninfo()
        if not source_conninfo:
            raise BadConfigError("connection parameters of the upstream node are required",
                                 hint="use -h/--host or -d/--dbname to specify the node to clone from")
        if not self.data_directory:
            self.config.require_data_directory()
        self.config.require_node_identity()

        with self.connect(source_conninfo) as source_conn:
            _, server_version = db.get_server_version(source_conn)
            self.logger.info(f"Connected to source node, PostgreSQL {server_version}.")

            upstream_record = self.resolve_upstream(source_conn, source_conninfo)
            self.check_data_directory()

            slot_name = ""
            if self.config.use_replication_slots:
                slot_name = self.config.make_slot_name()
                if not slots.check_replication_slots_available(upstream_record.node_id, source_conn):
                    raise BaseBackupError(f"no free replication slot on node {upstream_record.node_id}")

            command = self.make_basebackup_command(source_conninfo, slot_name)
            if self.options.dry_run:
                self.logger.info(f"Would execute: {command}")
                self.logger.info("Prerequisites for cloning the standby are met.")
                return False

            if slot_name and not slots.create_replication_slot(source_conn, slot_name):
                raise BaseBackupError(f"unable to create replication slot \"{slot_name}\" on the upstream node")

            notice(f"Starting backup of the upstream node into \"{self.data_directory}\".")
            result = shell.execute_cmd(command)
            if not result.success:
                if slot_name:
                    slots.drop_replication_slot_if_exists(source_conn, upstream_record.node_id, slot_name)
                details = (result.error_output or result.output).strip()
                self.record_clone_event(source_conn, False, f"pg_basebackup failed: {details}")
                raise BaseBackupError("unable to take a base backup of the upstream node", detail=details)

            try:
                recovery_config.write_recovery_config(self.data_directory, upstream_record, self.config.node_name,
                                                      slot_name, self.config.replication_user)
            except OSError as ex:
                raise BaseBackupError("unable to write the replication configuration", detail=str(ex))

            details = f"cloned from host \"{shell.get_conninfo_value(source_conninfo, 'host', '')}\", " \
                      f"port {shell.get_conninfo_value(source_conninfo, 'port', '5432')}"
            self.record_clone_event(source_conn, True, details)

        notice("Standby clone complete.")
        log_hint("start the standby server, then register it with \"standby register\"")
        return True

    def resolve_upstream(self, source_conn, source_conninfo):
        """Record of the node the clone will stream from. An unregistered source gets a placeholder record."""
        if node_store.schema_exists(source_conn):
            if self.upstream_node_id is not None:
                record = node_store.get_node_record(source_conn, self.upstream_node_id)
                if record is None:
                    raise BadConfigError(f"no record found for upstream node {self.upstream_node_id}")
            else:
                record = node_store.get_primary_node_record(source_conn)
            if record is not None:
                if self.upstream_conninfo:
                    record.conninfo = self.upstream_conninfo
                return record
        self.logger.warning("Source node is not registered; using the source connection parameters as upstream.")
        return NodeRecord(self.upstream_node_id or 0, "", NodeRole.UNKNOWN,
                          self.upstream_conninfo or source_conninfo)

    def check_data_directory(self):
        data_directory = self.data_directory
        if not os.path.exists(data_directory):
            if not self.options.dry_run:
                os.makedirs(data_directory, mode=DATA_DIRECTORY_MODE)
            return
        if not os.path.isdir(data_directory):
            raise BadConfigError(f"\"{data_directory}\" is not a directory")
        if os.listdir(data_directory):
            if not self.options.force:
                raise BadConfigError(f"target data directory \"{data_directory}\" is not empty",
                                     hint="use --force to overwrite its contents")
            if os.path.exists(os.path.join(data_directory, "postmaster.pid")):
                raise BadConfigError(f"a PostgreSQL server appears to be running in \"{data_directory}\"")
            self.logger.warning(f"Existing data in \"{data_directory}\" will be overwritten.")
            if not self.options.dry_run:
                self.clear_data_directory()

    def clear_data_directory(self):
        for entry in os.scandir(self.data_directory):
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.unlink(entry.path)

    def make_basebackup_command(self, source_conninfo, slot_name):
        parts = [shell.make_pg_path(self.config.pg_bindir, "pg_basebackup"),
                 f"-l {shell.quote(BACKUP_LABEL)}",
                 f"-D {shell.quote(self.data_directory)}",
                 f"-d {shell.quote(source_conninfo)}",
                 "-X stream"]
        if self.fast_checkpoint:
            parts.append("-c fast")
        if slot_name:
            parts.append(f"-S {shell.quote(slot_name)}")
        if self.config.pg_basebackup_options:
            parts.append(self.config.pg_basebackup_options)
        return " ".join(parts)

    def record_clone_event(self, source_conn, successful, details):
        """The event is written on the primary: the source itself or the primary registered on it."""
        primary_record = node_store.get_primary_node_record(source_conn) if node_store.schema_exists(source_conn) \
            else None
        if primary_record is None or db.get_recovery_type(source_conn) == RecoveryType.PRIMARY:
            self.record_event(source_conn if primary_record else None, self.config.node_id, self.EVENT, successful,
                              details)
            return
        with self.connect_quiet(primary_record.conninfo) as primary_conn:
            self.record_event(primary_conn, self.config.node_id, self.EVENT, successful, details)
