import contextlib
import enum
import os
import shutil

from pg_cluster_manager.cluster import node_store
from pg_cluster_manager.cluster.node_role import RecoveryType
from pg_cluster_manager.orchestrator.follow import FollowHandler
from pg_cluster_manager.orchestrator.handler import Handler
from pg_cluster_manager.utils import config_archive, controldata, db, recovery_config, replication, shell, slots
from pg_cluster_manager.utils.config import DEFAULT_PG_REWIND_COMMAND
from pg_cluster_manager.utils.errors import BadConfigError, RejoinFailError
from pg_cluster_manager.utils.logger import log_detail, log_hint, notice

# first major version whose pg_rewind recovers an unclean shutdown itself
REWIND_CRASH_RECOVERY_VERSION = 13
REPLICATION_SLOT_DIR = "pg_replslot"


class RejoinState(enum.Enum):
    VERIFY_LOCAL_STOPPED = 1
    READ_CONTROL = 2
    RESOLVE_NEW_PRIMARY = 3
    PRE_ATTACH_CHECKS = 4
    OPTIONAL_REWIND = 5
    FOLLOW = 6
    AWAIT_ATTACHED = 7
    CLEAN_SLOTS = 8
    NOTIFY = 9
    DONE = 10

    def __str__(self):
        return self.name


class RejoinHandler(Handler):
    """Brings a stopped former primary back into the cluster as a standby of the current primary."""

    EVENT = "node_rejoin"
    PD_DATA_PATH_ATTR = "%pg_data_path%"
    PRIMARY_CONN_STR_ATTR = "%primary_connstr%"

    def __init__(self, config, options, remote=None, service=None, force_rewind=False, config_files=None,
                 config_archive_dir=None):
        super().__init__(config, options, remote, service)
        self.force_rewind = force_rewind
        self.config_files = config_files if config_files is not None else config.config_file_list
        self.config_archive_dir = config_archive_dir or config.config_archive_dir

    def run(self):
        self.config.require_node_identity()
        if not self.data_directory:
            self.config.require_data_directory()
        source_conninfo = self.options.source_conninfo()
        if not source_conninfo:
            raise BadConfigError("database connection parameters for an active node are required",
                                 hint="provide the connection string of a cluster node with -d/--dbname")

        self.set_state(RejoinState.VERIFY_LOCAL_STOPPED)
        self.verify_local_stopped()

        self.set_state(RejoinState.READ_CONTROL)
        control = self.read_control()

        with contextlib.ExitStack() as stack:
            self.set_state(RejoinState.RESOLVE_NEW_PRIMARY)
            source_conn = stack.enter_context(self.connect(source_conninfo))
            primary_record, primary_conn = self.connect_primary(source_conn)
            stack.enter_context(primary_conn)
            if db.get_recovery_type(primary_conn) != RecoveryType.PRIMARY:
                raise RejoinFailError(f"node {primary_record.node_id} is registered as primary but is not "
                                      f"running as primary")
            local_record = node_store.require_node_record(primary_conn, self.local_node_id)
            if local_record.node_id == primary_record.node_id:
                raise RejoinFailError("this node is registered as the current primary",
                                      hint="promote another node before rejoining this node")

            self.set_state(RejoinState.PRE_ATTACH_CHECKS)
            self.pre_attach_checks(primary_conn, primary_record, local_record, control)

            if self.options.dry_run:
                if self.force_rewind:
                    self.logger.info(f"Would execute: {self.make_rewind_command(primary_record)}")
                self.logger.info(f"Prerequisites for rejoining node {local_record.node_id} to node "
                                 f"{primary_record.node_id} are met.")
                return False

            self.set_state(RejoinState.OPTIONAL_REWIND)
            if self.force_rewind:
                self.rewind(primary_record, local_record)

            self.set_state(RejoinState.FOLLOW)
            follow = FollowHandler(self.config, self.options, self.remote, self.service)
            follow.event = self.EVENT
            attached, details, timestamp = follow.attach(primary_conn, primary_conn, primary_record, local_record,
                                                         local_running=False)
            self.set_state(RejoinState.AWAIT_ATTACHED)

            if attached:
                self.set_state(RejoinState.CLEAN_SLOTS)
                self.clean_slots(primary_conn, local_record)

            self.set_state(RejoinState.NOTIFY)
            follow.finish(local_record, primary_record, attached, details, timestamp)
            self.set_state(RejoinState.DONE)
            return True

    def verify_local_stopped(self):
        status = controldata.ping(self.config.conninfo, self.config.pg_bindir)
        if status in (controldata.PingStatus.OK, controldata.PingStatus.REJECT):
            raise RejoinFailError("database is still running on this node",
                                  hint="the node must be stopped cleanly before it can be rejoined")
        with self.connect_quiet(self.config.conninfo) as conn:
            if conn.ok:
                raise RejoinFailError("database is still accepting connections on this node",
                                      hint="the node must be stopped cleanly before it can be rejoined")

    def read_control(self):
        control = controldata.read_control_file(self.data_directory, self.config.pg_bindir)
        if not control.processed:
            raise RejoinFailError(f"unable to read the control file of \"{self.data_directory}\"")

        if not control.state.is_clean_shutdown:
            version = recovery_config.get_pg_major_version(self.data_directory) or 0
            if self.force_rewind and version >= REWIND_CRASH_RECOVERY_VERSION:
                self.logger.warning(f"Database was not shut down cleanly (state: \"{control.state}\"); pg_rewind "
                                    f"will perform crash recovery first.")
            else:
                raise RejoinFailError("database is not shut down cleanly",
                                      detail=f"control file reports state \"{control.state}\"",
                                      hint="start and cleanly stop the server, or use --force-rewind "
                                           "with PostgreSQL 13 or later")

        self.logger.info(f"Local node: timeline {control.timeline_id}, last checkpoint at {control.checkpoint_lsn}.")
        return control

    def pre_attach_checks(self, primary_conn, primary_record, local_record, control):
        if self.force_rewind:
            if not replication.check_system_identifier(primary_record, control.system_identifier,
                                                       self.config.connect_timeout):
                raise RejoinFailError(f"this node cannot be rejoined to node {primary_record.node_id}")
            self.check_config_files()
        elif not replication.check_node_can_attach(control.timeline_id, control.checkpoint_lsn, primary_record, True,
                                                   control.system_identifier, self.config.connect_timeout):
            raise RejoinFailError(f"this node cannot attach to rejoin target node {primary_record.node_id}")

        if not self.config.use_replication_slots:
            return
        slot_name = local_record.slot_name or self.config.make_slot_name(local_record.node_id)
        if slots.get_slot_record(primary_conn, slot_name) is None and \
                not slots.check_replication_slots_available(primary_record.node_id, primary_conn):
            raise RejoinFailError(f"no free replication slot on node {primary_record.node_id}")

    def check_config_files(self):
        missing = [f for f in self.config_files if not os.path.isfile(os.path.join(self.data_directory, f))]
        for name in missing:
            self.logger.warning(f"Configuration file \"{name}\" not found in \"{self.data_directory}\".")

    def make_rewind_command(self, primary_record):
        template = self.config.pg_rewind_command
        if template == DEFAULT_PG_REWIND_COMMAND:
            template = shell.make_pg_path(self.config.pg_bindir, "pg_rewind") + template[len("pg_rewind"):]
        conninfo = primary_record.conninfo
        if self.options.superuser:
            fields = shell.parse_postgre_sql_connection_string(conninfo)
            fields["user"] = self.options.superuser
            conninfo = shell.make_postgre_sql_connection_string(fields)
        return template.replace(self.PD_DATA_PATH_ATTR, self.data_directory)\
            .replace(self.PRIMARY_CONN_STR_ATTR, conninfo)

    def rewind(self, primary_record, local_record):
        """Archives the configuration files, runs pg_rewind and restores them.
        The standby.signal file is removed for the duration of the rewind."""
        data_dir = self.data_directory
        try:
            config_archive.archive_config_files(data_dir, self.config_files, self.config_archive_dir,
                                                local_record.node_name)
        except OSError as ex:
            raise RejoinFailError("unable to archive configuration files; pg_rewind not executed", detail=str(ex))

        signal_file = os.path.join(data_dir, recovery_config.STANDBY_SIGNAL_FILE)
        signal_removed = False
        try:
            if os.path.exists(signal_file):
                os.unlink(signal_file)
                signal_removed = True

            command = self.make_rewind_command(primary_record)
            notice("Executing pg_rewind.")
            result = shell.execute_cmd(command)
            if not result.success:
                raise RejoinFailError("pg_rewind execution failed", detail=(result.error_output or result.output).strip(),
                                      hint=f"the data directory \"{data_dir}\" may have been modified and may need "
                                           f"to be recloned with \"standby clone\"")
        finally:
            if signal_removed:
                with open(signal_file, "w"):
                    pass
            _, failed = config_archive.restore_config_files(data_dir, self.config_archive_dir, local_record.node_name)
            if failed:
                self.logger.error(f"Unable to restore archived configuration files: {', '.join(failed)}.")
                log_hint(f"copy them manually from \"{config_archive.get_archive_dir(self.config_archive_dir, local_record.node_name)}\"")

        recovery_done = os.path.join(data_dir, recovery_config.RECOVERY_DONE_FILE)
        if os.path.exists(recovery_done):
            os.unlink(recovery_done)
        self.purge_slot_directories()
        notice("pg_rewind execution completed.")

    def purge_slot_directories(self):
        slot_dir = os.path.join(self.data_directory, REPLICATION_SLOT_DIR)
        if not os.path.isdir(slot_dir):
            return
        for entry in os.scandir(slot_dir):
            if entry.is_dir(follow_symlinks=False):
                self.logger.debug(f"Removing replication slot directory \"{entry.path}\".")
                shutil.rmtree(entry.path)

    def clean_slots(self, primary_conn, local_record):
        """Drops inactive slots on this node which no downstream node of this node uses."""
        if not self.config.use_replication_slots:
            return
        with self.connect_quiet(self.config.conninfo) as local_conn:
            if not local_conn.ok:
                self.logger.warning("Unable to connect to the local node to check replication slots.")
                return
            downstream = node_store.get_downstream_node_records(primary_conn, local_record.node_id, active_only=True)
            reconciliation = slots.reconcile_downstream_slots(downstream, slots.get_all_slots(local_conn))
            for slot_name in reconciliation.extra_inactive:
                if slot_name.startswith(self.config.make_slot_name("")):
                    slots.drop_replication_slot_if_exists(local_conn, local_record.node_id, slot_name)
                else:
                    self.logger.warning(f"Inactive replication slot \"{slot_name}\" found on this node.")
                    log_detail("the slot was not created by this program and will not be dropped")
