import enum

from pg_cluster_manager.cluster import node_store
from pg_cluster_manager.cluster.node_role import NodeRole, RecoveryType
from pg_cluster_manager.orchestrator.handler import Handler
from pg_cluster_manager.utils import db, events
from pg_cluster_manager.utils.errors import DbQueryError, PromotionFailError
from pg_cluster_manager.utils.logger import log_detail, log_hint, notice
from pg_cluster_manager.utils.service_control import ServerAction

# first server version providing pg_promote()
PG_PROMOTE_VERSION = 120000


class PromoteState(enum.Enum):
    CHECK_ROLE = 1
    CHECK_UPSTREAM_DOWN = 2
    PROMOTE = 3
    AWAIT_PRIMARY_STATE = 4
    UPDATE_METADATA = 5
    NOTIFY = 6
    DONE = 7

    def __str__(self):
        return self.name


class PromoteHandler(Handler):
    """Promotes the local standby to primary."""

    def __init__(self, config, options, remote=None, service=None):
        super().__init__(config, options, remote, service)
        self.promoted_at = None

    def run(self):
        with self.connect_local() as conn:
            local_record = node_store.require_node_record(conn, self.local_node_id)

            self.set_state(PromoteState.CHECK_ROLE)
            recovery_type = db.get_recovery_type(conn)
            if recovery_type == RecoveryType.PRIMARY:
                if local_record.role == NodeRole.PRIMARY and local_record.active:
                    notice(f"Node {local_record.node_id} is already the primary; nothing to do.")
                    self.set_state(PromoteState.DONE)
                    return False
                self.logger.info(f"Node {local_record.node_id} is already running as primary; updating metadata.")
            else:
                self.check_role(recovery_type)

                self.set_state(PromoteState.CHECK_UPSTREAM_DOWN)
                self.check_upstream_down(conn, local_record)

                if self.options.dry_run:
                    self.logger.info(f"Prerequisites for promoting node {local_record.node_id} are met.")
                    self.logger.info(f"Would promote node {local_record.node_id}.")
                    return False

                self.set_state(PromoteState.PROMOTE)
                self.promote(conn)

                self.set_state(PromoteState.AWAIT_PRIMARY_STATE)
                self.await_primary_state(conn, local_record)

            self.set_state(PromoteState.UPDATE_METADATA)
            details = self.update_metadata(conn, local_record)

            self.set_state(PromoteState.NOTIFY)
            self.notify(local_record, details)
            self.set_state(PromoteState.DONE)
            return True

    def check_role(self, recovery_type):
        if recovery_type != RecoveryType.STANDBY:
            raise PromotionFailError("this node is not a standby; promotion not possible",
                                     reason=PromotionFailError.ROLE_MISMATCH,
                                     detail=f"node reports its recovery type as \"{recovery_type}\"")

    def check_upstream_down(self, conn, local_record):
        """Refuses to promote while the registered primary is reachable, unless --force."""
        primary_record = node_store.get_primary_node_record(conn)
        if primary_record is not None and primary_record.node_id != local_record.node_id:
            with self.connect_quiet(primary_record.conninfo) as primary_conn:
                if primary_conn.ok and db.get_recovery_type(primary_conn) == RecoveryType.PRIMARY:
                    if not self.options.force:
                        raise PromotionFailError(f"this node's primary (ID: {primary_record.node_id}) is still "
                                                 f"reachable", reason=PromotionFailError.PRIMARY_STILL_REACHABLE,
                                                 hint="use \"standby switchover\" for a planned role change, "
                                                      "or --force to promote anyway")
                    self.logger.warning(f"Primary node {primary_record.node_id} is still running; promoting "
                                        f"because --force was given.")

        if db.is_wal_replay_paused(conn, check_pending_wal=True):
            raise PromotionFailError("WAL replay is paused on this node and WAL is pending replay",
                                     hint="execute \"pg_wal_replay_resume()\" to resume WAL replay")

    def promote(self, conn):
        server_version_num, server_version = db.get_server_version(conn)
        if server_version_num >= PG_PROMOTE_VERSION and not self.service.has_override(ServerAction.PROMOTE):
            self.logger.info(f"Promoting standby with pg_promote() (PostgreSQL {server_version}).")
            try:
                db.promote(conn, wait=False)
            except DbQueryError as ex:
                raise PromotionFailError("unable to promote the standby with pg_promote()", detail=ex.detail)
            return
        self.service.run(ServerAction.PROMOTE)

    def await_primary_state(self, conn, local_record):
        self.logger.info(f"Waiting up to {self.config.promote_check_timeout} seconds "
                         f"(interval {self.config.promote_check_interval}) for the promotion to complete.")
        promoted = self.poll(lambda: db.get_recovery_type(conn) == RecoveryType.PRIMARY,
                             self.config.promote_check_timeout, self.config.promote_check_interval)
        if not promoted:
            details = f"node {local_record.node_id} did not leave recovery within " \
                      f"{self.config.promote_check_timeout} seconds"
            self.record_event(None, local_record.node_id, "standby_promote", False, details)
            raise PromotionFailError("promotion of the standby failed", reason=PromotionFailError.PROMOTE_TIMEOUT,
                                     detail=details,
                                     hint="check the PostgreSQL log on this node")

    def update_metadata(self, conn, local_record):
        """Marks this node as the only active primary and records the promotion in one transaction."""
        details = f"server \"{local_record.node_name}\" (ID: {local_record.node_id}) was successfully promoted to primary"
        try:
            with node_store.transaction(conn):
                node_store.update_node_record_set_primary(conn, local_record.node_id)
                timestamp = node_store.create_event_record(conn, local_record.node_id, "standby_promote", True, details)
        except DbQueryError as ex:
            self.logger.error("Unable to update the metadata for the promoted node.")
            log_detail(ex.message)
            log_hint("another node may have been promoted concurrently; check \"cluster show\"")
            raise PromotionFailError("metadata update for the promoted node failed", detail=ex.detail)
        self.promoted_at = timestamp
        notice(f"Node {local_record.node_id} was successfully promoted to primary.")
        return details

    def notify(self, local_record, details):
        events.notify(self.config, local_record.node_id, "standby_promote", True, details,
                      self.promoted_at)
