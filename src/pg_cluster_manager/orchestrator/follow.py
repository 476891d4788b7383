import contextlib
import enum

from pg_cluster_manager.cluster import node_store
from pg_cluster_manager.cluster.node_role import NodeRole, RecoveryType
from pg_cluster_manager.orchestrator.handler import Handler
from pg_cluster_manager.utils import db, events, recovery_config, replication, slots
from pg_cluster_manager.utils.errors import DbQueryError, FollowFailError, RejoinFailError
from pg_cluster_manager.utils.events import EventInfo
from pg_cluster_manager.utils.logger import log_detail, log_hint, notice
from pg_cluster_manager.utils.service_control import ServerAction


class FollowState(enum.Enum):
    RESOLVE_TARGET = 1
    VERIFY_TARGET_IS_PRIMARY = 2
    VERIFY_ATTACHABLE = 3
    ENSURE_SLOT = 4
    WRITE_RECOVERY_CONFIG = 5
    RESTART_LOCAL = 6
    AWAIT_ATTACHED = 7
    UPDATE_METADATA = 8
    NOTIFY = 9
    DONE = 10

    def __str__(self):
        return self.name


class FollowHandler(Handler):
    """Attaches the local standby to a new upstream (the primary unless --upstream-node-id is given)."""

    EVENT = "standby_follow"

    def __init__(self, config, options, remote=None, service=None, upstream_node_id=None):
        super().__init__(config, options, remote, service)
        self.upstream_node_id = upstream_node_id
        self.event = self.EVENT

    def run(self):
        with contextlib.ExitStack() as stack:
            local_conn = stack.enter_context(self.connect_local())
            if db.get_recovery_type(local_conn) != RecoveryType.STANDBY:
                raise FollowFailError("this node is not running as a standby",
                                     hint="use \"node rejoin\" to attach a former primary")

            self.set_state(FollowState.RESOLVE_TARGET)
            primary_record, primary_conn = self.resolve_primary(local_conn)
            stack.enter_context(primary_conn)
            local_record = node_store.require_node_record(primary_conn, self.local_node_id)
            target_record, target_conn = self.resolve_target(primary_conn, primary_record, local_record)
            if target_conn is not primary_conn:
                stack.enter_context(target_conn)

            self.set_state(FollowState.VERIFY_TARGET_IS_PRIMARY)
            self.verify_target(target_conn, target_record, primary_record)

            if self.is_noop(target_conn, target_record, local_record):
                notice(f"Node {local_record.node_id} is already attached to node {target_record.node_id}; "
                       f"nothing to do.")
                self.set_state(FollowState.DONE)
                return False

            self.set_state(FollowState.VERIFY_ATTACHABLE)
            local_tli = db.get_node_timeline(local_conn)
            local_lsn = max(replication.parse_lsn(db.get_last_wal_receive_lsn(local_conn)),
                            replication.parse_lsn(db.get_last_wal_replay_lsn(local_conn)))
            if local_tli is None or not replication.check_node_can_attach(
                    local_tli, local_lsn, target_record, False, connect_timeout=self.config.connect_timeout):
                raise FollowFailError(f"this node cannot attach to follow target node {target_record.node_id}")

            if self.options.dry_run:
                self.logger.info(f"Prerequisites for following node {target_record.node_id} are met.")
                return False

            local_conn.close()
            attached, details, timestamp = self.attach(primary_conn, target_conn, target_record, local_record,
                                                       local_running=True)
            return self.finish(local_record, target_record, attached, details, timestamp)

    def resolve_primary(self, conn, timeout=None):
        """Finds a reachable node running as primary among the records visible on conn.
        The registered primary is tried first; records may be stale after a failover."""
        timeout = self.config.primary_follow_timeout if timeout is None else timeout

        def find():
            records = node_store.get_all_node_records(conn)
            candidates = [r for r in records if r.role == NodeRole.PRIMARY and r.active]
            if self.upstream_node_id is not None:
                candidates += [r for r in records if r.node_id == self.upstream_node_id]
            candidates += [r for r in records if r.role.streams_wal and r.node_id != self.local_node_id]

            tried = set()
            for record in candidates:
                if record.node_id in tried:
                    continue
                tried.add(record.node_id)
                candidate_conn = self.connect_quiet(record.conninfo)
                if candidate_conn.ok and db.get_recovery_type(candidate_conn) == RecoveryType.PRIMARY:
                    return record, candidate_conn
                candidate_conn.close()
            return None

        self.logger.info(f"Looking for a running primary (timeout {timeout} seconds).")
        found = self.poll(find, timeout)
        if not found:
            raise FollowFailError("unable to find a running primary node",
                                  detail=f"no node was reachable as primary within {timeout} seconds")
        record = found[0]
        self.logger.info(f"Found primary node {record.node_id} (\"{record.node_name}\").")
        return found

    def resolve_target(self, primary_conn, primary_record, local_record):
        if self.upstream_node_id is None or self.upstream_node_id == primary_record.node_id:
            return primary_record, primary_conn

        if self.upstream_node_id == local_record.node_id:
            raise FollowFailError("a node cannot follow itself")

        target_record = node_store.get_node_record(primary_conn, self.upstream_node_id)
        if target_record is None:
            raise FollowFailError(f"no record found for follow target node {self.upstream_node_id}")

        def connect_target():
            target_conn = self.connect_quiet(target_record.conninfo)
            if target_conn.ok:
                return target_conn
            target_conn.close()
            return None

        target_conn = self.poll(connect_target, self.config.standby_follow_timeout)
        if not target_conn:
            raise FollowFailError(f"unable to connect to follow target node {target_record.node_id}",
                                  detail=f"node was not reachable within {self.config.standby_follow_timeout} seconds")
        return target_record, target_conn

    def verify_target(self, target_conn, target_record, primary_record):
        recovery_type = db.get_recovery_type(target_conn)
        if target_record.node_id == primary_record.node_id:
            if recovery_type != RecoveryType.PRIMARY:
                raise FollowFailError(f"follow target node {target_record.node_id} is not running as primary")
            return
        if recovery_type != RecoveryType.STANDBY:
            raise FollowFailError(f"follow target node {target_record.node_id} has unexpected recovery type "
                                  f"\"{recovery_type}\"")
        self.logger.info(f"Node will be attached to standby {target_record.node_id} (cascading replication).")

    def is_noop(self, target_conn, target_record, local_record):
        return local_record.active and local_record.role == NodeRole.STANDBY and \
            local_record.upstream_node_id == target_record.node_id and \
            replication.is_downstream_node_attached(target_conn, local_record.node_name) == \
            replication.NodeAttached.ATTACHED

    def attach(self, primary_conn, target_conn, target_record, local_record, local_running):
        """ENSURE_SLOT through UPDATE_METADATA. Returns (attached, event details, event timestamp)."""
        previous_upstream_id = local_record.upstream_node_id

        self.set_state(FollowState.ENSURE_SLOT)
        slot_name = self.ensure_slot(target_conn, target_record, local_record)

        self.set_state(FollowState.WRITE_RECOVERY_CONFIG)
        self.write_recovery_config(target_record, local_record, slot_name)

        self.set_state(FollowState.RESTART_LOCAL)
        self.service.run(ServerAction.RESTART if local_running else ServerAction.START)

        self.set_state(FollowState.AWAIT_ATTACHED)
        attached = replication.wait_until_attached(target_conn, local_record.node_name, self.config.node_rejoin_timeout)

        self.set_state(FollowState.UPDATE_METADATA)
        if attached:
            details = f"node {local_record.node_id} is now attached to node {target_record.node_id}"
        else:
            details = f"node {local_record.node_id} was configured to follow node {target_record.node_id} but " \
                      f"attachment was not confirmed within {self.config.node_rejoin_timeout} seconds"
        timestamp = self.update_metadata(primary_conn, local_record, target_record, slot_name, attached, details)

        if attached and previous_upstream_id is not None and previous_upstream_id != target_record.node_id:
            self.drop_previous_slot(primary_conn, previous_upstream_id, slot_name)

        return attached, details, timestamp

    def finish(self, local_record, target_record, attached, details, timestamp):
        """NOTIFY and DONE; raises RejoinFailError when the attachment was not confirmed."""
        self.set_state(FollowState.NOTIFY)
        events.notify(self.config, local_record.node_id, self.event, attached, details, timestamp,
                      EventInfo.from_record(target_record))

        if not attached:
            raise RejoinFailError(f"node {local_record.node_id} has not attached to node {target_record.node_id}",
                                  detail=details,
                                  hint="check the PostgreSQL log on this node; configuration was changed")

        notice(f"Node {local_record.node_id} is now attached to node {target_record.node_id}.")
        self.set_state(FollowState.DONE)
        return True

    def ensure_slot(self, target_conn, target_record, local_record):
        if not self.config.use_replication_slots:
            return ""
        slot_name = local_record.slot_name or self.config.make_slot_name(local_record.node_id)
        if slots.get_slot_record(target_conn, slot_name) is None and \
                not slots.check_replication_slots_available(target_record.node_id, target_conn):
            raise FollowFailError(f"no free replication slot on node {target_record.node_id}")
        if not slots.create_replication_slot(target_conn, slot_name):
            raise FollowFailError(f"unable to create replication slot \"{slot_name}\" on node {target_record.node_id}")
        return slot_name

    def write_recovery_config(self, target_record, local_record, slot_name):
        if not self.data_directory:
            self.config.require_data_directory()
        try:
            recovery_config.write_recovery_config(self.data_directory, target_record, local_record.node_name,
                                                  slot_name, self.config.replication_user or local_record.repluser)
        except OSError as ex:
            raise FollowFailError("unable to write the replication configuration", detail=str(ex))

    def update_metadata(self, primary_conn, local_record, target_record, slot_name, attached, details):
        try:
            with node_store.transaction(primary_conn):
                node_store.update_node_record_status(primary_conn, local_record.node_id, NodeRole.STANDBY,
                                                     target_record.node_id, True)
                if slot_name and slot_name != local_record.slot_name:
                    node_store.update_node_record_slot_name(primary_conn, local_record.node_id, slot_name)
                return node_store.create_event_record(primary_conn, local_record.node_id, self.event, attached,
                                                      details)
        except DbQueryError as ex:
            self.logger.error(f"Unable to update the record of node {local_record.node_id}.")
            log_detail(ex.detail or ex.message)
            log_hint("the node is configured to follow the new upstream; re-register it with --force")
            return None

    def drop_previous_slot(self, primary_conn, previous_upstream_id, slot_name):
        if not self.config.use_replication_slots or not slot_name:
            return
        previous_record = node_store.get_node_record(primary_conn, previous_upstream_id)
        if previous_record is None:
            return
        with self.connect_quiet(previous_record.conninfo) as previous_conn:
            if not previous_conn.ok:
                self.logger.warning(f"Unable to connect to previous upstream node {previous_upstream_id}; "
                                    f"replication slot \"{slot_name}\" may need to be dropped manually.")
                return
            if db.get_recovery_type(previous_conn) == RecoveryType.UNKNOWN:
                return
            slots.drop_replication_slot_if_exists(previous_conn, previous_upstream_id, slot_name)
