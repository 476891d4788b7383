import contextlib
import enum
import logging

from pg_cluster_manager.cluster import node_store
from pg_cluster_manager.cluster.node_role import NodeRole, RecoveryType
from pg_cluster_manager.orchestrator.handler import Handler
from pg_cluster_manager.orchestrator.node_commands import CheckStatus, SWITCHOVER_CHECKS, parse_optformat
from pg_cluster_manager.orchestrator.promote import PromoteHandler
from pg_cluster_manager.orchestrator.repmgrd import PAUSE_EVENT, RepmgrdHandler
from pg_cluster_manager.utils import controldata, db, events, replication, slots
from pg_cluster_manager.utils.errors import DbQueryError, PromotionFailError, SwitchoverFailError, \
    SwitchoverIncompleteError
from pg_cluster_manager.utils.events import EventInfo
from pg_cluster_manager.utils.logger import log_detail, log_hint, notice

EVENT = "standby_switchover"
SSH_FAILURE_EXIT_STATUS = 255


class SwitchoverState(enum.Enum):
    VALIDATE_LOCAL_ROLE = 1
    RESOLVE_CURRENT_PRIMARY = 2
    CHECK_PRIMARY_REACHABLE = 3
    DEMAND_CLEAN_SHUTDOWN_CAPABILITY = 4
    PAUSE_REPMGRD = 5
    AWAIT_REPLICATION_LAG_BELOW_THRESHOLD = 6
    STOP_PRIMARY_REMOTELY = 7
    CONFIRM_PRIMARY_CLEANLY_SHUTDOWN = 8
    WAIT_UNTIL_LOCAL_REPLAYED = 9
    PROMOTE_LOCAL = 10
    UPDATE_METADATA = 11
    FOLLOW_SIBLINGS = 12
    REJOIN_DEMOTED_PRIMARY = 13
    NOTIFY = 14
    DONE = 15

    def __str__(self):
        return self.name


def lag_below_threshold(primary_lsn, local_replay_lsn, threshold):
    """Both positions are integers. A standby which has replayed everything always passes."""
    lag = max(primary_lsn - local_replay_lsn, 0)
    return lag == 0 or lag < threshold


class SwitchoverHandler(Handler):
    """Promotes the local standby and demotes the current primary, which is then rejoined as a standby
    of this node. Runs on the standby to be promoted."""

    def __init__(self, config, options, remote=None, service=None, siblings_follow=False, force_rewind=False,
                 repmgrd_no_pause=False):
        super().__init__(config, options, remote, service)
        self.siblings_follow = siblings_follow
        self.force_rewind = force_rewind
        self.repmgrd_no_pause = repmgrd_no_pause
        self.paused_node_ids = []
        self.shutdown_checkpoint_lsn = None
        self.replayed_lsn_before_promote = None

    def run(self):
        self.config.require_node_identity()
        with contextlib.ExitStack() as stack:
            local_conn = stack.enter_context(self.connect_local())

            self.set_state(SwitchoverState.VALIDATE_LOCAL_ROLE)
            local_record = self.validate_local_role(local_conn)

            self.set_state(SwitchoverState.RESOLVE_CURRENT_PRIMARY)
            primary_record = node_store.get_primary_node_record(local_conn)
            if primary_record is None:
                raise SwitchoverFailError("unable to find the current primary in the node records")
            if local_record.upstream_node_id != primary_record.node_id:
                raise SwitchoverFailError(f"this node is not attached to the current primary "
                                          f"(ID: {primary_record.node_id})",
                                          hint="switchover is only possible for a standby of the primary")

            self.set_state(SwitchoverState.CHECK_PRIMARY_REACHABLE)
            primary_conn = stack.enter_context(self.connect_quiet(primary_record.conninfo))
            self.check_primary_reachable(primary_conn, primary_record)
            siblings = self.check_siblings(local_conn, primary_conn, primary_record, local_record)

            self.set_state(SwitchoverState.DEMAND_CLEAN_SHUTDOWN_CAPABILITY)
            self.demand_clean_shutdown_capability(primary_record)

            if self.options.dry_run:
                self.log_dry_run(primary_record, local_record, siblings)
                return False

            all_records = node_store.get_all_node_records(local_conn)
            try:
                self.set_state(SwitchoverState.PAUSE_REPMGRD)
                if not self.repmgrd_no_pause:
                    pauser = RepmgrdHandler(self.config, self.options, self.remote, self.service)
                    self.paused_node_ids = pauser.set_paused(all_records, True)

                return self.switch_roles(local_conn, primary_conn, local_record, primary_record, siblings)
            finally:
                self.unpause(all_records)

    def switch_roles(self, local_conn, primary_conn, local_record, primary_record, siblings):
        """Steps from the replication lag check to the notification of the switchover."""
        self.set_state(SwitchoverState.AWAIT_REPLICATION_LAG_BELOW_THRESHOLD)
        self.await_replication_lag(local_conn, primary_conn)
        primary_conn.close()

        self.set_state(SwitchoverState.STOP_PRIMARY_REMOTELY)
        self.stop_primary(primary_record)

        self.set_state(SwitchoverState.CONFIRM_PRIMARY_CLEANLY_SHUTDOWN)
        self.shutdown_checkpoint_lsn = self.confirm_primary_shutdown(primary_record, local_record)

        self.set_state(SwitchoverState.WAIT_UNTIL_LOCAL_REPLAYED)
        self.wait_until_local_replayed(local_conn, primary_record, local_record)

        self.set_state(SwitchoverState.PROMOTE_LOCAL)
        self.promote_local(local_conn, primary_record, local_record)

        self.set_state(SwitchoverState.UPDATE_METADATA)
        timestamp, details = self.update_metadata(local_conn, local_record, primary_record)

        self.set_state(SwitchoverState.NOTIFY)
        self.notify_committed(local_record, primary_record, timestamp, details)

        self.set_state(SwitchoverState.FOLLOW_SIBLINGS)
        failed_siblings = self.follow_siblings(local_record, siblings)

        self.set_state(SwitchoverState.REJOIN_DEMOTED_PRIMARY)
        self.rejoin_demoted_primary(local_conn, local_record, primary_record)

        notice(f"Switchover completed: node \"{local_record.node_name}\" (ID: {local_record.node_id}) is now "
               f"primary and node \"{primary_record.node_name}\" (ID: {primary_record.node_id}) is attached "
               f"as a standby.")
        if failed_siblings:
            self.logger.warning(f"{len(failed_siblings)} sibling node(s) could not be attached to the new primary.")
            for record in failed_siblings:
                log_detail(f"node \"{record.node_name}\" (ID: {record.node_id})", level=logging.WARNING)
        self.set_state(SwitchoverState.DONE)
        return True

    def validate_local_role(self, local_conn):
        if db.get_recovery_type(local_conn) != RecoveryType.STANDBY:
            raise SwitchoverFailError("switchover must be executed from the standby node to be promoted",
                                      detail="this node is not running as a standby")
        local_record = node_store.require_node_record(local_conn, self.local_node_id)
        if not local_record.role.can_be_promoted:
            raise SwitchoverFailError(f"node {local_record.node_id} is registered as {local_record.role}")
        return local_record

    def check_primary_reachable(self, primary_conn, primary_record):
        """The primary must be reachable with a database connection and with ssh, unless --force."""
        problems = []
        if not primary_conn.ok:
            problems.append(f"unable to connect to the current primary (ID: {primary_record.node_id})")
        elif db.get_recovery_type(primary_conn) != RecoveryType.PRIMARY:
            raise SwitchoverFailError(f"node {primary_record.node_id} is registered as primary but is not "
                                      f"running as primary")

        host = self.remote_host(primary_record)
        if not self.remote.test_ssh_connection(host):
            problems.append(f"unable to connect via SSH to host \"{host}\" of the current primary")

        if not problems:
            return
        if not self.options.force:
            raise SwitchoverFailError("the current primary is not reachable", detail="; ".join(problems),
                                      hint="check the connection settings and SSH access, or use --force")
        for problem in problems:
            self.logger.warning(f"{problem[0].upper()}{problem[1:]}; continuing because --force was given.")

    def check_siblings(self, local_conn, primary_conn, primary_record, local_record):
        """Returns the other standbys attached to the current primary."""
        siblings = [r for r in node_store.get_downstream_node_records(local_conn, primary_record.node_id,
                                                                      active_only=True)
                    if r.node_id != local_record.node_id and r.role == NodeRole.STANDBY]
        if siblings and not self.siblings_follow:
            self.logger.warning(f"{len(siblings)} sibling node(s) will remain attached to the demoted primary.")
            log_hint("use --siblings-follow to attach them to the new primary")

        if self.config.use_replication_slots:
            stats = db.get_node_replication_stats(local_conn)
            # the demoted primary and every sibling will need a slot here
            needed = 1 + (len(siblings) if self.siblings_follow else 0)
            free = stats["max_replication_slots"] - stats["active_replication_slots"] - \
                stats["inactive_replication_slots"]
            if free < needed:
                raise SwitchoverFailError("insufficient free replication slots on this node",
                                          detail=f"{needed} required, {free} available",
                                          hint="increase \"max_replication_slots\" on this node")
        if primary_conn.ok and self.config.use_replication_slots:
            missing = slots.get_downstream_nodes_with_missing_slot(primary_conn, primary_record.node_id)
            for record in missing:
                self.logger.warning(f"Replication slot \"{record.slot_name}\" of node {record.node_id} is missing "
                                    f"on the current primary.")
        return siblings

    def demand_clean_shutdown_capability(self, primary_record):
        result = self.run_remote_command(primary_record, "node check --optformat")
        if result.inaccessible:
            if not self.options.force:
                raise SwitchoverFailError("unable to execute \"node check\" on the current primary",
                                          detail=result.buffer.strip() or None,
                                          hint="verify the program is installed on the primary's host")
            self.logger.warning("Unable to check the current primary; continuing because --force was given.")
            return

        values = parse_optformat(result.output)
        problems = []
        for check in SWITCHOVER_CHECKS:
            status = values.get(check.value, str(CheckStatus.UNKNOWN))
            if status == str(CheckStatus.WARNING):
                self.logger.warning(f"Check \"{check.value}\" on the current primary reported {status}.")
            elif status != str(CheckStatus.OK):
                problems.append(f"{check.value}: {status}")
        if "files" in values:
            self.logger.info(f"{values['files']} WAL files pending archiving on the current primary "
                             f"(critical threshold: {values.get('threshold', '?')}).")
        if not problems:
            return
        if not self.options.force:
            raise SwitchoverFailError("the current primary cannot be shut down cleanly for a switchover",
                                      detail="; ".join(problems),
                                      hint="execute \"node check\" on the primary, or use --force")
        self.logger.warning(f"Primary checks failed ({'; '.join(problems)}); continuing because --force was given.")

    def log_dry_run(self, primary_record, local_record, siblings):
        self.logger.info(f"Prerequisites for the switchover of node {primary_record.node_id} to node "
                         f"{local_record.node_id} are met.")
        if not self.repmgrd_no_pause:
            self.logger.info("Would pause repmgrd on all nodes.")
        self.logger.info(f"Would stop the current primary \"{primary_record.node_name}\" "
                         f"(ID: {primary_record.node_id}) with \"node service --action=stop --checkpoint\".")
        self.logger.info(f"Would promote node \"{local_record.node_name}\" (ID: {local_record.node_id}).")
        if self.siblings_follow:
            for record in siblings:
                self.logger.info(f"Would attach sibling node {record.node_id} to the new primary.")
        self.logger.info(f"Would rejoin node {primary_record.node_id} as a standby of node {local_record.node_id}.")

    def await_replication_lag(self, local_conn, primary_conn):
        if not primary_conn.ok:
            self.logger.warning("Replication lag cannot be checked: the current primary is not reachable.")
            return
        threshold = self.config.switchover_lag_threshold

        def check():
            primary_lsn = replication.parse_lsn(db.get_current_wal_lsn(primary_conn))
            local_lsn = replication.parse_lsn(db.get_last_wal_replay_lsn(local_conn))
            self.logger.debug(f"Primary at {replication.format_lsn(primary_lsn)}, "
                              f"replayed {replication.format_lsn(local_lsn)}.")
            return lag_below_threshold(primary_lsn, local_lsn, threshold)

        if not self.poll(check, self.config.switchover_lag_timeout):
            raise SwitchoverFailError("replication lag did not drop below the threshold",
                                      detail=f"lag was not below {threshold} bytes within "
                                             f"{self.config.switchover_lag_timeout} seconds")

    def stop_primary(self, primary_record):
        notice(f"Stopping the current primary \"{primary_record.node_name}\" (ID: {primary_record.node_id}).")
        result = self.run_remote_command(primary_record, "node service --action=stop --checkpoint")
        if result.returncode == SSH_FAILURE_EXIT_STATUS:
            raise SwitchoverFailError("unable to stop the current primary via SSH",
                                      detail=result.buffer.strip() or None)
        if not result.success:
            # the server may already be shutting down; the shutdown state is polled next
            self.logger.warning("The stop command on the current primary returned an error.")
            log_detail(result.buffer.strip() or f"returned {result.returncode}")

    def confirm_primary_shutdown(self, primary_record, local_record):
        """Polls the shutdown state of the primary, returns its last checkpoint LSN."""
        observed = {}

        def check():
            result = self.run_remote_command(primary_record, "node status --is-shutdown-cleanly")
            status, checkpoint_lsn = controldata.parse_shutdown_status(result.output)
            self.logger.debug(f"Shutdown status of the current primary: {status}")
            observed["status"] = status
            observed["lsn"] = checkpoint_lsn
            return status in (controldata.ServerStatus.SHUTDOWN, controldata.ServerStatus.UNCLEAN_SHUTDOWN)

        self.logger.info(f"Waiting up to {self.config.shutdown_check_timeout} seconds for the current primary to "
                         f"shut down.")
        self.poll(check, self.config.shutdown_check_timeout)
        status = observed.get("status", controldata.ServerStatus.UNKNOWN)
        if status != controldata.ServerStatus.SHUTDOWN:
            self.fail_critical(local_record, primary_record,
                               f"the current primary did not shut down cleanly (last state: {status})",
                               hint="the current primary may need to be restarted manually")
        notice(f"Current primary was shut down cleanly at checkpoint {observed['lsn']}.")
        return observed["lsn"]

    def wait_until_local_replayed(self, local_conn, primary_record, local_record):
        target = replication.parse_lsn(self.shutdown_checkpoint_lsn)

        def check():
            replayed = replication.parse_lsn(db.get_last_wal_replay_lsn(local_conn))
            if replayed >= target:
                self.replayed_lsn_before_promote = replayed
                return True
            return False

        if not self.poll(check, self.config.wal_receive_check_timeout):
            self.fail_critical(local_record, primary_record,
                               f"this node has not replayed up to the shutdown checkpoint "
                               f"{self.shutdown_checkpoint_lsn} of the primary",
                               hint="the cluster has no primary; restart the former primary or promote "
                                    "this node manually")

    def promote_local(self, local_conn, primary_record, local_record):
        promoter = PromoteHandler(self.config, self.options, self.remote, self.service)
        try:
            promoter.promote(local_conn)
            promoter.await_primary_state(local_conn, local_record)
        except PromotionFailError as ex:
            self.fail_critical(local_record, primary_record, f"promotion of this node failed: {ex.message}",
                               hint="the cluster has no primary; check the PostgreSQL log on this node")
        notice(f"Node {local_record.node_id} was promoted to primary.")

    def update_metadata(self, local_conn, local_record, primary_record):
        """Role changes and the events of the switchover in one transaction. Returns (timestamp, details)."""
        details = {
            "standby_promote": f"server \"{local_record.node_name}\" (ID: {local_record.node_id}) was "
                               f"successfully promoted to primary",
            PAUSE_EVENT: f"repmgrd paused on node(s) {', '.join(str(i) for i in self.paused_node_ids)}",
            EVENT: f"node \"{local_record.node_name}\" (ID: {local_record.node_id}) promoted to primary; "
                   f"node \"{primary_record.node_name}\" (ID: {primary_record.node_id}) demoted to standby",
        }
        try:
            with node_store.transaction(local_conn):
                node_store.update_node_record_set_primary(local_conn, local_record.node_id)
                node_store.update_node_record_status(local_conn, primary_record.node_id, NodeRole.STANDBY,
                                                     local_record.node_id, False)
                timestamp = node_store.create_event_record(local_conn, local_record.node_id, "standby_promote",
                                                           True, details["standby_promote"])
                if self.paused_node_ids:
                    node_store.create_event_record(local_conn, local_record.node_id, PAUSE_EVENT, True,
                                                   details[PAUSE_EVENT])
                node_store.create_event_record(local_conn, local_record.node_id, EVENT, True, details[EVENT])
        except DbQueryError as ex:
            self.logger.error("Unable to update the node records after the promotion.")
            log_detail(ex.detail or ex.message)
            raise SwitchoverIncompleteError("node records were not updated after the promotion",
                                            detail=ex.detail or ex.message,
                                            hint="execute \"standby promote\" on this node to update the records")
        return timestamp, details

    def notify_committed(self, local_record, primary_record, timestamp, details):
        event_info = EventInfo.from_record(primary_record)
        events.notify(self.config, local_record.node_id, "standby_promote", True, details["standby_promote"],
                      timestamp)
        if self.paused_node_ids:
            events.notify(self.config, local_record.node_id, PAUSE_EVENT, True, details[PAUSE_EVENT], timestamp)
        events.notify(self.config, local_record.node_id, EVENT, True, details[EVENT], timestamp, event_info)

    def follow_siblings(self, local_record, siblings):
        """Returns the records of the siblings which could not be attached."""
        if not self.siblings_follow:
            return []
        failed = []
        for record in siblings:
            self.logger.info(f"Attaching sibling node \"{record.node_name}\" (ID: {record.node_id}) to the new "
                             f"primary.")
            result = self.run_remote_command(record, f"standby follow --upstream-node-id={local_record.node_id}")
            if not result.success:
                self.logger.warning(f"Unable to attach node {record.node_id} to the new primary.")
                log_detail(result.buffer.strip() or f"returned {result.returncode}")
                failed.append(record)
        return failed

    def rejoin_demoted_primary(self, local_conn, local_record, primary_record):
        host = self.remote_host(primary_record)
        if not self.remote.test_ssh_connection(host):
            self.logger.warning(f"Unable to connect via SSH to the demoted primary \"{primary_record.node_name}\" "
                                f"(ID: {primary_record.node_id}); it must be rejoined manually.")
            log_hint(f"execute \"node rejoin\" on \"{host}\"")
            return False

        arguments = "node rejoin --force-rewind" if self.force_rewind else "node rejoin"
        result = self.run_remote_command(primary_record, arguments, conninfo=local_record.conninfo)
        if not result.success:
            raise SwitchoverIncompleteError(f"unable to rejoin the demoted primary (ID: {primary_record.node_id})",
                                            detail=result.buffer.strip() or f"returned {result.returncode}",
                                            hint=f"execute \"node rejoin\" on \"{host}\" manually; "
                                                 f"this node is the new primary")

        if replication.wait_until_attached(local_conn, primary_record.node_name, self.config.node_rejoin_timeout):
            self.logger.info(f"Node {primary_record.node_id} is attached to this node.")
        else:
            self.logger.warning(f"Node {primary_record.node_id} was rejoined but has not attached yet.")
        return True

    def fail_critical(self, local_record, primary_record, message, hint=None):
        """A failure after the primary was stopped: the cluster is left without a primary."""
        self.logger.critical(message)
        events.notify(self.config, local_record.node_id, EVENT, False, message, event_info=EventInfo.from_record(
            primary_record))
        raise SwitchoverFailError(message, hint=hint)

    def unpause(self, records):
        if not self.paused_node_ids:
            return
        paused_records = [r for r in records if r.node_id in self.paused_node_ids]
        unpauser = RepmgrdHandler(self.config, self.options, self.remote, self.service)
        unpaused = unpauser.set_paused(paused_records, False, raise_on_failure=False)
        still_paused = [i for i in self.paused_node_ids if i not in unpaused]
        if still_paused:
            self.logger.warning(f"repmgrd is still paused on node(s) {', '.join(str(i) for i in still_paused)}.")
            log_hint("execute \"service unpause\" once all nodes are reachable")
        self.paused_node_ids = []
