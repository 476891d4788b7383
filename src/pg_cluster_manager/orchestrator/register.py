import contextlib

from pg_cluster_manager.cluster import node_store
from pg_cluster_manager.cluster.node_record import NodeRecord
from pg_cluster_manager.cluster.node_role import NodeRole, RecoveryType
from pg_cluster_manager.orchestrator.handler import Handler
from pg_cluster_manager.utils import db, events
from pg_cluster_manager.utils.config import MIN_NODE_ID
from pg_cluster_manager.utils.errors import BadConfigError, DbConnectionError, DbQueryError, NodeStatusError
from pg_cluster_manager.utils.logger import log_hint, notice


class RegisterHandler(Handler):
    """Creates and deletes node records for primaries, standbys and witnesses."""

    def check_metadata_schema(self, conn):
        if node_store.schema_exists(conn):
            return True
        if self.options.dry_run:
            self.logger.info(f"Metadata schema \"{node_store.SCHEMA_NAME}\" would be created.")
            return False
        with self.connect_superuser(self.local_conninfo) as su_conn:
            target = su_conn if su_conn.ok else conn
            if not db.is_superuser_connection(target):
                raise DbQueryError(f"metadata schema \"{node_store.SCHEMA_NAME}\" does not exist and creating it "
                                   f"requires a superuser", hint="provide a superuser with -S/--superuser")
            node_store.create_schema(target)
        return True

    def store_record(self, conn, record, event, deactivate_node_id=None):
        """Creates record or, with --force, replaces an existing one. The record change, the deactivation of
        deactivate_node_id and the event row are committed in one transaction."""
        existing = node_store.get_node_record(conn, record.node_id)
        if existing is not None and not self.options.force:
            raise BadConfigError(f"node {record.node_id} is already registered",
                                 hint="use --force to overwrite the existing node record")

        if self.options.dry_run:
            self.logger.info(f"Would {'update' if existing else 'create'} record for node {record.node_id}: "
                             f"{record}")
            return False

        details = f"{record.role} registration for node \"{record.node_name}\" (ID: {record.node_id})"
        with node_store.transaction(conn):
            if deactivate_node_id is not None:
                node_store.update_node_record_set_active(conn, deactivate_node_id, False)
            if existing is not None:
                node_store.update_node_record(conn, record)
            else:
                node_store.create_node_record(conn, record)
            timestamp = node_store.create_event_record(conn, record.node_id, event, True, details)
        events.notify(self.config, record.node_id, event, True, details, timestamp)
        notice(f"{str(record.role).capitalize()} node record (ID: {record.node_id}) "
               f"{'updated' if existing else 'registered'}.")
        return True

    def unregister(self, conn, record, event):
        if self.options.dry_run:
            self.logger.info(f"Would unregister node {record.node_id}.")
            return False
        details = f"{record.role} node \"{record.node_name}\" (ID: {record.node_id}) unregistered"
        with node_store.transaction(conn):
            node_store.delete_node_record(conn, record.node_id)
            timestamp = node_store.create_event_record(conn, record.node_id, event, True, details)
        events.notify(self.config, record.node_id, event, True, details, timestamp)
        notice(f"Node {record.node_id} unregistered.")
        return True

    def target_node_id(self):
        """Node to unregister: --node-id if given, otherwise the local node."""
        if self.options.node_id >= MIN_NODE_ID:
            return self.options.node_id
        self.config.require_node_identity()
        return self.config.node_id

    def primary_register(self):
        self.config.require_node_identity()
        with self.connect_local() as conn:
            if db.get_recovery_type(conn) != RecoveryType.PRIMARY:
                raise BadConfigError("this node is not running as primary",
                                     hint="use \"standby register\" to register a standby")
            if not self.check_metadata_schema(conn):
                return False

            deactivate_node_id = None
            current_primary = node_store.get_primary_node_record(conn)
            if current_primary is not None and current_primary.node_id != self.config.node_id:
                with self.connect_quiet(current_primary.conninfo) as other_conn:
                    if other_conn.ok and db.get_recovery_type(other_conn) == RecoveryType.PRIMARY:
                        raise BadConfigError(f"there is already an active registered primary "
                                             f"(ID: {current_primary.node_id}) in this cluster")
                if not self.options.force:
                    raise BadConfigError(f"node {current_primary.node_id} is registered as the active primary",
                                         hint="use --force to replace the primary record")
                deactivate_node_id = current_primary.node_id

            record = NodeRecord.from_config(self.config, NodeRole.PRIMARY)
            return self.store_record(conn, record, "primary_register", deactivate_node_id)

    def primary_unregister(self):
        node_id = self.target_node_id()
        with self.connect_local() as conn:
            primary_record, primary_conn = self.connect_primary(conn)
            with primary_conn:
                record = node_store.require_node_record(primary_conn, node_id)
                if record.role != NodeRole.PRIMARY:
                    raise BadConfigError(f"node {node_id} is not a primary", hint=f"its role is \"{record.role}\"")
                if node_store.get_downstream_node_records(primary_conn, node_id, active_only=True):
                    raise BadConfigError(f"node {node_id} still has active downstream nodes")
                if record.node_id == primary_record.node_id:
                    with self.connect_quiet(record.conninfo) as node_conn:
                        if node_conn.ok and db.get_recovery_type(node_conn) == RecoveryType.PRIMARY:
                            raise BadConfigError("the active primary cannot be unregistered while it is running")
                return self.unregister(primary_conn, record, "primary_unregister")

    def standby_register(self, upstream_node_id=None, wait_sync=None):
        self.config.require_node_identity()
        source_conninfo = self.options.source_conninfo()
        with contextlib.ExitStack() as stack:
            local_conn = stack.enter_context(self.connect(self.config.conninfo, raise_on_failure=False))
            if local_conn.ok:
                if db.get_recovery_type(local_conn) != RecoveryType.STANDBY:
                    raise BadConfigError("this node is not running as a standby")
            elif not self.options.force or not source_conninfo:
                raise DbConnectionError("unable to connect to the local node",
                                        hint="a standby can only be registered while it is not running with "
                                             "--force and connection parameters of the primary (-d/-h)")
            else:
                self.logger.warning("Unable to connect to the local node; registering because --force was given.")

            records_conn = local_conn
            if source_conninfo:
                records_conn = stack.enter_context(self.connect(source_conninfo))
            primary_record, primary_conn = self.connect_primary(records_conn)
            stack.enter_context(primary_conn)

            upstream_node_id = upstream_node_id if upstream_node_id is not None else primary_record.node_id
            upstream_record = node_store.get_node_record(primary_conn, upstream_node_id)
            if upstream_record is None:
                raise BadConfigError(f"no record found for upstream node {upstream_node_id}")
            if not upstream_record.active and not self.options.force:
                raise BadConfigError(f"upstream node {upstream_node_id} is marked as inactive",
                                     hint="use --force to register anyway")
            if upstream_record.role == NodeRole.WITNESS:
                raise BadConfigError(f"node {upstream_node_id} is a witness and cannot be an upstream node")

            record = NodeRecord.from_config(self.config, NodeRole.STANDBY, upstream_record.node_id)
            if not self.store_record(primary_conn, record, "standby_register"):
                return False

            if wait_sync is not None and local_conn.ok:
                self.wait_sync(local_conn, record, wait_sync)
            return True

    def wait_sync(self, local_conn, record, timeout):
        """Waits until the new record has been replicated to the local standby."""
        def synced():
            replicated = node_store.get_node_record(local_conn, record.node_id)
            return replicated is not None and replicated.role == record.role and \
                replicated.upstream_node_id == record.upstream_node_id and replicated.conninfo == record.conninfo

        self.logger.info(f"Waiting up to {timeout} seconds for the node record to be replicated.")
        if not self.poll(synced, timeout):
            raise NodeStatusError(f"node record was not synchronised to this node within {timeout} seconds")
        self.logger.info("Node record is synchronised to this node.")

    def standby_unregister(self):
        node_id = self.target_node_id()
        with self.connect_local() as conn:
            _, primary_conn = self.connect_primary(conn)
            with primary_conn:
                record = node_store.require_node_record(primary_conn, node_id)
                if record.role != NodeRole.STANDBY:
                    raise BadConfigError(f"node {node_id} is not a standby", hint=f"its role is \"{record.role}\"")
                return self.unregister(primary_conn, record, "standby_unregister")

    def witness_register(self):
        """The witness is a separate server holding a copy of the node records of the cluster."""
        self.config.require_node_identity()
        source_conninfo = self.options.source_conninfo()
        if not source_conninfo:
            raise BadConfigError("connection parameters of the primary are required to register a witness",
                                 hint="use -h/--host or -d/--dbname")

        with self.connect_local() as witness_conn, self.connect(source_conninfo) as source_conn:
            if db.get_recovery_type(witness_conn) != RecoveryType.PRIMARY:
                raise BadConfigError("the witness server must not be in recovery")
            primary_record, primary_conn = self.connect_primary(source_conn)
            with primary_conn:
                if db.get_system_identifier(witness_conn) == db.get_system_identifier(primary_conn):
                    raise BadConfigError("the witness server is part of the replication cluster",
                                         hint="a witness must run on a separate PostgreSQL instance")
                if not self.check_metadata_schema(witness_conn):
                    return False

                record = NodeRecord.from_config(self.config, NodeRole.WITNESS, primary_record.node_id)
                record.slot_name = ""
                if not self.store_record(primary_conn, record, "witness_register"):
                    return False

                with node_store.transaction(witness_conn):
                    node_store.copy_node_records(witness_conn, node_store.get_all_node_records(primary_conn))
                self.logger.info(f"Node records copied to witness node {record.node_id}.")
                return True

    def witness_unregister(self):
        node_id = self.target_node_id()
        source_conninfo = self.options.source_conninfo() or self.local_conninfo
        with self.connect(source_conninfo) as conn:
            _, primary_conn = self.connect_primary(conn)
            with primary_conn:
                record = node_store.require_node_record(primary_conn, node_id)
                if record.role != NodeRole.WITNESS:
                    raise BadConfigError(f"node {node_id} is not a witness", hint=f"its role is \"{record.role}\"")
                if not self.unregister(primary_conn, record, "witness_unregister"):
                    return False

        with self.connect_quiet(record.conninfo) as witness_conn:
            if witness_conn.ok and node_store.schema_exists(witness_conn):
                with node_store.transaction(witness_conn):
                    node_store.copy_node_records(witness_conn, [])
            else:
                self.logger.warning(f"Unable to connect to witness node {node_id}; its copy of the node records "
                                    f"was not removed.")
                log_hint("the witness server can be dropped or re-registered later")
        return True
