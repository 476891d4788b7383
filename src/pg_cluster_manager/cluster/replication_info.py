from pg_cluster_manager.cluster.node_role import RecoveryType


class ReplicationInfo:
    def __init__(self, recovery_type=RecoveryType.UNKNOWN):
        self.recovery_type = recovery_type
        self.last_wal_receive_lsn = None
        self.last_wal_replay_lsn = None
        self.replication_lag_bytes = 0
        self.replication_lag_seconds = 0
        self.timeline_id = None
        self.upstream_attached = False
        self.wal_receiver_pid = 0

    def __str__(self):
        state_as_str = str(self.__dict__).replace('\'', '').replace('{', '')\
            .replace('}', '').replace(',', '').replace(': ', '=')
        return state_as_str

    def __repr__(self):
        return self.__str__()
