import enum


class NodeRole(enum.Enum):
    UNKNOWN = "unknown"
    PRIMARY = "primary"
    STANDBY = "standby"
    WITNESS = "witness"
    BDR = "bdr"

    @classmethod
    def parse(cls, value):
        """Returns the role for its stored name, UNKNOWN for anything else."""
        for role in cls:
            if role.value == (value or "").strip().lower():
                return role
        return cls.UNKNOWN

    @property
    def can_be_promoted(self):
        return self == NodeRole.STANDBY

    @property
    def expects_upstream(self):
        return self == NodeRole.STANDBY

    @property
    def streams_wal(self):
        return self in (NodeRole.PRIMARY, NodeRole.STANDBY)

    def __str__(self):
        return self.value

    def __repr__(self):
        return self.__str__()


class RecoveryType(enum.Enum):
    """Live state of a server as reported by pg_is_in_recovery()."""
    UNKNOWN = -1
    PRIMARY = 0
    STANDBY = 1

    @property
    def csv_value(self):
        return self.value

    def __str__(self):
        return self.name.lower()

    def __repr__(self):
        return self.__str__()
