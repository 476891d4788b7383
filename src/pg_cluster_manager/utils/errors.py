import enum


class ExitCode(enum.IntEnum):
    SUCCESS = 0
    BAD_CONFIG = 1
    DB_CONN = 6
    DB_QUERY = 7
    PROMOTION_FAIL = 8
    BAD_SSH = 12
    BAD_BASEBACKUP = 14
    INTERNAL = 15
    SWITCHOVER_FAIL = 18
    OUT_OF_MEMORY = 21
    SWITCHOVER_INCOMPLETE = 22
    FOLLOW_FAIL = 23
    REJOIN_FAIL = 24
    NODE_STATUS = 25
    REPMGRD_PAUSE = 26
    REPMGRD_SERVICE = 27
    LOCAL_COMMAND = 28


class ClusterManagerError(Exception):
    """Base error. Carries a one-line message, an optional detail and an optional hint."""

    exit_code = ExitCode.INTERNAL

    def __init__(self, message, detail=None, hint=None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.hint = hint


class BadConfigError(ClusterManagerError):
    exit_code = ExitCode.BAD_CONFIG

    def __init__(self, message, detail=None, hint=None, errors=None):
        super().__init__(message, detail, hint)
        self.errors = errors or []


class DbConnectionError(ClusterManagerError):
    exit_code = ExitCode.DB_CONN


class DbQueryError(ClusterManagerError):
    exit_code = ExitCode.DB_QUERY

    pgcode = None
    constraint_name = None


class SuperuserRequiredError(DbQueryError):
    def __init__(self, message, detail=None):
        super().__init__(message, detail, hint="provide a superuser with -S/--superuser")


class SshError(ClusterManagerError):
    exit_code = ExitCode.BAD_SSH


class NodeStatusError(ClusterManagerError):
    exit_code = ExitCode.NODE_STATUS


class RejoinFailError(ClusterManagerError):
    exit_code = ExitCode.REJOIN_FAIL


class LocalCommandError(ClusterManagerError):
    exit_code = ExitCode.LOCAL_COMMAND


class InternalError(ClusterManagerError):
    exit_code = ExitCode.INTERNAL


class PromotionFailError(ClusterManagerError):
    exit_code = ExitCode.PROMOTION_FAIL

    ROLE_MISMATCH = "ROLE_MISMATCH"
    PRIMARY_STILL_REACHABLE = "PRIMARY_STILL_REACHABLE"
    PROMOTE_TIMEOUT = "PROMOTE_TIMEOUT"

    def __init__(self, message, reason=None, detail=None, hint=None):
        super().__init__(message, detail, hint)
        self.reason = reason


class FollowFailError(ClusterManagerError):
    exit_code = ExitCode.FOLLOW_FAIL


class SwitchoverFailError(ClusterManagerError):
    exit_code = ExitCode.SWITCHOVER_FAIL


class SwitchoverIncompleteError(ClusterManagerError):
    exit_code = ExitCode.SWITCHOVER_INCOMPLETE


class RepmgrdPauseError(ClusterManagerError):
    exit_code = ExitCode.REPMGRD_PAUSE


class RepmgrdServiceError(ClusterManagerError):
    exit_code = ExitCode.REPMGRD_SERVICE


class BaseBackupError(ClusterManagerError):
    exit_code = ExitCode.BAD_BASEBACKUP


class CommandResultError(ClusterManagerError):
    """Raised by read-only commands which completed but detected problems."""

    def __init__(self, message, exit_code, warnings=None):
        super().__init__(message)
        self.exit_code = exit_code
        self.warnings = warnings or []
