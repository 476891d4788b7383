import enum
import logging

from pg_cluster_manager.utils import shell

UNKNOWN_SYSTEM_IDENTIFIER = 0
INVALID_LSN = "0/0"


class DBState(enum.Enum):
    """Database cluster state as printed by pg_controldata."""
    STARTUP = "starting up"
    SHUTDOWNED = "shut down"
    SHUTDOWNED_IN_RECOVERY = "shut down in recovery"
    SHUTDOWNING = "shutting down"
    IN_CRASH_RECOVERY = "in crash recovery"
    IN_ARCHIVE_RECOVERY = "in archive recovery"
    IN_PRODUCTION = "in production"
    UNKNOWN = "unrecognized status code"

    @classmethod
    def parse(cls, value):
        for state in cls:
            if state.value == (value or "").strip():
                return state
        return cls.UNKNOWN

    @property
    def is_clean_shutdown(self):
        return self in (DBState.SHUTDOWNED, DBState.SHUTDOWNED_IN_RECOVERY)

    def __str__(self):
        return self.value


class PingStatus(enum.Enum):
    """Exit status of pg_isready."""
    OK = 0
    REJECT = 1
    NO_RESPONSE = 2
    NO_ATTEMPT = 3
    UNKNOWN = -1

    @classmethod
    def from_returncode(cls, returncode):
        for status in cls:
            if status.value == returncode:
                return status
        return cls.UNKNOWN


class ServerStatus(enum.Enum):
    RUNNING = "RUNNING"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    SHUTDOWN = "SHUTDOWN"
    UNCLEAN_SHUTDOWN = "UNCLEAN_SHUTDOWN"
    UNKNOWN = "UNKNOWN"

    def __str__(self):
        return self.value


class ControlFileSnapshot:
    """Fields of the control file of a data directory."""

    def __init__(self, data=None):
        data = data or {}
        self.processed = bool(data)
        self.system_identifier = _parse_int(data.get("Database system identifier"), UNKNOWN_SYSTEM_IDENTIFIER)
        self.state = DBState.parse(data.get("Database cluster state")) if data else DBState.UNKNOWN
        self.checkpoint_lsn = data.get("Latest checkpoint location", INVALID_LSN)
        self.timeline_id = _parse_int(data.get("Latest checkpoint's TimeLineID"), 0)
        self.min_recovery_end_lsn = data.get("Minimum recovery ending location", INVALID_LSN)
        self.min_recovery_end_timeline = _parse_int(data.get("Min recovery ending loc's timeline"), 0)
        self.wal_segment_size = _parse_int(data.get("Bytes per WAL segment"), 0)
        self.data_checksum_version = _parse_int(data.get("Data page checksum version"), -1)

    def __str__(self):
        return f"system_identifier={self.system_identifier} state={self.state} " \
               f"checkpoint_lsn={self.checkpoint_lsn} timeline_id={self.timeline_id}"

    def __repr__(self):
        return self.__str__()


def _parse_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_controldata_output(output):
    """Parses "key: value" lines of pg_controldata output into a dictionary."""
    data = {}
    for line in output.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        data[key.strip()] = value.strip()
    return data


def read_control_file(data_directory, pg_bindir=""):
    """Runs pg_controldata on the local data directory, returns ControlFileSnapshot."""
    logger = logging.getLogger("logger")
    cmd = f"{shell.make_pg_path(pg_bindir, 'pg_controldata')} -D {shell.quote(data_directory)}"
    result = shell.execute_cmd(cmd, env={"LANG": "C", "LC_ALL": "C"})
    if not result.success:
        logger.debug(f"Unable to read control file of \"{data_directory}\": {result.error_output.strip()}")
        return ControlFileSnapshot()
    return ControlFileSnapshot(parse_controldata_output(result.output))


def ping(conninfo, pg_bindir="", timeout=None):
    """Checks the connection status of a server with pg_isready."""
    cmd = f"{shell.make_pg_path(pg_bindir, 'pg_isready')} -q -d {shell.quote(conninfo)}"
    if timeout:
        cmd += f" -t {int(timeout)}"
    return PingStatus.from_returncode(shell.execute_cmd(cmd).returncode)


def get_server_status(conninfo, data_directory, pg_bindir=""):
    """Returns (ServerStatus, ControlFileSnapshot) for the local server."""
    logger = logging.getLogger("logger")
    ping_status = ping(conninfo, pg_bindir)
    control = None

    if ping_status == PingStatus.OK:
        return ServerStatus.RUNNING, control
    if ping_status == PingStatus.REJECT:
        return ServerStatus.SHUTTING_DOWN, control

    control = read_control_file(data_directory, pg_bindir)
    if not control.processed:
        logger.warning(f"Unable to read the control file of \"{data_directory}\".")
        return ServerStatus.UNKNOWN, control
    if control.state == DBState.SHUTDOWNING:
        return ServerStatus.SHUTTING_DOWN, control
    if not control.state.is_clean_shutdown:
        return ServerStatus.UNCLEAN_SHUTDOWN, control
    if control.checkpoint_lsn == INVALID_LSN:
        return ServerStatus.UNKNOWN, control
    return ServerStatus.SHUTDOWN, control


def format_shutdown_status(status, checkpoint_lsn=None):
    """Renders the output of "node status --is-shutdown-cleanly"."""
    if status == ServerStatus.SHUTDOWN:
        return f"--state={status} --last-checkpoint-lsn={checkpoint_lsn}"
    return f"--state={status}"


def parse_shutdown_status(output):
    """Parses "--state=... [--last-checkpoint-lsn=...]"; returns (ServerStatus, checkpoint_lsn or None)."""
    status = ServerStatus.UNKNOWN
    checkpoint_lsn = None
    for token in (output or "").split():
        if token.startswith("--state="):
            value = token[len("--state="):]
            status = next((s for s in ServerStatus if s.value == value), ServerStatus.UNKNOWN)
        elif token.startswith("--last-checkpoint-lsn="):
            checkpoint_lsn = token[len("--last-checkpoint-lsn="):]
    if status == ServerStatus.SHUTDOWN and not checkpoint_lsn:
        status = ServerStatus.UNKNOWN
    return status, checkpoint_lsn
