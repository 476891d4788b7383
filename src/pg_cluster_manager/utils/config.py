import configparser
import logging
import os

from pg_cluster_manager.utils import shell
from pg_cluster_manager.utils.errors import BadConfigError

CONFIG_FILE_NAME = "config.ini"
MAIN_SECTION = "main"
UNKNOWN_NODE_ID = -1
MIN_NODE_ID = 1

DEFAULT_CONFIG_FILES = "postgresql.conf,postgresql.auto.conf,pg_hba.conf,pg_ident.conf"
DEFAULT_PG_REWIND_COMMAND = "pg_rewind -D %pg_data_path% --source-server='%primary_connstr%'"

DEFAULTS = {
    "node_id": str(UNKNOWN_NODE_ID),
    "node_name": "",
    "conninfo": "",
    "replication_user": "",
    "data_directory": "",
    "location": "default",
    "priority": "100",
    "use_replication_slots": "false",
    "pg_bindir": "",
    "manager_bindir": "",
    "pg_ctl_options": "",
    "service_start_command": "",
    "service_stop_command": "",
    "service_restart_command": "",
    "service_reload_command": "",
    "service_promote_command": "",
    "pg_rewind_command": DEFAULT_PG_REWIND_COMMAND,
    "pg_basebackup_options": "",
    "ssh_options": "",
    "event_notification_command": "",
    "event_notifications": "",
    "log_level": "INFO",
    "log_file": "",
    "promote_check_timeout": "60",
    "promote_check_interval": "1",
    "primary_follow_timeout": "60",
    "standby_follow_timeout": "30",
    "shutdown_check_timeout": "60",
    "wal_receive_check_timeout": "30",
    "node_rejoin_timeout": "60",
    "switchover_lag_threshold": "16777216",
    "switchover_lag_timeout": "60",
    "archive_ready_warning": "16",
    "archive_ready_critical": "128",
    "replication_lag_warning": "300",
    "replication_lag_critical": "600",
    "config_files": DEFAULT_CONFIG_FILES,
    "config_archive_dir": "/tmp",
    "connect_timeout": "5",
}

INT_SETTINGS = {
    # name: minimal value
    "node_id": UNKNOWN_NODE_ID,
    "priority": 0,
    "promote_check_timeout": 1,
    "promote_check_interval": 1,
    "primary_follow_timeout": 0,
    "standby_follow_timeout": 0,
    "shutdown_check_timeout": 0,
    "wal_receive_check_timeout": 0,
    "node_rejoin_timeout": 0,
    "switchover_lag_threshold": 0,
    "switchover_lag_timeout": 0,
    "archive_ready_warning": 1,
    "archive_ready_critical": 1,
    "replication_lag_warning": 1,
    "replication_lag_critical": 1,
    "connect_timeout": 1,
}


class NodeConfig:
    """Settings of the local node read from the [main] section of config.ini."""

    def __init__(self, settings=None, config_file=None):
        self.config_file = config_file or ""
        values = dict(DEFAULTS)
        if settings:
            values.update({k: str(v) for k, v in settings.items()})

        errors = []
        for name, min_value in INT_SETTINGS.items():
            raw = values[name]
            try:
                value = int(raw)
            except ValueError:
                errors.append(f"\"{name}\": invalid value \"{raw}\"; must be an integer")
                value = int(DEFAULTS[name])
            if value < min_value:
                errors.append(f"\"{name}\": must be {min_value} or greater (provided: {value})")
            setattr(self, name, value)

        for name, raw in values.items():
            if name in INT_SETTINGS:
                continue
            if name == "use_replication_slots":
                self.use_replication_slots = parse_bool(raw, name, errors)
                continue
            setattr(self, name, raw.strip())

        if self.archive_ready_warning >= self.archive_ready_critical:
            errors.append("\"archive_ready_critical\" must be greater than \"archive_ready_warning\"")
        if self.replication_lag_warning >= self.replication_lag_critical:
            errors.append("\"replication_lag_critical\" must be greater than \"replication_lag_warning\"")

        if self.conninfo:
            try:
                shell.parse_postgre_sql_connection_string(self.conninfo)
            except ValueError as ex:
                errors.append(f"\"conninfo\": {ex}")

        if errors:
            raise BadConfigError("configuration file has errors", detail="; ".join(errors), errors=errors)

        if not self.replication_user and self.conninfo:
            self.replication_user = shell.get_conninfo_value(self.conninfo, "user", "")

    @property
    def has_node_identity(self):
        return self.node_id >= MIN_NODE_ID and bool(self.node_name) and bool(self.conninfo)

    def require_node_identity(self):
        missing = [name for name, ok in (("node_id", self.node_id >= MIN_NODE_ID),
                                          ("node_name", bool(self.node_name)),
                                          ("conninfo", bool(self.conninfo))) if not ok]
        if missing:
            raise BadConfigError(f"required configuration parameter(s) missing: {', '.join(missing)}",
                                 hint="provide a configuration file with -f/--config-file")

    def require_data_directory(self):
        if not self.data_directory:
            raise BadConfigError("\"data_directory\" is not set",
                                 hint="set \"data_directory\" in the configuration file or provide -D/--pgdata")

    @property
    def config_file_list(self):
        return [f.strip() for f in self.config_files.split(",") if f.strip()]

    def make_slot_name(self, node_id=None):
        return f"repmgr_slot_{self.node_id if node_id is None else node_id}"


def parse_bool(raw, name, errors):
    value = raw.strip().lower()
    if value in ("1", "true", "on", "yes"):
        return True
    if value in ("0", "false", "off", "no", ""):
        return False
    errors.append(f"\"{name}\": invalid boolean value \"{raw}\"")
    return False


def load_config_ini(config_file_path=None, overrides=None):
    """Read settings from config.ini and returns NodeConfig."""
    logger = logging.getLogger("logger")
    settings = {}

    if config_file_path is None and os.path.exists(CONFIG_FILE_NAME):
        config_file_path = CONFIG_FILE_NAME

    if config_file_path is not None:
        if not os.path.isfile(config_file_path):
            raise BadConfigError(f"configuration file \"{config_file_path}\" not found")

        config = configparser.ConfigParser(interpolation=None)
        try:
            with open(config_file_path, encoding="utf-8") as f:
                config.read_file(f)
        except (OSError, configparser.Error) as ex:
            raise BadConfigError(f"unable to read configuration file \"{config_file_path}\"", detail=str(ex))

        if not config.has_section(MAIN_SECTION):
            raise BadConfigError(f"configuration file \"{config_file_path}\" has no [{MAIN_SECTION}] section")

        unknown = [k for k in config[MAIN_SECTION] if k not in DEFAULTS]
        for key in unknown:
            logger.warning(f"Unknown configuration parameter \"{key}\" in {config_file_path}.")
        settings = {k: v for k, v in config[MAIN_SECTION].items() if k in DEFAULTS}
        config_file_path = os.path.abspath(config_file_path)

    if overrides:
        settings.update({k: v for k, v in overrides.items() if v is not None})

    return NodeConfig(settings, config_file_path)


class RuntimeOptions:
    """Options given on the command line for a single invocation."""

    def __init__(self, **kwargs):
        self.dbname = None
        self.host = None
        self.port = None
        self.username = None
        self.superuser = None
        self.remote_user = ""
        self.data_dir = None
        self.node_id = UNKNOWN_NODE_ID
        self.dry_run = False
        self.force = False
        self.terse = False
        self.verbose = False
        self.log_level = None
        self.log_to_file = False
        for key, value in kwargs.items():
            setattr(self, key, value)

    def source_conninfo(self):
        """Connection string assembled from -d/-h/-p/-U, or None if none of them was given."""
        if self.dbname and "=" in self.dbname or (self.dbname or "").startswith(("postgres://", "postgresql://")):
            fields = shell.parse_postgre_sql_connection_string(self.dbname)
        else:
            fields = {}
            if self.dbname:
                fields["dbname"] = self.dbname
        for key, value in (("host", self.host), ("port", self.port), ("user", self.username)):
            if value:
                fields[key] = value
        if not fields:
            return None
        return shell.make_postgre_sql_connection_string(fields)
