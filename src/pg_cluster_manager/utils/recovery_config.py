import logging
import os

from pg_cluster_manager.utils import shell

STANDBY_SIGNAL_FILE = "standby.signal"
RECOVERY_SIGNAL_FILE = "recovery.signal"
RECOVERY_CONF_FILE = "recovery.conf"
RECOVERY_DONE_FILE = "recovery.done"
AUTO_CONF_FILE = "postgresql.auto.conf"
PG_VERSION_FILE = "PG_VERSION"

# first major version without recovery.conf
SIGNAL_FILES_VERSION = 12

MANAGED_PARAMETERS = ("primary_conninfo", "primary_slot_name", "recovery_target_timeline")


def get_pg_major_version(data_directory):
    """Reads PG_VERSION of the data directory, returns the major version as an integer or None."""
    try:
        with open(os.path.join(data_directory, PG_VERSION_FILE), encoding="utf-8") as f:
            raw = f.read().strip()
    except OSError:
        return None
    try:
        return int(raw.split(".")[0])
    except ValueError:
        return None


def make_primary_conninfo(upstream_record, application_name, replication_user=None):
    """Connection string a standby uses to stream from the upstream."""
    fields = shell.parse_postgre_sql_connection_string(upstream_record.conninfo)
    fields.pop("dbname", None)
    user = replication_user or upstream_record.repluser
    if user:
        fields["user"] = user
    fields["application_name"] = application_name
    return shell.make_postgre_sql_connection_string(fields)


def quote_setting(value):
    return "'" + str(value).replace("'", "''") + "'"


def make_recovery_settings(primary_conninfo, slot_name=None):
    settings = [("primary_conninfo", primary_conninfo)]
    if slot_name:
        settings.append(("primary_slot_name", slot_name))
    settings.append(("recovery_target_timeline", "latest"))
    return settings


def write_recovery_config(data_directory, upstream_record, node_name, slot_name=None, replication_user=None,
                          dry_run=False):
    """Configures the data directory to stream from the upstream. Returns the list of files written."""
    logger = logging.getLogger("logger")
    primary_conninfo = make_primary_conninfo(upstream_record, node_name, replication_user)
    settings = make_recovery_settings(primary_conninfo, slot_name)
    version = get_pg_major_version(data_directory)

    if version is not None and version < SIGNAL_FILES_VERSION:
        target = os.path.join(data_directory, RECOVERY_CONF_FILE)
        lines = ["standby_mode = 'on'"] + [f"{k} = {quote_setting(v)}" for k, v in settings]
        if dry_run:
            logger.info(f"Would write \"{target}\".")
            return [target]
        _write_file(target, lines)
        logger.info(f"Recovery configuration written to \"{target}\".")
        return [target]

    auto_conf = os.path.join(data_directory, AUTO_CONF_FILE)
    signal = os.path.join(data_directory, STANDBY_SIGNAL_FILE)
    if dry_run:
        logger.info(f"Would update \"{auto_conf}\" and create \"{signal}\".")
        return [auto_conf, signal]

    existing = []
    if os.path.exists(auto_conf):
        with open(auto_conf, encoding="utf-8") as f:
            existing = [line.rstrip("\n") for line in f]
    kept = [line for line in existing if line.split("=", 1)[0].strip() not in MANAGED_PARAMETERS]
    _write_file(auto_conf, kept + [f"{k} = {quote_setting(v)}" for k, v in settings])
    _write_file(signal, [])
    logger.info(f"Replication configuration written to \"{auto_conf}\".")
    return [auto_conf, signal]


def _write_file(path, lines):
    with open(path, "w", encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")
    os.chmod(path, 0o600)
