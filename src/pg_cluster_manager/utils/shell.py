import logging
import os
import shlex
import subprocess
from urllib.parse import urlparse, parse_qs

# exit status of a command which was cut short by a closed pipe
SIGPIPE_EXIT_STATUS = 141


class CommandResult:
    """Exit status and captured output of an external command."""

    def __init__(self, returncode, output='', error_output=''):
        self.returncode = returncode
        self.output = output or ''
        self.error_output = error_output or ''

    @property
    def success(self):
        return self.returncode in (0, SIGPIPE_EXIT_STATUS)

    def __repr__(self):
        return f"CommandResult(returncode={self.returncode}, output={self.output!r})"


def execute_cmd(cmd, env=None):
    """Executes and logs external command, returns the result of execution."""
    logger = logging.getLogger("logger")
    logger.debug(f"Execution cmd: {cmd}")
    run_env = None
    if env:
        run_env = os.environ.copy()
        run_env.update(env)
    try:
        completed = subprocess.run(cmd, shell=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                   universal_newlines=True, env=run_env)
    except OSError as ex:
        logger.error(f"Unable to execute local command {cmd}: {ex}")
        return CommandResult(127, '', str(ex))

    result = CommandResult(completed.returncode, completed.stdout, completed.stderr)
    logger.debug(f"Result: {result.returncode} {result.output.strip()}")
    if result.error_output.strip():
        logger.debug(f"Stderr: {result.error_output.strip()}")
    return result


def make_pg_path(pg_bindir, program):
    """Prefixes a PostgreSQL client program with the configured binary directory."""
    if not pg_bindir:
        return program
    return os.path.join(pg_bindir, program)


def quote(value):
    return shlex.quote(str(value))


def parse_postgre_sql_connection_string(connection_string):
    """Parse PostgreSQL connection string for the given format - string or url."""
    if isinstance(connection_string, dict):
        return connection_string.copy()
    if connection_string.startswith("postgres://") or connection_string.startswith("postgresql://"):
        return parse_postgre_sql_connection_string_as_url(connection_string)
    return parse_postgre_sql_connection_string_as_string(connection_string)


def parse_postgre_sql_connection_string_as_url(url):
    """Parse a PostgreSQL connection string as URL to a dictionary in accordance
    with http://www.postgresql.org/docs/current/static/libpq-connect.html#LIBPQ-CONNSTRING"""
    schemaless_url = url.split(":", 1)[1]
    p = urlparse(schemaless_url)
    fields = {}
    if p.hostname:
        fields["host"] = p.hostname
    if p.port:
        fields["port"] = str(p.port)
    if p.username:
        fields["user"] = p.username
    if p.password is not None:
        fields["password"] = p.password
    if p.path and p.path != "/":
        fields["dbname"] = p.path[1:]
    for k, v in parse_qs(p.query).items():
        fields[k] = v[-1]
    return fields


def parse_postgre_sql_connection_string_as_string(connection_string):
    """Parse a PostgreSQL connection string to a dictionary in accordance with
    http://www.postgresql.org/docs/current/static/libpq-connect.html#LIBPQ-CONNSTRING"""
    fields = {}
    while True:
        connection_string = connection_string.strip()
        if not connection_string:
            break
        if "=" not in connection_string:
            raise ValueError("Expect key=value format in connection string fragment {!r}".format(connection_string))
        key, rem = connection_string.split("=", 1)
        key = key.strip()
        rem = rem.lstrip()
        if rem.startswith("'"):
            as_is, value = False, ""
            for i in range(1, len(rem)):
                if as_is:
                    value += rem[i]
                    as_is = False
                elif rem[i] == "'":
                    break
                elif rem[i] == "\\":
                    as_is = True
                else:
                    value += rem[i]
            else:
                raise ValueError("Invalid connection string fragment {!r}".format(rem))
            connection_string = rem[i + 1:]
        else:
            res = rem.split(None, 1)
            if len(res) > 1:
                value, connection_string = res
            else:
                value, connection_string = rem, ""
        fields[key] = value
    return fields


def make_postgre_sql_connection_string(fields):
    """Builds a key=value connection string from a dictionary, quoting values where needed."""
    parts = []
    for key, value in fields.items():
        value = str(value)
        if value == "" or any(c in value for c in " '\\"):
            value = "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"
        parts.append(f"{key}={value}")
    return " ".join(parts)


def get_conninfo_value(connection_string, key, default=None):
    try:
        return parse_postgre_sql_connection_string(connection_string).get(key, default)
    except ValueError:
        return default
