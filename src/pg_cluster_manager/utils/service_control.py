import enum
import logging

from pg_cluster_manager.utils import shell
from pg_cluster_manager.utils.errors import BadConfigError, LocalCommandError


class ServerAction(enum.Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    RELOAD = "reload"
    PROMOTE = "promote"

    @classmethod
    def parse(cls, value):
        for action in cls:
            if action.value == (value or "").strip().lower():
                return action
        raise BadConfigError(f"unknown server action \"{value}\"",
                             hint=f"valid actions are: {', '.join(a.value for a in cls)}")

    def __str__(self):
        return self.value


class ServiceController:
    """Runs the configured service command (or pg_ctl) for the local PostgreSQL server."""

    PG_CTL_ARGS = {
        ServerAction.START: "-w -D {data_dir} start",
        ServerAction.STOP: "-D {data_dir} -m fast -W stop",
        ServerAction.RESTART: "-w -D {data_dir} -m fast restart",
        ServerAction.RELOAD: "-w -D {data_dir} reload",
        ServerAction.PROMOTE: "-w -D {data_dir} promote",
    }

    def __init__(self, config, data_dir=None, dry_run=False):
        self.logger = logging.getLogger("logger")
        self.config = config
        self.data_dir = data_dir or config.data_directory
        self.dry_run = dry_run

    def service_command(self, action):
        return getattr(self.config, f"service_{action.value}_command")

    def data_dir_required_for_action(self, action):
        return not self.service_command(action)

    def get_server_action(self, action):
        """Returns the shell command which performs the action."""
        command = self.service_command(action)
        if command:
            return command

        data_dir = self.data_dir or "(none provided)"
        pg_ctl = shell.make_pg_path(self.config.pg_bindir, "pg_ctl")
        options = f" {self.config.pg_ctl_options}" if self.config.pg_ctl_options else ""
        return f"{pg_ctl}{options} " + self.PG_CTL_ARGS[action].format(data_dir=shell.quote(data_dir))

    def list_actions(self):
        """Returns (action, command) pairs for every action."""
        return [(action, self.get_server_action(action)) for action in ServerAction]

    def has_override(self, action):
        return bool(self.service_command(action))

    def run(self, action):
        """Executes the action; raises LocalCommandError when the command fails."""
        if self.data_dir_required_for_action(action) and not self.data_dir:
            raise BadConfigError(f"a data directory is required to {action} the server",
                                 hint="set \"data_directory\" in the configuration file or provide -D/--pgdata")

        command = self.get_server_action(action)
        if self.dry_run:
            self.logger.info(f"Would execute server command \"{command}\".")
            return shell.CommandResult(0)

        self.logger.info(f"Executing server command \"{command}\".")
        result = shell.execute_cmd(command)
        if not result.success:
            raise LocalCommandError(f"unable to {action} the server",
                                    detail=(result.error_output or result.output).strip() or
                                    f"\"{command}\" returned {result.returncode}")
        return result
