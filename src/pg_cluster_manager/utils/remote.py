import logging
import os
import subprocess
import tempfile

from pg_cluster_manager.utils import shell

PROGRAM_NAME = "pg-cluster-manager"
TRUE_BINARY_PATHS = ("/bin/true", "/usr/bin/true")


def get_tmpdir():
    return os.environ.get("TMPDIR") or "/tmp"


class RemoteExecutor:
    """Runs commands on peer hosts with ssh in batch mode."""

    def __init__(self, ssh_options="", remote_user="", manager_bindir="", pg_bindir=""):
        self.logger = logging.getLogger("logger")
        self.ssh_options = ssh_options or ""
        self.remote_user = remote_user or ""
        self.manager_bindir = manager_bindir or ""
        self.pg_bindir = pg_bindir or ""

    @classmethod
    def from_config(cls, config, remote_user=""):
        return cls(config.ssh_options, remote_user, config.manager_bindir, config.pg_bindir)

    def make_ssh_command(self, host, command):
        ssh_host = f"{self.remote_user}@{host}" if self.remote_user else host
        options = f" {self.ssh_options}" if self.ssh_options else ""
        return f"ssh -o Batchmode=yes{options} {ssh_host} {command}"

    def remote_command(self, host, command):
        """Executes a command on the host.
        stdout is returned in result.output, stderr (captured through a temporary file in TMPDIR)
        in result.error_output; result.buffer holds both, stdout first."""
        ssh_command = self.make_ssh_command(host, command)
        self.logger.debug(f"remote_command(): {ssh_command}")

        with tempfile.TemporaryFile(mode="w+", dir=get_tmpdir(), prefix="pg-cluster-manager-") as stderr_file:
            try:
                completed = subprocess.run(ssh_command, shell=True, stdout=subprocess.PIPE, stderr=stderr_file,
                                           universal_newlines=True)
            except OSError as ex:
                self.logger.error(f"Unable to execute remote command {ssh_command}: {ex}")
                return RemoteResult(127, "", str(ex))
            stderr_file.seek(0)
            error_output = stderr_file.read()

        result = RemoteResult(completed.returncode, completed.stdout, error_output)
        self.logger.debug(f"remote_command(): returned {result.returncode}, output was: {result.buffer.strip()}")
        return result

    def test_ssh_connection(self, host):
        """Returns True if a trivial command can be executed on the host."""
        for true_path in TRUE_BINARY_PATHS:
            result = shell.execute_cmd(self.make_ssh_command(host, true_path))
            if result.returncode == 0:
                return True
        self.logger.warning(f"Unable to connect to remote host \"{host}\" via SSH.")
        return False

    def make_remote_invocation(self, arguments, config_file=None, conninfo=None, node_id=None,
                               log_level="ERROR", terse=True):
        """Builds a self-invocation of this program to be run on a peer.
        Either a configuration file path (from the peer's node record) or a connection string is passed."""
        program = shell.make_pg_path(self.manager_bindir, PROGRAM_NAME)
        parts = [program]
        if config_file:
            parts.append(f"-f {shell.quote(config_file)}")
        if conninfo:
            parts.append(f"-d {shell.quote(conninfo)}")
        if node_id is not None:
            parts.append(f"--node-id={int(node_id)}")
        if self.pg_bindir:
            parts.append(f"-b {shell.quote(self.pg_bindir)}")
        if log_level:
            parts.append(f"--log-level={log_level}")
        if terse:
            parts.append("--terse")
        parts.append(arguments)
        return shell.quote(" ".join(parts))


class RemoteResult(shell.CommandResult):
    @property
    def buffer(self):
        return self.output + self.error_output

    @property
    def inaccessible(self):
        """No output at all means ssh could not run the command."""
        return not self.output.strip()
