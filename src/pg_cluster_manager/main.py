import sys

import click

from pg_cluster_manager.cluster import cluster_commands, crosscheck
from pg_cluster_manager.cluster import matrix as mx
from pg_cluster_manager.orchestrator.clone import CloneHandler
from pg_cluster_manager.orchestrator.follow import FollowHandler
from pg_cluster_manager.orchestrator.handler import Handler
from pg_cluster_manager.orchestrator.node_commands import NodeCheck, NodeCheckHandler, NodeServiceHandler, \
    NodeStatusHandler, OUTPUT_CSV, OUTPUT_NAGIOS, OUTPUT_OPTFORMAT, OUTPUT_TEXT
from pg_cluster_manager.orchestrator.promote import PromoteHandler
from pg_cluster_manager.orchestrator.register import RegisterHandler
from pg_cluster_manager.orchestrator.rejoin import RejoinHandler
from pg_cluster_manager.orchestrator.repmgrd import RepmgrdHandler
from pg_cluster_manager.orchestrator.switchover import SwitchoverHandler
from pg_cluster_manager.utils import logger
from pg_cluster_manager.utils.config import UNKNOWN_NODE_ID, RuntimeOptions, load_config_ini
from pg_cluster_manager.utils.errors import BadConfigError, ClusterManagerError, CommandResultError, ExitCode

CONTEXT_SETTINGS = {"help_option_names": ["--help"]}


class AppContext:
    """Configuration and command line options shared by all commands of one invocation."""

    def __init__(self, config, options):
        self.config = config
        self.options = options

    def handler(self, cls=Handler, **kwargs):
        return cls(self.config, self.options, **kwargs)


def echo_lines(lines):
    for line in lines:
        click.echo(line)


def check_result(message, exit_code, warnings=None):
    if exit_code != ExitCode.SUCCESS:
        raise CommandResultError(message, exit_code, warnings)


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option("-f", "--config-file", help="Path to the configuration file")
@click.option("-d", "--dbname", help="Database name or connection string")
@click.option("-h", "--host", help="Database server host")
@click.option("-p", "--port", help="Database server port")
@click.option("-U", "--username", help="Database user name")
@click.option("-S", "--superuser", help="Superuser to use, if the configured user is not a superuser")
@click.option("-R", "--remote-user", default="", help="System user for SSH operations")
@click.option("-D", "--pgdata", help="Location of the node's data directory")
@click.option("-b", "--pg-bindir", help="Directory containing the PostgreSQL client programs")
@click.option("--node-id", type=int, default=UNKNOWN_NODE_ID, help="ID of a node")
@click.option("--dry-run", is_flag=True, help="Show what would happen without executing it")
@click.option("-F", "--force", is_flag=True, help="Force potentially dangerous operations")
@click.option("-v", "--verbose", is_flag=True, help="Display additional log output")
@click.option("-t", "--terse", is_flag=True, help="Don't display hints and other non-critical output")
@click.option("-L", "--log-level", help="Log level (DEBUG, INFO, NOTICE, WARNING, ERROR, CRITICAL)")
@click.option("--log-to-file", is_flag=True, help="Log to the file configured with \"log_file\"")
@click.pass_context
def cli(ctx, config_file, dbname, host, port, username, superuser, remote_user, pgdata, pg_bindir, node_id, dry_run,
        force, verbose, terse, log_level, log_to_file):
    """PostgreSQL replication cluster manager."""
    if log_level and logger.parse_log_level(log_level) is None:
        raise BadConfigError(f"unknown log level \"{log_level}\"",
                             hint=f"valid levels are: {', '.join(logger.LOG_LEVELS)}")
    options = RuntimeOptions(dbname=dbname, host=host, port=port, username=username, superuser=superuser,
                             remote_user=remote_user, data_dir=pgdata, node_id=node_id, dry_run=dry_run,
                             force=force, terse=terse, verbose=verbose, log_level=log_level,
                             log_to_file=log_to_file)
    config = load_config_ini(config_file, {"pg_bindir": pg_bindir, "data_directory": pgdata})
    logger.init_logging(log_level or config.log_level, config.log_file, log_to_file, terse, verbose)
    ctx.obj = AppContext(config, options)


@cli.group()
def primary():
    """Register and unregister the primary node."""


@primary.command("register")
@click.pass_obj
def primary_register(app):
    app.handler(RegisterHandler).primary_register()


@primary.command("unregister")
@click.pass_obj
def primary_unregister(app):
    app.handler(RegisterHandler).primary_unregister()


@cli.group()
def standby():
    """Clone, register, promote and switch over standby nodes."""


@standby.command("register")
@click.option("--upstream-node-id", type=int, help="ID of the upstream node, the primary by default")
@click.option("--wait-sync", type=int, help="Wait up to N seconds for the node record to be replicated")
@click.pass_obj
def standby_register(app, upstream_node_id, wait_sync):
    app.handler(RegisterHandler).standby_register(upstream_node_id, wait_sync)


@standby.command("unregister")
@click.pass_obj
def standby_unregister(app):
    app.handler(RegisterHandler).standby_unregister()


@standby.command("clone")
@click.option("--upstream-node-id", type=int, help="ID of the node the standby will follow")
@click.option("--upstream-conninfo", help="Connection string written to the replication configuration")
@click.option("-c", "--fast-checkpoint", is_flag=True, help="Request a fast checkpoint on the source")
@click.pass_obj
def standby_clone(app, upstream_node_id, upstream_conninfo, fast_checkpoint):
    app.handler(CloneHandler, upstream_node_id=upstream_node_id, upstream_conninfo=upstream_conninfo,
                fast_checkpoint=fast_checkpoint).run()


@standby.command("promote")
@click.pass_obj
def standby_promote(app):
    app.handler(PromoteHandler).run()


@standby.command("follow")
@click.option("--upstream-node-id", type=int, help="ID of the node to follow, the primary by default")
@click.pass_obj
def standby_follow(app, upstream_node_id):
    app.handler(FollowHandler, upstream_node_id=upstream_node_id).run()


@standby.command("switchover")
@click.option("--siblings-follow", is_flag=True, help="Attach the other standbys of the primary to this node")
@click.option("--force-rewind", is_flag=True, help="Use pg_rewind when rejoining the demoted primary")
@click.option("--repmgrd-no-pause", is_flag=True, help="Don't pause repmgrd during the switchover")
@click.pass_obj
def standby_switchover(app, siblings_follow, force_rewind, repmgrd_no_pause):
    app.handler(SwitchoverHandler, siblings_follow=siblings_follow, force_rewind=force_rewind,
                repmgrd_no_pause=repmgrd_no_pause).run()


@cli.group()
def witness():
    """Register and unregister a witness node."""


@witness.command("register")
@click.pass_obj
def witness_register(app):
    app.handler(RegisterHandler).witness_register()


@witness.command("unregister")
@click.pass_obj
def witness_unregister(app):
    app.handler(RegisterHandler).witness_unregister()


@cli.group()
def node():
    """Status, checks and service control of the local node."""


@node.command("status")
@click.option("--csv", "csv_output", is_flag=True, help="Output in CSV format")
@click.option("--is-shutdown-cleanly", is_flag=True, help="Print the shutdown state of the local server")
@click.pass_obj
def node_status(app, csv_output, is_shutdown_cleanly):
    handler = app.handler(NodeStatusHandler)
    if is_shutdown_cleanly:
        click.echo(handler.is_shutdown_cleanly())
        return
    lines, warnings = handler.run(csv_output)
    echo_lines(lines)
    check_result("following issue(s) were detected",
                 ExitCode.NODE_STATUS if warnings else ExitCode.SUCCESS, warnings)


CHECK_HELP = {
    NodeCheck.ROLE: "Check the node role",
    NodeCheck.REPLICATION_LAG: "Check the replication lag",
    NodeCheck.ARCHIVE_READY: "Check WAL files pending archiving",
    NodeCheck.DOWNSTREAM: "Check that downstream nodes are attached",
    NodeCheck.SLOTS: "Check for inactive slots",
    NodeCheck.MISSING_SLOTS: "Check for missing slots of downstream nodes",
    NodeCheck.DATA_DIRECTORY_CONFIG: "Check the configured data directory",
}


def check_options(func):
    for check in reversed(NodeCheck):
        func = click.option(f"--{check.value}", f"check_{check.name.lower()}", is_flag=True,
                            help=CHECK_HELP[check])(func)
    return func


def output_mode_of(csv_output, nagios, optformat):
    if sum((csv_output, nagios, optformat)) > 1:
        raise BadConfigError("only one of --csv, --nagios and --optformat can be given")
    if nagios:
        return OUTPUT_NAGIOS
    if optformat:
        return OUTPUT_OPTFORMAT
    return OUTPUT_CSV if csv_output else OUTPUT_TEXT


@node.command("check")
@check_options
@click.option("--csv", "csv_output", is_flag=True, help="Output in CSV format")
@click.option("--nagios", is_flag=True, help="Output in Nagios format")
@click.option("--optformat", is_flag=True, help="Output as --key=value pairs")
@click.pass_obj
def node_check(app, csv_output, nagios, optformat, **selected):
    output_mode = output_mode_of(csv_output, nagios, optformat)
    checks = [check for check in NodeCheck if selected[f"check_{check.name.lower()}"]]
    handler = app.handler(NodeCheckHandler)
    results, lines = handler.run(checks, output_mode)
    echo_lines(lines)
    check_result("node check detected problems", handler.exit_code(results, output_mode))


@node.command("rejoin")
@click.option("--force-rewind", is_flag=True, help="Execute pg_rewind before attaching the node")
@click.option("--config-files", help="Comma separated list of configuration files to preserve during pg_rewind")
@click.option("--config-archive-dir", help="Directory for the configuration files archived during pg_rewind")
@click.pass_obj
def node_rejoin(app, force_rewind, config_files, config_archive_dir):
    files = [f.strip() for f in config_files.split(",") if f.strip()] if config_files else None
    app.handler(RejoinHandler, force_rewind=force_rewind, config_files=files,
                config_archive_dir=config_archive_dir).run()


@node.command("service")
@click.option("--action", help="Action to perform: start, stop, restart, reload or promote")
@click.option("--list-actions", is_flag=True, help="Show the command executed for each action")
@click.option("--checkpoint", is_flag=True, help="Execute CHECKPOINT before stopping or restarting")
@click.pass_obj
def node_service(app, action, list_actions, checkpoint):
    handler = app.handler(NodeServiceHandler)
    if list_actions:
        echo_lines(handler.list_actions())
        return
    if not action:
        raise BadConfigError("one of --action or --list-actions is required")
    handler.run(action, checkpoint)


@cli.group()
def cluster():
    """Views of the whole cluster and of its event history."""


def crosscheck_engine(app, conn):
    handler = app.handler()
    return crosscheck.CrosscheckEngine(conn, handler.remote, connect_timeout=app.config.connect_timeout)


@cluster.command("show")
@click.option("--csv", "csv_output", is_flag=True, help="Output in CSV format")
@click.pass_obj
def cluster_show(app, csv_output):
    with app.handler().connect_local() as conn:
        result = crosscheck_engine(app, conn).show()
    echo_lines(crosscheck.render_show(result, csv_output))
    check_result("following issue(s) were detected", result.exit_code, result.warnings)


def print_matrix(result, csv_output):
    echo_lines(mx.render_csv(result.matrix) if csv_output else mx.render_text(result.matrix))
    check_result("following issue(s) were detected", result.exit_code, result.warnings)


@cluster.command("matrix")
@click.option("--csv", "csv_output", is_flag=True, help="Output in CSV format")
@click.pass_obj
def cluster_matrix(app, csv_output):
    handler = app.handler()
    with handler.connect_local() as conn:
        result = crosscheck_engine(app, conn).matrix(handler.local_node_id)
    print_matrix(result, csv_output)


@cluster.command("crosscheck")
@click.option("--csv", "csv_output", is_flag=True, help="Output in CSV format")
@click.pass_obj
def cluster_crosscheck(app, csv_output):
    handler = app.handler()
    with handler.connect_local() as conn:
        result = crosscheck_engine(app, conn).crosscheck(handler.local_node_id)
    print_matrix(result, csv_output)


@cluster.command("event")
@click.option("--limit", type=int, default=cluster_commands.DEFAULT_EVENT_LIMIT, show_default=True,
              help="Maximum number of events to display")
@click.option("--all", "all_events", is_flag=True, help="Display all events")
@click.option("--event", help="Only display events of this type")
@click.option("--node-id", "event_node_id", type=int, help="Only display events of this node")
@click.option("--node-name", help="Only display events of the node with this name")
@click.option("--csv", "csv_output", is_flag=True, help="Output in CSV format")
@click.option("--compact", is_flag=True, help="Omit the event details")
@click.pass_obj
def cluster_event(app, limit, all_events, event, event_node_id, node_name, csv_output, compact):
    with app.handler().connect_local() as conn:
        records = cluster_commands.cluster_event(conn, limit, all_events, event_node_id, node_name, event)
    echo_lines(cluster_commands.render_events(records, csv_output, compact))


@cluster.command("cleanup")
@click.option("-k", "--keep-history", type=int, default=0, help="Keep history and events of the last N days")
@click.pass_obj
def cluster_cleanup(app, keep_history):
    node_id = app.options.node_id if app.options.node_id != UNKNOWN_NODE_ID else None
    handler = app.handler()
    with handler.connect_local() as conn:
        _, primary_conn = handler.connect_primary(conn)
        with primary_conn:
            cluster_commands.cluster_cleanup(primary_conn, keep_history, node_id)


@cli.group()
def service():
    """Status and pause switch of the failover daemon on all nodes."""


@service.command("status")
@click.option("--csv", "csv_output", is_flag=True, help="Output in CSV format")
@click.pass_obj
def service_status(app, csv_output):
    lines, warnings = app.handler(RepmgrdHandler).status(csv_output)
    echo_lines(lines)
    check_result("following issue(s) were detected",
                 ExitCode.NODE_STATUS if warnings else ExitCode.SUCCESS, warnings)


@service.command("pause")
@click.pass_obj
def service_pause(app):
    app.handler(RepmgrdHandler).pause(True)


@service.command("unpause")
@click.pass_obj
def service_unpause(app):
    app.handler(RepmgrdHandler).pause(False)


def report_warnings(error):
    log = logger.get_logger()
    if error.warnings and not logger.is_terse():
        log.warning(f"{error.message}:")
        for warning in error.warnings:
            log.warning(f"  - {warning}")


def main(args=None):
    """Entry point: runs the command and maps errors to the exit status."""
    exit_code = ExitCode.SUCCESS
    try:
        cli.main(args=args, prog_name="pg-cluster-manager", standalone_mode=False)
    except CommandResultError as ex:
        report_warnings(ex)
        exit_code = ex.exit_code
    except ClusterManagerError as ex:
        if not logger.get_logger().handlers:
            logger.init_logging()
        logger.log_error(ex)
        exit_code = ex.exit_code
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        exit_code = ExitCode.INTERNAL
    except click.ClickException as ex:
        ex.show()
        exit_code = ExitCode.BAD_CONFIG
    except MemoryError:
        click.echo("out of memory", err=True)
        exit_code = ExitCode.OUT_OF_MEMORY
    finally:
        logger.shutdown_logging()
    sys.exit(int(exit_code))


if __name__ == "__main__":
    main()
