from unittest import mock

from pg_cluster_manager.cluster import cluster_commands
from pg_cluster_manager.cluster.node_store import EventRecord
from pg_cluster_manager.utils import events
from pg_cluster_manager.utils.events import EventInfo
from pg_cluster_manager.utils.shell import CommandResult


def test_format_event_notification_placeholders():
    command = events.format_event_notification(
        "notify.sh %n %e %s \"%t\" \"%d\" %p %a %c 100%% %x", 2, "standby_switchover", True,
        "2024-01-01 10:00:00", "promoted", EventInfo(1, "node1", "host=node1"))
    assert command == "notify.sh 2 standby_switchover 1 \"2024-01-01 10:00:00\" \"promoted\" 1 node1 host=node1 " \
                      "100% %x"


def test_format_event_notification_without_event_info():
    command = events.format_event_notification("n=%n p=%p s=%s", 3, "node_rejoin", False, "", "", None)
    assert command == "n=3 p= s=0"


def test_event_filter(make_config):
    config = make_config(event_notifications="standby_promote, node_rejoin")
    assert events.event_enabled(config, "node_rejoin")
    assert not events.event_enabled(config, "standby_follow")
    assert events.event_enabled(make_config(), "standby_follow")


def test_notify_runs_command(make_config):
    config = make_config(event_notification_command="/bin/notify %n %e")
    with mock.patch.object(events.shell, "execute_cmd", return_value=CommandResult(0)) as execute_cmd:
        assert events.notify(config, 2, "standby_promote", True, "ok", timestamp="2024-01-01 00:00:00")
    execute_cmd.assert_called_once_with("/bin/notify 2 standby_promote")


def test_notify_failure_does_not_raise(make_config):
    config = make_config(event_notification_command="/bin/notify %n")
    with mock.patch.object(events.shell, "execute_cmd", return_value=CommandResult(1, "", "boom")):
        assert not events.notify(config, 2, "standby_promote", True, "ok")


def test_notify_skipped_without_command(make_config):
    with mock.patch.object(events.shell, "execute_cmd") as execute_cmd:
        assert not events.notify(make_config(), 2, "standby_promote", True, "ok")
    execute_cmd.assert_not_called()


def sample_events():
    return [EventRecord(2, "node2", "standby_switchover", True, "2024-01-01 10:00:02", "node 2 promoted, node 1 demoted"),
            EventRecord(1, "node1", "node_rejoin", False, "2024-01-01 10:00:01", "")]


def test_render_events_csv():
    assert cluster_commands.render_events(sample_events(), csv=True) == [
        "2,node2,standby_switchover,1,2024-01-01 10:00:02,\"node 2 promoted, node 1 demoted\"",
        "1,node1,node_rejoin,0,2024-01-01 10:00:01,",
    ]


def test_render_events_compact_table():
    lines = cluster_commands.render_events(sample_events(), compact=True)
    assert "Details" not in lines[0]
    assert lines[2].split("|")[3].strip() == "t"


def test_render_no_events():
    assert cluster_commands.render_events([]) == ["no matching events found"]
