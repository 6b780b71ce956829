"""Tests for system event helpers."""

from unittest.mock import Mock, patch

from wearsync.system_events import NetworkPoller, probe_target


class TestProbeTarget:
    """Tests for probe_target."""

    def test_https_default_port(self):
        assert probe_target("https://wear.example.com/api/v1") == ("wear.example.com", 443)

    def test_explicit_port(self):
        assert probe_target("http://127.0.0.1:8000") == ("127.0.0.1", 8000)

    def test_http_default_port(self):
        assert probe_target("http://wear.example.com") == ("wear.example.com", 80)


class TestNetworkPoller:
    """Tests for NetworkPoller."""

    def test_first_poll_only_records_state(self):
        on_change = Mock()
        poller = NetworkPoller(on_change, "wear.example.com")

        with patch.object(poller, "check", return_value=True):
            poller.poll_once()

        assert poller.online is True
        on_change.assert_not_called()

    def test_reports_changes_only(self):
        on_change = Mock()
        poller = NetworkPoller(on_change, "wear.example.com")

        with patch.object(poller, "check", side_effect=[True, True, False, True]):
            for _ in range(4):
                poller.poll_once()

        assert [call.args[0] for call in on_change.call_args_list] == [False, True]

    def test_callback_errors_are_contained(self):
        poller = NetworkPoller(Mock(side_effect=RuntimeError("boom")), "wear.example.com")

        with patch.object(poller, "check", side_effect=[True, False]):
            poller.poll_once()
            poller.poll_once()

        assert poller.online is False

    def test_check_uses_tcp_connect(self):
        poller = NetworkPoller(Mock(), "wear.example.com", port=8443)

        with patch("wearsync.system_events.socket.create_connection") as connect:
            assert poller.check() is True
            connect.assert_called_once_with(("wear.example.com", 8443), timeout=5)

            connect.side_effect = OSError("unreachable")
            assert poller.check() is False

    def test_run_stops_on_event(self):
        poller = NetworkPoller(Mock(), "wear.example.com", interval=0.01)
        poller.stop_event.set()

        with patch.object(poller, "check") as check:
            poller.run()

        check.assert_not_called()
