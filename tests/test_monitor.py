"""Tests for the connectivity monitor."""

from unittest.mock import Mock

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger

from wearsync.sync.monitor import (
    NETWORK_RESUME_JOB,
    UNLOCK_RESUME_JOB,
    ConnectivityMonitor,
    DataAvailability,
    NetworkState,
)


class TestConnectivityMonitor:
    """Tests for ConnectivityMonitor."""

    def setup_method(self):
        """Set up test fixtures."""
        self.scheduler = Mock()
        self.scheduler.running = True
        self.scheduler.remove_job.side_effect = JobLookupError("none")
        self.on_network_restored = Mock()
        self.on_data_available = Mock()
        self.listener = Mock()
        self.monitor = ConnectivityMonitor(
            self.scheduler,
            on_network_restored=self.on_network_restored,
            on_data_available=self.on_data_available,
            network_settle=2.0,
            unlock_settle=1.0,
            probe_host="wear.example.com",
            probe_port=443,
            listener=self.listener,
        )

    def scheduled_ids(self):
        return [call.kwargs["id"] for call in self.scheduler.add_job.call_args_list]

    def test_start_registers_listener_once(self):
        self.monitor.start()
        self.monitor.start()

        self.listener.assert_called_once()
        kwargs = self.listener.call_args.kwargs
        assert kwargs["host"] == "wear.example.com"
        assert kwargs["on_network_change"] == self.monitor.on_network_change
        assert kwargs["stop_event"].is_set() is False

    def test_stop_sets_stop_event_and_resets_state(self):
        self.monitor.start()
        stop_event = self.listener.call_args.kwargs["stop_event"]
        self.monitor.on_network_change(False)
        self.monitor.defer_until_available()

        self.monitor.stop()

        assert stop_event.is_set()
        assert self.monitor.network_state == NetworkState.UNKNOWN
        assert self.monitor.data_availability == DataAvailability.AVAILABLE
        assert self.monitor.resume_deferred is False

    def test_first_online_report_does_not_resume(self):
        self.monitor.on_network_change(True)

        assert self.monitor.network_state == NetworkState.CONNECTED
        self.scheduler.add_job.assert_not_called()

    def test_reconnect_schedules_settled_resume(self):
        self.monitor.on_network_change(False)
        self.monitor.on_network_change(True)

        assert self.scheduled_ids() == [NETWORK_RESUME_JOB]
        call = self.scheduler.add_job.call_args
        assert isinstance(call.kwargs["trigger"], DateTrigger)
        assert call.kwargs["replace_existing"] is True
        assert call.kwargs["args"] == [self.on_network_restored]

    def test_repeated_online_reports_schedule_once(self):
        self.monitor.on_network_change(False)
        self.monitor.on_network_change(True)
        self.monitor.on_network_change(True)

        assert self.scheduled_ids() == [NETWORK_RESUME_JOB]

    def test_going_offline_cancels_pending_resume(self):
        self.monitor.on_network_change(False)
        self.monitor.on_network_change(True)
        self.scheduler.remove_job.reset_mock()

        self.monitor.on_network_change(False)

        self.scheduler.remove_job.assert_called_once_with(NETWORK_RESUME_JOB)

    def test_network_error_arms_resume_on_reconnect(self):
        self.monitor.on_network_change(True)
        self.monitor.mark_network_error()

        self.monitor.on_network_change(True)

        assert self.scheduled_ids() == [NETWORK_RESUME_JOB]

    def test_unlock_after_deferral_schedules_resume(self):
        self.monitor.defer_until_available()
        assert self.monitor.resume_deferred is True

        self.monitor.on_data_availability_change(True)

        assert self.monitor.resume_deferred is False
        assert self.monitor.data_availability == DataAvailability.AVAILABLE
        assert self.scheduled_ids() == [UNLOCK_RESUME_JOB]

    def test_lock_then_unlock_schedules_resume(self):
        self.monitor.on_data_availability_change(False)
        assert self.monitor.data_availability == DataAvailability.UNAVAILABLE

        self.monitor.on_data_availability_change(True)

        assert self.scheduled_ids() == [UNLOCK_RESUME_JOB]

    def test_unlock_while_available_does_nothing(self):
        self.monitor.on_data_availability_change(True)
        self.scheduler.add_job.assert_not_called()

    def test_nothing_scheduled_when_scheduler_stopped(self):
        self.scheduler.running = False

        self.monitor.on_network_change(False)
        self.monitor.on_network_change(True)

        self.scheduler.add_job.assert_not_called()
