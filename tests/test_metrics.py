import unittest
from unittest.mock import patch

from mentor_platform import metrics
from mentor_platform.config import settings
from mentor_platform.scheduler import scheduler, start_scheduler, stop_scheduler


class RecordingExporter(metrics.MetricsExporter):
    def __init__(self):
        self.exports = []

    def export_minute(self, *, channel, minute_start, counts):
        self.exports.append((channel, counts))


class MetricsTests(unittest.TestCase):
    def setUp(self):
        self.exporter = RecordingExporter()
        metrics.set_metrics_exporter(self.exporter)
        self.addCleanup(metrics.set_metrics_exporter, metrics.LogMetricsExporter())

    def test_minute_counter_flushes_counts_once(self):
        counter = metrics._MinuteCounter('booking')
        counter.record('booking_requested')
        counter.record('booking_requested')
        counter.record('booking_approved')
        self.assertEqual(counter.snapshot(), {'booking_requested': 2, 'booking_approved': 1})

        counter.flush()
        self.assertEqual(self.exporter.exports, [('booking', {'booking_requested': 2, 'booking_approved': 1})])
        self.assertEqual(counter.snapshot(), {})
        counter.flush()
        self.assertEqual(len(self.exporter.exports), 1)

    def test_booking_events_are_counted(self):
        metrics.flush_metrics()
        metrics.record_booking_event('booking_duplicate_request')
        self.assertEqual(metrics.booking_event_counts().get('booking_duplicate_request'), 1)

    def test_timed_service_logs_slow_calls(self):
        @metrics.timed_service('unit.fast', threshold_ms=0)
        def work(value):
            """Doubles."""
            return value * 2

        with self.assertLogs('mentor_platform.metrics', level='INFO') as logs:
            self.assertEqual(work(4), 8)
        self.assertTrue(any('label=unit.fast' in line for line in logs.output))
        self.assertEqual(work.__name__, 'work')
        self.assertEqual(work.__doc__, 'Doubles.')

    def test_run_timed_job_reraises_failures(self):
        def boom():
            raise RuntimeError('job exploded')

        with self.assertLogs('mentor_platform.metrics', level='INFO') as logs:
            with self.assertRaises(RuntimeError):
                metrics.run_timed_job('unit_job', boom)
        self.assertTrue(any('job_failed name=unit_job' in line for line in logs.output))
        self.assertTrue(any('status=failed' in line for line in logs.output))


class SchedulerTests(unittest.TestCase):
    def tearDown(self):
        stop_scheduler()
        scheduler.remove_all_jobs()

    def test_scheduler_stays_off_when_disabled(self):
        with patch.object(settings, 'enable_background_jobs', False):
            start_scheduler()
        self.assertFalse(scheduler.running)
        self.assertEqual(scheduler.get_jobs(), [])

    def test_scheduler_registers_both_jobs(self):
        with patch.object(settings, 'enable_background_jobs', True):
            start_scheduler()
        self.assertEqual(
            sorted(job.id for job in scheduler.get_jobs()),
            ['reconcile_overdue_bookings', 'retry_failed_notifications'],
        )


if __name__ == '__main__':
    unittest.main()
