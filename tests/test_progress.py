from __future__ import annotations

import queue

from django.test import SimpleTestCase

from linkplanner.progress import ProgressChannel


class ProgressChannelTests(SimpleTestCase):
    def setUp(self) -> None:
        self.channel = ProgressChannel()

    def test_late_subscriber_receives_latest_snapshot(self) -> None:
        self.channel.publish('run-1', 'embedding', 40, 0, 0)

        subscriber = self.channel.subscribe('run-1')

        event = subscriber.get_nowait()
        self.assertEqual(event, {'type': 'progress', 'phase': 'embedding', 'percent': 40, 'generated': 0, 'rejected': 0})
        with self.assertRaises(queue.Empty):
            subscriber.get_nowait()

    def test_subscriber_after_completion_gets_both_events(self) -> None:
        self.channel.publish('run-1', 'completed', 100, 3, 1)
        self.channel.complete('run-1', True)

        subscriber = self.channel.subscribe('run-1')

        self.assertEqual(subscriber.get_nowait()['type'], 'progress')
        self.assertEqual(subscriber.get_nowait(), {'type': 'completed', 'success': True})

    def test_percent_is_clamped_and_monotonic(self) -> None:
        self.channel.publish('run-1', 'embedding', 60, 0, 0)
        snapshot = self.channel.publish('run-1', 'scenario_orphan', 30, 2, 0)
        self.assertEqual(snapshot.percent, 60)
        self.assertEqual(self.channel.publish('run-1', 'completed', 250, 2, 0).percent, 100)
        self.assertEqual(self.channel.publish('run-2', 'loading', -5, 0, 0).percent, 0)

    def test_events_are_broadcast_per_run(self) -> None:
        first = self.channel.subscribe('run-1')
        other = self.channel.subscribe('run-2')

        self.channel.publish('run-1', 'loading', 10, 0, 0)
        self.channel.complete('run-1', False, 'boom')

        self.assertEqual(first.get_nowait()['percent'], 10)
        self.assertEqual(first.get_nowait(), {'type': 'completed', 'success': False, 'message': 'boom'})
        self.assertTrue(other.empty())

    def test_unsubscribe_removes_subscriber(self) -> None:
        subscriber = self.channel.subscribe('run-1')
        self.assertEqual(self.channel.subscriber_count('run-1'), 1)

        self.channel.unsubscribe('run-1', subscriber)
        self.channel.publish('run-1', 'loading', 5, 0, 0)

        self.assertEqual(self.channel.subscriber_count('run-1'), 0)
        self.assertTrue(subscriber.empty())
