#!/usr/bin/env python3
"""
Performance Test Suite for the Weekly Campaign Scheduler

Validates that the send pass scales with the contact list:
- A full send over a large contact set finishes in reasonable time
- A second pass is idempotent and skips every delivered recipient
- Segment selection stays cheap across many contacts
- Memory usage remains bounded
"""

import unittest
import sqlite3
import time
import psutil
import os
import shutil
import tempfile
import sys
from pathlib import Path
from contextlib import contextmanager

# Add project root to path
sys.path.append(str(Path(__file__).parent))

from weekly_scheduler import WeeklyCampaignScheduler, RecipientStatus
from campaign_lib.config_loader import load_settings
from campaign_lib.content_providers import MockContentProvider
from campaign_lib.mail_transport import DryRunMailTransport
from campaign_lib.segmentation import target_stage

CONTACT_COUNT = 1000
WEEK = "2026-02-16"


class PerformanceTestBase(unittest.TestCase):
    """Base class for performance tests"""

    def setUp(self):
        """Create a test database seeded with a large contact list"""
        self.temp_dir = tempfile.mkdtemp()
        self.test_db_path = os.path.join(self.temp_dir, "perf_test.db")
        self.transport = DryRunMailTransport()
        self.scheduler = WeeklyCampaignScheduler(
            self.test_db_path,
            settings=load_settings(environ={
                'ENVIRONMENT': 'dev',
                'MAIL_SENDER_UPN': 'sender@example.com',
                'REPLY_TO': 'reply@example.com',
            }),
            content_provider=MockContentProvider(),
            mail_transport=self.transport,
        )
        self.seed_contacts(CONTACT_COUNT)

        # Performance tracking
        self.process = psutil.Process()

    def tearDown(self):
        """Cleanup"""
        shutil.rmtree(self.temp_dir)

    def seed_contacts(self, count):
        rows = [
            (f"c{i:05d}", f"First{i}", f"Last{i % 97}", f"contact{i}@example.com",
             'inactive' if i % 10 == 0 else 'active', i % 4)
            for i in range(count)
        ]
        with sqlite3.connect(self.test_db_path) as conn:
            conn.executemany("""
                INSERT INTO contacts (id, first_name, last_name, email, status, order_count)
                VALUES (?, ?, ?, ?, ?, ?)
            """, rows)

    @contextmanager
    def measure_performance(self, operation_name):
        """Context manager to measure performance metrics"""
        start_time = time.time()
        start_memory = self.process.memory_info().rss / 1024 / 1024  # MB
        metrics = {}

        try:
            yield metrics
        finally:
            duration = time.time() - start_time
            memory_delta = self.process.memory_info().rss / 1024 / 1024 - start_memory
            metrics['duration'] = duration
            metrics['memory_delta'] = memory_delta

            print(f"\nPERFORMANCE METRICS - {operation_name}")
            print(f"   Duration: {duration:.3f}s")
            print(f"   Memory Delta: {memory_delta:+.1f} MB")


class TestSendPassPerformance(PerformanceTestBase):

    def test_full_send_pass(self):
        active = CONTACT_COUNT - CONTACT_COUNT // 10

        with self.measure_performance(f"Send pass over {CONTACT_COUNT:,} contacts") as metrics:
            result = self.scheduler.run_week(WEEK)

        self.assertTrue(result['actions']['sent'])
        self.assertEqual(result['report']['delivered'], active)
        self.assertEqual(len(self.transport.sent), active)
        self.assertLess(metrics['duration'], 60.0)
        self.assertLess(metrics['memory_delta'], 200.0)

    def test_second_pass_is_idempotent(self):
        self.scheduler.run_week(WEEK)
        run = self.scheduler.db_manager.get_weekly_run(WEEK)

        with self.measure_performance("Repeat send pass") as metrics:
            self.scheduler.orchestrator.send(run)

        report = self.scheduler.orchestrator.last_report
        self.assertEqual(report.delivered, 0)
        self.assertEqual(report.already_sent, CONTACT_COUNT - CONTACT_COUNT // 10)
        self.assertEqual(len(self.transport.sent), CONTACT_COUNT - CONTACT_COUNT // 10)
        self.assertLess(metrics['duration'], 30.0)

        send = self.scheduler.db_manager.get_sends(run.id)[0]
        counts = self.scheduler.db_manager.recipient_counts(send.id)
        self.assertEqual(counts[RecipientStatus.SENT.value], CONTACT_COUNT - CONTACT_COUNT // 10)


class TestSegmentationPerformance(PerformanceTestBase):

    def test_bucket_distribution(self):
        stages = {'top': 0, 'mid': 0, 'bottom': 0}

        with self.measure_performance("Segment selection for 10,000 contacts") as metrics:
            for i in range(10000):
                stages[target_stage({'id': f"c{i:05d}", 'order_count': i % 3}, WEEK)] += 1

        self.assertEqual(sum(stages.values()), 10000)
        for count in stages.values():
            self.assertGreater(count, 0)
        self.assertLess(metrics['duration'], 5.0)


if __name__ == '__main__':
    unittest.main(verbosity=2)
