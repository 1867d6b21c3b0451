#!/usr/bin/env python3
"""
Tests for settings loading: YAML file, environment overrides, validation
and the sender identity rules.
"""

import unittest
import shutil
import os
import tempfile
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).parent))

from campaign_lib.config_loader import Settings, load_settings
from campaign_lib.errors import ConfigurationError

SAMPLE_YAML = """
timezone: America/New_York
environment: staging
schedule:
  generate:
    dow: thursday
    time: "08:30"
  lock:
    dow: MONDAY
    time: 17:00
mail:
  sender_mailbox: news@example.com
  reply_to: sales@example.com
  transport: dry_run
  template_path: templates/weekly.html
content:
  provider: mock
  timeout_seconds: 15
"""


class TestConfigLoader(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = os.path.join(self.temp_dir, "scheduler_config.yaml")
        with open(self.config_path, 'w') as f:
            f.write(SAMPLE_YAML)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_defaults(self):
        settings = load_settings(environ={})

        self.assertEqual(settings.timezone, "America/Chicago")
        self.assertEqual(settings.environment, "production")
        self.assertEqual(settings.schedule_dict(), {
            'timezone': "America/Chicago",
            'generate': {'dow': 'FRIDAY', 'time': '09:00'},
            'lock': {'dow': 'TUESDAY', 'time': '09:45'},
            'send': {'dow': 'TUESDAY', 'time': '10:00'},
        })
        self.assertEqual(settings.content.provider, "mock")

    def test_yaml_file(self):
        settings = load_settings(self.config_path, environ={})

        self.assertEqual(settings.timezone, "America/New_York")
        self.assertEqual(settings.environment, "staging")
        self.assertEqual(settings.schedule.generate.dow, "THURSDAY")
        self.assertEqual(settings.schedule.generate.time, "08:30")
        # unquoted 17:00 arrives from YAML as a base-60 integer
        self.assertEqual(settings.schedule.lock.time, "17:00")
        self.assertEqual(settings.schedule.send.time, "10:00")
        self.assertEqual(settings.mail.transport, "dry_run")
        self.assertEqual(settings.mail.template_path, "templates/weekly.html")
        self.assertEqual(settings.content.timeout_seconds, 15.0)

    def test_missing_file_uses_defaults(self):
        settings = Settings.from_yaml(os.path.join(self.temp_dir, "absent.yaml"))
        self.assertEqual(settings.timezone, "America/Chicago")

    def test_environment_overrides_file(self):
        settings = load_settings(self.config_path, environ={
            'TIMEZONE': 'America/Denver',
            'SCHEDULE_SEND_DOW': 'wednesday',
            'SCHEDULE_SEND_TIME': '11:15',
            'SENDER_MAILBOX': 'legacy@example.com',
            'OPEN_AI_KEY': 'sk-test',
            'MS_TENANT_ID': 'tenant-1',
            'EMAIL_TEMPLATE_PATH': '/srv/template.html',
        })

        self.assertEqual(settings.timezone, "America/Denver")
        self.assertEqual(settings.schedule.send.dow, "WEDNESDAY")
        self.assertEqual(settings.schedule.send.time, "11:15")
        self.assertEqual(settings.mail.sender_mailbox, "legacy@example.com")
        self.assertEqual(settings.content.api_key, "sk-test")
        self.assertEqual(settings.graph.tenant_id, "tenant-1")
        self.assertEqual(settings.mail.template_path, "/srv/template.html")

    def test_current_sender_name_wins_over_legacy(self):
        settings = load_settings(environ={'MAIL_SENDER_UPN': 'new@example.com', 'SENDER_MAILBOX': 'old@example.com'})
        self.assertEqual(settings.mail.sender_mailbox, "new@example.com")

    def test_invalid_values_rejected(self):
        bad = [
            {'TIMEZONE': 'Central'},
            {'SCHEDULE_LOCK_DOW': 'TUES'},
            {'SCHEDULE_GENERATE_TIME': '9:00'},
            {'SCHEDULE_SEND_TIME': '25:00'},
        ]
        for environ in bad:
            with self.assertRaises(ConfigurationError):
                load_settings(environ=environ)

    def test_invalid_timezone_message(self):
        with self.assertRaises(ConfigurationError) as ctx:
            load_settings(environ={'TIMEZONE': 'Nowhere/City'})
        self.assertIn('Invalid TIMEZONE: "Nowhere/City"', str(ctx.exception))


class TestSenderIdentity(unittest.TestCase):

    def test_configured_identity(self):
        settings = load_settings(environ={'MAIL_SENDER_UPN': 'a@example.com', 'REPLY_TO': 'b@example.com'})
        self.assertEqual(settings.sender_identity(), ("a@example.com", "b@example.com"))

    def test_dev_fallbacks(self):
        settings = load_settings(environ={'ENVIRONMENT': 'dev'})
        self.assertTrue(settings.is_dev)
        self.assertEqual(settings.sender_identity(),
                         ("stub-sender@example.com", "stub-replyto@example.com"))

    def test_missing_identity_outside_dev(self):
        settings = load_settings(environ={'MAIL_SENDER_UPN': 'a@example.com'})
        with self.assertRaises(ConfigurationError):
            settings.sender_identity()


if __name__ == '__main__':
    unittest.main()
