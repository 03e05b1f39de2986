#!/usr/bin/env python3
"""
Unit tests for logging infrastructure.

Covers sensitive data filtering, target scoped loggers, file handler
selection and retention cleanup.
"""

import os
import sys
import time
import shutil
import logging
import logging.handlers
import tempfile
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_catalog_sync.logging_setup import (
    LOG_FILE_NAME,
    LoggingManager,
    SensitiveDataFilter,
    TargetLoggerAdapter,
    scoped_logger,
)


class MockRecord:
    def __init__(self, msg):
        self.msg = msg


class TestSensitiveDataFilter(unittest.TestCase):
    """Test cases for SensitiveDataFilter."""

    def scrub(self, message):
        record = MockRecord(message)
        self.assertTrue(SensitiveDataFilter().filter(record))
        return record.msg

    def test_filter_patterns(self):
        """Test the sensitive data filtering patterns."""
        test_cases = [
            ('password=secret123', 'password=****'),
            ('token=abc123def456', 'token=****'),
            ('bind secret = hunter2, retrying', 'bind secret = ****, retrying'),
            ('{"secret": "topsecret"}', '{"secret": "****"}'),
            ('{"password": "test123"}', '{"password": "****"}'),
            ('Authorization: Bearer abc123token', 'Authorization: Bearer ****'),
            ('Normal message without secrets', 'Normal message without secrets'),
        ]

        for message, expected in test_cases:
            with self.subTest(message=message):
                self.assertEqual(self.scrub(message), expected)

    def test_dn_is_kept(self):
        """Test that bind DNs and targets are not scrubbed."""
        message = 'Connected and bound to LDAP server ldaps://ds as cn=reader,dc=example'
        self.assertEqual(self.scrub(message), message)


class TestScopedLogger(unittest.TestCase):
    """Test cases for target scoped loggers."""

    def test_prefixes_target(self):
        """Test that messages carry the LDAP target."""
        logger = scoped_logger(logging.getLogger('tests.scoped'), 'ldaps://ds.example.com')

        with self.assertLogs('tests.scoped', level='INFO') as logs:
            logger.info('Reading LDAP users and groups')

        self.assertEqual(logs.records[0].getMessage(), '[ldaps://ds.example.com] Reading LDAP users and groups')

    def test_rescoping_does_not_nest(self):
        """Test that scoping an adapter replaces the previous target."""
        first = scoped_logger(logging.getLogger('tests.scoped'), 'ldap://a')
        second = scoped_logger(first, 'ldap://b')

        self.assertIsInstance(second, TargetLoggerAdapter)
        self.assertIs(second.logger, logging.getLogger('tests.scoped'))

        with self.assertLogs('tests.scoped', level='INFO') as logs:
            second.info('hello')
        self.assertEqual(logs.records[0].getMessage(), '[ldap://b] hello')


class TestLoggingManager(unittest.TestCase):
    """Test cases for LoggingManager."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp(prefix='ldap_catalog_sync_test_logs_')
        root = logging.getLogger()
        self.saved_handlers = list(root.handlers)
        self.saved_level = root.level

    def tearDown(self):
        """Restore the root logger and clean up."""
        root = logging.getLogger()
        for handler in root.handlers:
            if handler not in self.saved_handlers:
                handler.close()
        root.handlers[:] = self.saved_handlers
        root.setLevel(self.saved_level)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_setup_creates_log_file(self):
        """Test that messages reach the rotating log file, scrubbed."""
        manager = LoggingManager()
        manager.setup_logging({'level': 'DEBUG', 'log_dir': self.temp_dir, 'console_output': False})

        logging.getLogger('tests.manager').info('bind with password=hunter2 done')
        for handler in logging.getLogger().handlers:
            handler.flush()

        log_file = os.path.join(self.temp_dir, LOG_FILE_NAME)
        with open(log_file, encoding='utf-8') as f:
            content = f.read()
        self.assertIn('password=****', content)
        self.assertNotIn('hunter2', content)
        self.assertIsInstance(logging.getLogger().handlers[0], logging.handlers.TimedRotatingFileHandler)

    def test_setup_only_once(self):
        """Test that a second setup call is ignored."""
        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir, 'console_output': False})
        handlers = list(logging.getLogger().handlers)

        manager.setup_logging({'log_dir': self.temp_dir, 'console_output': True})

        self.assertEqual(logging.getLogger().handlers, handlers)

    def test_plain_file_handler(self):
        """Test that rotation 'none' uses a plain file handler."""
        manager = LoggingManager()
        manager.log_dir = self.temp_dir

        handler = manager._create_file_handler('none')
        try:
            self.assertNotIsInstance(handler, logging.handlers.TimedRotatingFileHandler)
            self.assertIsInstance(handler, logging.FileHandler)
        finally:
            handler.close()

    def test_cleanup_old_logs(self):
        """Test that rotated files older than the retention period are removed."""
        manager = LoggingManager()
        manager.log_dir = self.temp_dir
        manager.retention_days = 3

        current = os.path.join(self.temp_dir, LOG_FILE_NAME)
        old = current + '.2020-01-01'
        recent = current + '.recent'
        for path in (current, old, recent):
            with open(path, 'w') as f:
                f.write('x')
        ten_days_ago = time.time() - 10 * 86400
        os.utime(old, (ten_days_ago, ten_days_ago))
        os.utime(current, (ten_days_ago, ten_days_ago))

        manager._cleanup_old_logs()

        self.assertEqual(manager.get_log_files(), [current, recent])


if __name__ == '__main__':
    unittest.main()
