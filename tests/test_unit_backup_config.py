#!/usr/bin/env python3
"""
Unit tests for BackupConfig environment loading and validation
"""

import os
import sys
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mail_backup import BackupConfig, ConfigError


class TestBackupConfig(unittest.TestCase):
    """Test cases for BackupConfig"""

    BASE_ENV = {
        'EMAIL': 'me@example.com',
        'PASSWORD': 's3cret',
        'POP3_SERVER': 'pop.example.com',
        'POP3_PORT': '110',
    }

    def load(self, env):
        config = BackupConfig()
        with patch.dict(os.environ, env, clear=True):
            with patch('mail_backup.load_dotenv') as mock_load_dotenv:
                config.load_environment()
        mock_load_dotenv.assert_called_once_with(None)
        return config

    def test_required_values_and_defaults(self):
        config = self.load(self.BASE_ENV)

        self.assertEqual(config.email_address, 'me@example.com')
        self.assertEqual(config.password, 's3cret')
        self.assertEqual(config.pop3_server, 'pop.example.com')
        self.assertEqual(config.port, 110)
        self.assertFalse(config.use_tls)
        self.assertEqual(config.backup_dir, 'backup')
        self.assertEqual(config.log_dir, 'logs')
        self.assertEqual(config.image_scan_mode, 'forward')
        self.assertFalse(config.render_html_preview)

    def test_optional_values(self):
        env = dict(self.BASE_ENV, POP3_TLS='true', BACKUP_DIR='/tmp/mail', LOG_DIR='/tmp/logs',
                   IMAGE_SCAN_MODE='Strict', RENDER_HTML_PREVIEW='1')
        config = self.load(env)

        self.assertTrue(config.use_tls)
        self.assertEqual(config.backup_dir, '/tmp/mail')
        self.assertEqual(config.log_dir, '/tmp/logs')
        self.assertEqual(config.image_scan_mode, 'strict')
        self.assertTrue(config.render_html_preview)

    def test_missing_variables(self):
        env = dict(self.BASE_ENV)
        del env['PASSWORD']
        env['POP3_SERVER'] = '   '

        with self.assertRaises(ConfigError) as ctx:
            self.load(env)

        self.assertIn('PASSWORD', str(ctx.exception))
        self.assertIn('POP3_SERVER', str(ctx.exception))
        self.assertNotIn('EMAIL', str(ctx.exception))

    def test_invalid_port(self):
        with self.assertRaises(ConfigError) as ctx:
            self.load(dict(self.BASE_ENV, POP3_PORT='pop'))
        self.assertIn('POP3_PORT', str(ctx.exception))

    def test_invalid_image_scan_mode(self):
        with self.assertRaises(ConfigError):
            self.load(dict(self.BASE_ENV, IMAGE_SCAN_MODE='greedy'))

    def test_config_error_is_value_error(self):
        self.assertTrue(issubclass(ConfigError, ValueError))


if __name__ == '__main__':
    unittest.main()
