#!/usr/bin/env python3
"""
Unit tests for retry mechanism.
"""

import os
import sys
import unittest
from unittest.mock import Mock, call

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3.core.exceptions import LDAPSocketOpenError

from identity_sync.retry import (
    retry_call, is_retryable_error, create_retry_callback, MaxRetriesExceeded
)


class TestRetryCall(unittest.TestCase):
    """Test cases for retry_call."""

    def setUp(self):
        self.sleep = Mock()

    def test_success_on_first_attempt(self):
        func = Mock(return_value='ok')

        self.assertEqual(retry_call(func, args=(1,), kwargs={'b': 2}, sleep=self.sleep), 'ok')
        func.assert_called_once_with(1, b=2)
        self.sleep.assert_not_called()

    def test_success_after_failures(self):
        func = Mock(side_effect=[ConnectionError('reset'), ConnectionError('reset'), 'ok'])

        result = retry_call(func, max_attempts=3, delay=2.0, exceptions=(ConnectionError,), sleep=self.sleep)

        self.assertEqual(result, 'ok')
        self.assertEqual(func.call_count, 3)

    def test_exponential_backoff(self):
        func = Mock(side_effect=TimeoutError('timed out'))

        with self.assertRaises(MaxRetriesExceeded) as context:
            retry_call(func, max_attempts=4, delay=1.0, backoff=2.0, sleep=self.sleep)

        self.assertEqual(self.sleep.call_args_list, [call(1.0), call(2.0), call(4.0)])
        self.assertEqual(context.exception.attempts, 4)
        self.assertIsInstance(context.exception.last_exception, TimeoutError)

    def test_unlisted_exception_propagates(self):
        func = Mock(side_effect=ValueError('bad input'))

        with self.assertRaises(ValueError):
            retry_call(func, exceptions=(ConnectionError,), sleep=self.sleep)
        func.assert_called_once()

    def test_retry_callback(self):
        func = Mock(side_effect=[ConnectionError('reset'), 'ok'])
        on_retry = Mock()

        retry_call(func, on_retry=on_retry, sleep=self.sleep)

        on_retry.assert_called_once()
        self.assertEqual(on_retry.call_args[0][0], 1)

    def test_failing_callback_does_not_stop_retries(self):
        func = Mock(side_effect=[ConnectionError('reset'), 'ok'])

        self.assertEqual(retry_call(func, on_retry=Mock(side_effect=RuntimeError), sleep=self.sleep), 'ok')

    def test_single_attempt_minimum(self):
        func = Mock(side_effect=ConnectionError('reset'))

        with self.assertRaises(MaxRetriesExceeded):
            retry_call(func, max_attempts=0, sleep=self.sleep)
        func.assert_called_once()


class TestRetryableErrors(unittest.TestCase):
    """Test cases for is_retryable_error."""

    def test_network_errors_are_retryable(self):
        self.assertTrue(is_retryable_error(ConnectionError('anything')))
        self.assertTrue(is_retryable_error(TimeoutError()))
        self.assertTrue(is_retryable_error(LDAPSocketOpenError('socket connection error: Connection refused')))
        self.assertTrue(is_retryable_error(Exception('server is busy')))

    def test_rejected_credentials_are_not_retryable(self):
        self.assertFalse(is_retryable_error(Exception('invalidCredentials: bind timed out')))
        self.assertFalse(is_retryable_error(Exception('no such object')))

    def test_retry_callback_logs(self):
        callback = create_retry_callback('Directory connection')
        with self.assertLogs('identity_sync.retry', level='WARNING') as logs:
            callback(2, ConnectionError('reset'))
        self.assertIn('Directory connection failed on attempt 2', logs.output[0])


if __name__ == '__main__':
    unittest.main()
