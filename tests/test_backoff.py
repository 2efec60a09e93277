"""
Test suite for the rate-limited execution helper
"""

import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock

from factories import RecordingSleep

from mailsort.errors import ActionError, ProviderError, RateLimitError
from mailsort.providers.backoff import MAX_JITTER_MS, BackoffPolicy, is_rate_limit_error, with_backoff


def error_with(**attrs):
    error = Exception('request failed')
    for name, value in attrs.items():
        setattr(error, name, value)
    return error


class TestBackoffPolicy(unittest.TestCase):

    def test_delay_grows_and_caps(self):
        policy = BackoffPolicy()
        self.assertEqual([policy.delay_ms(n) for n in range(1, 8)], [400, 800, 1600, 3200, 6400, 10000, 10000])

    def test_with_base_delay(self):
        policy = BackoffPolicy().with_base_delay(300)
        self.assertEqual((policy.max_attempts, policy.delay_ms(1), policy.delay_ms(2)), (6, 300, 600))

    def test_single_attempt(self):
        self.assertEqual(BackoffPolicy.single_attempt().max_attempts, 1)


class TestIsRateLimitError(unittest.TestCase):

    def test_recognised_errors(self):
        chained = ActionError('move', 'm1', 'failed')
        chained.__cause__ = RateLimitError()

        test_cases = [
            {'error': RateLimitError(), 'expected': True, 'description': 'RateLimitError'},
            {'error': error_with(status=429), 'expected': True, 'description': 'status attribute'},
            {'error': error_with(status_code=429), 'expected': True, 'description': 'status_code attribute'},
            {'error': error_with(resp=SimpleNamespace(status=429)), 'expected': True,
             'description': 'Google API HttpError style'},
            {'error': Exception('Too Many Requests'), 'expected': True, 'description': 'Text marker'},
            {'error': Exception('HTTP 429 from upstream'), 'expected': True, 'description': 'Status in text'},
            {'error': chained, 'expected': True, 'description': 'Wrapped rate limit'},
            {'error': ProviderError('not found'), 'expected': False, 'description': 'Other provider error'},
            {'error': ProviderError('Message 18c4291ab not found'), 'expected': False,
             'description': 'Digits inside a message id'},
            {'error': ActionError('label', '18c4291ab', 'boom'), 'expected': False,
             'description': 'Action failure mentioning an id'},
            {'error': Exception('Gmail API error 500: quota 4290 left'), 'expected': False,
             'description': 'Digits inside a number'},
            {'error': error_with(status=500), 'expected': False, 'description': 'Server error'},
            {'error': ValueError('bad value'), 'expected': False, 'description': 'Programming error'},
        ]

        for case in test_cases:
            with self.subTest(case=case['description']):
                self.assertEqual(is_rate_limit_error(case['error']), case['expected'])


class TestWithBackoff(unittest.IsolatedAsyncioTestCase):

    async def test_retries_rate_limits_then_succeeds(self):
        sleep = RecordingSleep()
        fn = AsyncMock(side_effect=[RateLimitError(), RateLimitError(), 'done'])

        result = await with_backoff(fn, sleep=sleep)

        self.assertEqual(result, 'done')
        self.assertEqual(fn.await_count, 3)
        self.assertEqual(len(sleep.delays), 2)
        for attempt, delay in enumerate(sleep.delays, start=1):
            base = BackoffPolicy().delay_ms(attempt) / 1000
            self.assertGreaterEqual(delay, base)
            self.assertLessEqual(delay, base + MAX_JITTER_MS / 1000)

    async def test_other_errors_propagate_immediately(self):
        sleep = RecordingSleep()
        fn = AsyncMock(side_effect=ProviderError('gone'))

        with self.assertRaises(ProviderError):
            await with_backoff(fn, sleep=sleep)

        self.assertEqual(fn.await_count, 1)
        self.assertEqual(sleep.delays, [])

    async def test_error_mentioning_429_in_an_id_is_not_retried(self):
        sleep = RecordingSleep()
        fn = AsyncMock(side_effect=ProviderError('Message 18c4291ab not found'))

        with self.assertRaises(ProviderError):
            await with_backoff(fn, sleep=sleep)

        self.assertEqual(fn.await_count, 1)
        self.assertEqual(sleep.delays, [])

    async def test_gives_up_after_max_attempts(self):
        sleep = RecordingSleep()
        fn = AsyncMock(side_effect=RateLimitError())

        with self.assertRaises(RateLimitError):
            await with_backoff(fn, sleep=sleep)

        self.assertEqual(fn.await_count, 6)
        self.assertEqual(len(sleep.delays), 5)

    async def test_single_attempt_never_sleeps(self):
        sleep = RecordingSleep()
        fn = AsyncMock(side_effect=RateLimitError())

        with self.assertRaises(RateLimitError):
            await with_backoff(fn, policy=BackoffPolicy.single_attempt(), sleep=sleep)

        self.assertEqual(fn.await_count, 1)
        self.assertEqual(sleep.delays, [])


if __name__ == '__main__':
    unittest.main()
