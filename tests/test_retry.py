import unittest

from digestq.models import ErrorKind
from digestq.retry import RetryPolicy, base_backoff, next_attempt_delay, should_retry


class RetryTest(unittest.TestCase):
    def test_backoff_doubles_and_caps(self) -> None:
        self.assertEqual(base_backoff(1, 2.0, 300.0), 2.0)
        self.assertEqual(base_backoff(2, 2.0, 300.0), 4.0)
        self.assertEqual(base_backoff(5, 2.0, 300.0), 32.0)
        self.assertEqual(base_backoff(20, 2.0, 300.0), 300.0)
        self.assertEqual(base_backoff(0, 2.0, 300.0), 2.0)
        self.assertEqual(base_backoff(10_000, 2.0, 300.0), 300.0)

    def test_jitter_bounds(self) -> None:
        self.assertEqual(next_attempt_delay(3, 2.0, 300.0, rand=lambda low, high: low), 4.0)
        self.assertEqual(next_attempt_delay(3, 2.0, 300.0, rand=lambda low, high: high), 12.0)
        for attempts in range(1, 12):
            delay = next_attempt_delay(attempts, 2.0, 300.0)
            base = base_backoff(attempts, 2.0, 300.0)
            self.assertGreaterEqual(delay, base * 0.5)
            self.assertLessEqual(delay, base * 1.5)

    def test_should_retry(self) -> None:
        self.assertTrue(should_retry(1, 3, ErrorKind.RETRYABLE))
        self.assertTrue(should_retry(3, 3, ErrorKind.TIMEOUT))
        self.assertFalse(should_retry(4, 3, ErrorKind.RETRYABLE))
        self.assertTrue(should_retry(1, 3))
        for kind in (ErrorKind.VALIDATION, ErrorKind.NON_RETRYABLE, ErrorKind.CANCELLED, ErrorKind.NO_HANDLER):
            self.assertFalse(should_retry(1, 3, kind))

    def test_policy_without_jitter(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=False)
        self.assertEqual([policy.delay_for(n) for n in range(1, 6)], [1.0, 2.0, 4.0, 8.0, 10.0])
        self.assertFalse(policy.should_retry(2, 1, ErrorKind.RETRYABLE))


if __name__ == "__main__":
    unittest.main()
