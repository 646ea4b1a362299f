import unittest
from unittest.mock import patch

from opportunityos.retry import retry


class RetryTest(unittest.TestCase):
    @patch("opportunityos.retry.time.sleep")
    def test_delays_grow_exponentially_and_cap(self, sleep_mock):
        @retry(max_attempts=5, base_delay=4.0, backoff=2.0, max_delay=10.0, retryable_exceptions=(ConnectionError,))
        def never_connects():
            raise ConnectionError("refused")

        with self.assertRaises(ConnectionError):
            never_connects()
        self.assertEqual([call.args[0] for call in sleep_mock.call_args_list], [4.0, 8.0, 10.0, 10.0])

    @patch("opportunityos.retry.time.sleep")
    def test_succeeds_after_transient_failures(self, sleep_mock):
        attempts = []

        @retry(max_attempts=3, base_delay=1.0, retryable_exceptions=(ConnectionError,))
        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("reset")
            return "ok"

        self.assertEqual(flaky(), "ok")
        self.assertEqual(len(attempts), 3)
        self.assertEqual([call.args[0] for call in sleep_mock.call_args_list], [1.0, 2.0])

    @patch("opportunityos.retry.time.sleep")
    def test_gives_up_after_max_attempts(self, sleep_mock):
        seen = []

        @retry(max_attempts=2, base_delay=5.0, backoff=1.0, on_retry=lambda attempt, exc, delay: seen.append((attempt, delay)))
        def always_fails():
            raise TimeoutError("slow")

        with self.assertLogs("opportunityos.retry", level="WARNING"):
            with self.assertRaises(TimeoutError):
                always_fails()
        self.assertEqual(seen, [(1, 5.0)])
        sleep_mock.assert_called_once_with(5.0)

    @patch("opportunityos.retry.time.sleep")
    def test_non_retryable_errors_propagate_immediately(self, sleep_mock):
        @retry(max_attempts=3, retryable_exceptions=(ConnectionError,))
        def bad_input():
            raise ValueError("bad")

        with self.assertRaises(ValueError):
            bad_input()
        sleep_mock.assert_not_called()


if __name__ == "__main__":
    unittest.main()
