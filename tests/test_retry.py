import pytest

from church_sms.retry import RetryError, RetryPolicy


class Flaky:
    def __init__(self, failures, result='ok'):
        self.failures = failures
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"failure {self.calls}")
        return self.result


def test_first_attempt_success(retry_policy, sleeps):
    assert retry_policy.run(Flaky(0)) == ('ok', 1)
    assert sleeps == []


def test_linear_backoff_between_attempts(retry_policy, sleeps):
    operation = Flaky(2)

    assert retry_policy.run(operation) == ('ok', 3)
    assert operation.calls == 3
    assert sleeps == [1.0, 2.0]


def test_exhausted_attempts_raise(retry_policy, sleeps):
    operation = Flaky(10)

    with pytest.raises(RetryError) as excinfo:
        retry_policy.run(operation, 'SMS to +12065910943')

    assert operation.calls == 3
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, ConnectionError)
    assert str(excinfo.value) == 'failure 3'
    # No sleep after the final attempt
    assert sleeps == [1.0, 2.0]


def test_backoff_scales_with_delay():
    policy = RetryPolicy(max_attempts=4, delay=0.5, sleep=lambda seconds: None)

    assert [policy.backoff(attempt) for attempt in (1, 2, 3)] == [0.5, 1.0, 1.5]


def test_at_least_one_attempt_required():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
