import logging
import time

logger = logging.getLogger(__name__)


class RetryError(Exception):
    """Raised when every attempt of an operation failed"""

    def __init__(self, last_error, attempts):
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempts = attempts


class RetryPolicy:
    """Bounded attempts with linear backoff: delay, 2*delay, 3*delay, ...

    ``sleep`` is injectable so tests run without real delays.
    """

    def __init__(self, max_attempts=3, delay=1.0, sleep=time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay = delay
        self.sleep = sleep

    def backoff(self, attempt):
        return self.delay * attempt

    def run(self, operation, description='operation'):
        """Call operation until it succeeds; returns (result, attempts_used)"""
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation(), attempt
            except Exception as e:
                last_error = e
                logger.warning(f"WARNING: {description} attempt {attempt}/{self.max_attempts} failed: {e}")
                if attempt < self.max_attempts:
                    self.sleep(self.backoff(attempt))

        raise RetryError(last_error, self.max_attempts)
