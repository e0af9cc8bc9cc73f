import pytest

from nurture.contracts import RetryPolicy
from nurture.errors import TemplateNotFound, TransientDependencyError
from nurture.utils.retry import compute_backoff, retry_transient


def test_compute_backoff_grows_and_caps():
    assert compute_backoff(1) == 1.0
    assert compute_backoff(2) == 2.0
    assert compute_backoff(3) == 4.0
    assert compute_backoff(10, max_delay=30.0) == 30.0
    assert 5.0 <= compute_backoff(3, base=5.0, multiplier=1.0, jitter=1.0) <= 6.0


@pytest.mark.asyncio
async def test_retry_transient_recovers():
    delays = []
    attempts = []

    async def sleep(delay):
        delays.append(delay)

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientDependencyError("unavailable")
        return "ok"

    assert await retry_transient(flaky, RetryPolicy(), sleep) == "ok"
    assert delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_transient_gives_up_after_max_attempts():
    attempts = []

    async def sleep(delay):
        pass

    async def down():
        attempts.append(1)
        raise TransientDependencyError("unavailable")

    with pytest.raises(TransientDependencyError):
        await retry_transient(down, RetryPolicy(max_attempts=4), sleep)
    assert len(attempts) == 4


@pytest.mark.asyncio
async def test_retry_transient_does_not_retry_other_errors():
    attempts = []

    async def missing():
        attempts.append(1)
        raise TemplateNotFound("nope")

    with pytest.raises(TemplateNotFound):
        await retry_transient(missing, RetryPolicy())
    assert len(attempts) == 1
