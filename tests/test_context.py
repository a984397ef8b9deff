import threading

import pytest

from cdnssl.context import CallCancelledError, CallContext, CancellationToken


def test_unbounded_context():
    context = CallContext()

    assert context.remaining() is None
    assert context.remaining(default=30) == 30
    assert not context.expired
    context.check()


def test_for_call_applies_call_timeout():
    child = CallContext(call_timeout=10).for_call()

    assert 0 < child.remaining() <= 10
    assert child.call_timeout == 10


def test_for_call_never_outlives_parent():
    parent = CallContext(timeout=2, call_timeout=60)

    assert parent.for_call().remaining() <= 2


def test_expired_context_raises():
    context = CallContext(timeout=0)

    assert context.expired
    with pytest.raises(CallCancelledError, match="deadline exceeded"):
        context.check()


def test_cancellation_is_shared_with_derived_contexts():
    token = CancellationToken()
    parent = CallContext(token, call_timeout=5)
    child = parent.for_call()

    token.cancel()

    assert parent.cancelled and child.cancelled
    with pytest.raises(CallCancelledError, match="operation cancelled"):
        child.check()


def test_token_wait_returns_when_cancelled():
    token = CancellationToken()
    assert token.wait(0) is False

    threading.Timer(0.05, token.cancel).start()

    assert token.wait(5) is True
    assert token.is_cancelled
