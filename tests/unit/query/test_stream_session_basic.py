"""Unit tests for the streaming response state machine."""

import pytest
from structlog.testing import capture_logs

from llamawatch.query.stream import InvalidStreamTransition, StreamSession, StreamState


def test_happy_path():
    session = StreamSession()

    session.sources_sent()
    session.token_sent(done=False)
    session.token_sent(done=False)
    session.token_sent(done=True)

    assert session.state == StreamState.DONE
    assert session.tokens_sent == 3
    assert session.finished


def test_done_directly_after_sources():
    session = StreamSession()
    session.sources_sent()

    session.token_sent(done=True)

    assert session.state == StreamState.DONE


def test_token_before_sources_rejected():
    session = StreamSession()

    with pytest.raises(InvalidStreamTransition):
        session.token_sent(done=False)


def test_sources_only_once():
    session = StreamSession()
    session.sources_sent()

    with pytest.raises(InvalidStreamTransition):
        session.sources_sent()


def test_terminal_states_never_transition():
    session = StreamSession()
    session.sources_sent()
    session.token_sent(done=True)

    with pytest.raises(InvalidStreamTransition):
        session.token_sent(done=False)

    session.cancel()
    session.fail(RuntimeError("late"))
    assert session.state == StreamState.DONE


def test_cancel_from_streaming():
    session = StreamSession()
    session.sources_sent()
    session.token_sent(done=False)

    session.cancel()

    assert session.state == StreamState.CANCELLED
    assert session.finished


def test_fail_logs_and_truncates():
    session = StreamSession()
    session.sources_sent()

    with capture_logs() as logs:
        session.fail(ConnectionError("engine dropped"))

    assert session.state == StreamState.ERRORED
    assert logs[0]["event"] == "Error streaming response"
    assert logs[0]["error_type"] == "ConnectionError"
    assert logs[0]["log_level"] == "error"


def test_cancel_from_init():
    session = StreamSession()

    session.cancel()

    assert session.state == StreamState.CANCELLED
