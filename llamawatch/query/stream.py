"""State machine for one streaming RAG response."""

from enum import Enum

import structlog

logger = structlog.get_logger()


class StreamState(str, Enum):
    INIT = "init"
    SOURCES_SENT = "sources_sent"
    TOKEN_STREAMING = "token_streaming"
    DONE = "done"
    CANCELLED = "cancelled"
    ERRORED = "errored"


TERMINAL_STATES = frozenset({StreamState.DONE, StreamState.CANCELLED, StreamState.ERRORED})

_TRANSITIONS = {
    StreamState.INIT: {StreamState.SOURCES_SENT, StreamState.CANCELLED, StreamState.ERRORED},
    StreamState.SOURCES_SENT: {
        StreamState.TOKEN_STREAMING,
        StreamState.DONE,
        StreamState.CANCELLED,
        StreamState.ERRORED,
    },
    StreamState.TOKEN_STREAMING: {
        StreamState.TOKEN_STREAMING,
        StreamState.DONE,
        StreamState.CANCELLED,
        StreamState.ERRORED,
    },
}


class InvalidStreamTransition(Exception):
    """Raised when an event is not allowed in the current stream state."""

    def __init__(self, current: StreamState, target: StreamState):
        self.current = current
        self.target = target
        super().__init__(f"invalid stream transition: {current.value} -> {target.value}")


class StreamSession:
    """
    Tracks the lifecycle of a streaming response.

    The sources event must come first, tokens follow in order, and a token
    with done=True ends the stream. Terminal states never transition.
    """

    def __init__(self):
        self.state = StreamState.INIT
        self.tokens_sent = 0

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def _transition(self, target: StreamState):
        if target not in _TRANSITIONS.get(self.state, ()):
            raise InvalidStreamTransition(self.state, target)
        self.state = target

    def sources_sent(self):
        self._transition(StreamState.SOURCES_SENT)

    def token_sent(self, done: bool):
        """Record a token event; done=True moves the stream to DONE."""
        if done:
            self._transition(StreamState.DONE)
        else:
            self._transition(StreamState.TOKEN_STREAMING)
        self.tokens_sent += 1

    def cancel(self):
        """Mark the stream cancelled. A no-op once the stream has finished."""
        if not self.finished:
            self._transition(StreamState.CANCELLED)

    def fail(self, error: BaseException):
        """Mark the stream errored. A no-op once the stream has finished."""
        if self.finished:
            return
        self._transition(StreamState.ERRORED)
        logger.error("Error streaming response",
                     error=str(error),
                     error_type=type(error).__name__,
                     tokens_sent=self.tokens_sent)
