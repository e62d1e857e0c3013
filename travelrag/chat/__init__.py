from .session import SessionConfig, SessionResult, SessionState, StreamingSession

__all__ = ["SessionConfig", "SessionResult", "SessionState", "StreamingSession"]
