"""Rejection taxonomy for run redemption and score submission.

Every error carries a stable, human-readable ``reason`` that is returned to the
client verbatim as ``{"success": false, "error": reason}``.
"""


class SubmissionError(Exception):
    status_code = 400

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InputError(SubmissionError):
    """Malformed or out-of-range field. Never retried automatically."""


class SessionError(SubmissionError):
    """Run token problem. Terminal: the client must start a new run."""


class InvalidSession(SessionError):
    def __init__(self, reason: str = "Invalid or expired run session"):
        super().__init__(reason)


class SessionExpired(SessionError):
    def __init__(self, reason: str = "Run session expired"):
        super().__init__(reason)


class SessionAlreadyUsed(SessionError):
    def __init__(self, reason: str = "Run session already used"):
        super().__init__(reason)


class TooFast(SessionError):
    def __init__(self, reason: str = "Game completed too quickly"):
        super().__init__(reason)


class ConsistencyError(SubmissionError):
    """Cross-field mismatch; a client bug and tampering are treated the same."""


class StorageError(SubmissionError):
    """Backing store failure. Retry the whole request with a new run token."""
    status_code = 500

    def __init__(self, reason: str = "Storage error"):
        super().__init__(reason)


class RateLimited(SubmissionError):
    status_code = 429
