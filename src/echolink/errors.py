"""Error taxonomy for session orchestration.

Terminal errors (capability denied, peer unavailable, registration failed)
abort the current session attempt and carry a user-facing message. Transient
errors (side-channel send failures, recoverable speech engine errors) are
absorbed at the component boundary that raised them.
"""


class EchoLinkError(Exception):
    """Base exception for session orchestration errors."""

    terminal: bool = False
    user_message: str = "The call could not be completed."

    def __init__(self, message: str = "", user_message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class CapabilityDenied(EchoLinkError):
    """Raised when microphone access is refused."""

    terminal = True
    user_message = "Microphone access is required to use EchoLink."


class PeerUnavailable(EchoLinkError):
    """Raised when the target session id is not registered or unreachable."""

    terminal = True
    user_message = "Channel ID not found or peer is offline."


class RegistrationFailed(EchoLinkError):
    """Raised when the host identity cannot be registered.

    Signals either an id collision or a signaling service fault. The caller
    may retry with a freshly generated id.
    """

    terminal = True
    user_message = "Could not open a secure channel. Please try again."


class SessionAborted(EchoLinkError):
    """Raised when a connection step completes after its session was torn down.

    Whatever the step acquired has already been released.
    """

    user_message = "Connection aborted."


class SideChannelSendFailure(EchoLinkError):
    """Raised when a side-channel message cannot be delivered."""


class ProtocolError(EchoLinkError, ValueError):
    """Raised when a side-channel payload cannot be decoded."""


# Engine error codes that end captioning for the rest of the session
TERMINAL_SPEECH_ERROR_CODES: frozenset[str] = frozenset(
    {"not-allowed", "permission-revoked", "service-not-allowed", "not-supported"}
)


class SpeechEngineError(EchoLinkError):
    """Error reported by the speech recognition engine.

    Attributes:
        code: Engine error code (e.g. "no-speech", "not-allowed")
    """

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        super().__init__(message or f"Speech recognition error: {code}")

    @property
    def terminal(self) -> bool:  # type: ignore[override]
        """Whether this error disables captioning for the session."""
        return self.code in TERMINAL_SPEECH_ERROR_CODES

    @property
    def user_message(self) -> str:  # type: ignore[override]
        if self.code == "no-speech":
            return "No speech detected."
        if self.code in ("not-allowed", "permission-revoked", "service-not-allowed"):
            return "Microphone blocked. Live captions are off."
        if self.code == "not-supported":
            return "Speech recognition is not supported. Live captions are off."
        return f"Speech recognition interrupted ({self.code})."
