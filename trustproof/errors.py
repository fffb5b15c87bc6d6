class TrustProofError(Exception):
    """Base class for errors raised by the certification pipeline."""


class OcrFailure(TrustProofError):
    """Text recognition itself failed (corrupt file, engine crash). Retryable from preprocessing."""


class ServiceUnavailable(TrustProofError):
    """A remote collaborator could not be reached or answered with an error."""

    def __init__(self, service: str, reason: str, status_code: int | None = None):
        super().__init__(f"{service} unavailable: {reason}")
        self.service = service
        self.reason = reason
        self.status_code = status_code


class OtpError(TrustProofError):
    pass


class InvalidTransition(TrustProofError):
    def __init__(self, state: str, action: str):
        super().__init__(f"'{action}' is not allowed in state '{state}'")
        self.state = state
        self.action = action


class ManualReviewRequired(TrustProofError):
    def __init__(self, confidence: float, threshold: float):
        super().__init__(
            f"extraction confidence {confidence:.0f} is below {threshold:.0f}; "
            "review the fields and acknowledge before confirming"
        )
        self.confidence = confidence
        self.threshold = threshold


class StaleResult(TrustProofError):
    """A result arrived for a document that is no longer the current one."""


class SessionNotFound(TrustProofError):
    pass


class InvalidUpload(TrustProofError):
    pass
