"""Exception taxonomy shared by the engine, gateway and orchestrator."""


class VoiceError(Exception):
    """Base class for all conversation errors."""


class CaptureError(VoiceError):
    """Capability errors: terminal for the current capture attempt."""


class CaptureUnsupported(CaptureError):
    def __init__(self, message: str = "Speech capture is not available"):
        super().__init__(message)


class CapturePermissionDenied(CaptureError):
    def __init__(self, message: str = "Microphone access was denied"):
        super().__init__(message)


class ServiceError(VoiceError):
    """An external service answered with a failure or a malformed payload."""


class CompletionError(ServiceError):
    pass


class SynthesisError(ServiceError):
    pass


class TransportError(VoiceError):
    """Realtime session failed to establish or dropped."""
