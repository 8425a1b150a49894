# File: src/relay/errors.py
# Domain errors raised by the relay layer. Each carries the HTTP status the API maps it to.


class RelayError(Exception):
    status_code = 500
    error = "Relay Error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.error)
        self.message = message or self.error


class ValidationError(RelayError):
    """Missing or malformed request fields; no state change."""
    status_code = 400
    error = "Validation Error"


class NotConnectedError(RelayError):
    """Send attempted while the session is not connected."""
    status_code = 401
    error = "Not Connected"


class CreationError(RelayError):
    """Credential load or connector construction failed; nothing was registered."""
    status_code = 500
    error = "Session Creation Failed"


class SendError(RelayError):
    """The connector failed to deliver a message; the session stays connected."""
    status_code = 500
    error = "Send Failed"


class ResetError(RelayError):
    status_code = 500
    error = "Reset Failed"


class CredentialStoreError(RelayError):
    status_code = 500
    error = "Credential Store Error"


class QrEncodingError(RelayError):
    status_code = 500
    error = "QR Encoding Failed"
