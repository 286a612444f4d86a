"""
Error taxonomy for the corelink runtime.

Every public operation either returns a value or raises one of the
exceptions defined here. Each error carries enough context (core id,
request id, error kind) for the caller to log it and decide on
remediation.
"""

from typing import Any, Dict, Optional, Type


class CorelinkError(Exception):
    """Base class for all corelink errors."""

    def __init__(
        self,
        message: str,
        *,
        core_id: Optional[int] = None,
        request_id: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.core_id = core_id
        self.request_id = request_id

    @property
    def kind(self) -> str:
        """Error kind as transmitted on the wire."""
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a wire descriptor."""
        return {
            'kind': self.kind,
            'message': self.message,
            'core_id': self.core_id,
            'request_id': self.request_id,
        }

    def __str__(self) -> str:
        context = []
        if self.core_id is not None:
            context.append(f"core={self.core_id}")
        if self.request_id is not None:
            context.append(f"request={self.request_id}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class ConfigError(CorelinkError, ValueError):
    """Invalid runtime setup. Fatal to configure()."""


class EntropyError(CorelinkError):
    """The secure random source is unavailable."""


class TransportError(CorelinkError):
    """I/O failure while talking to a core."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        core_id: Optional[int] = None,
        request_id: Optional[str] = None
    ) -> None:
        super().__init__(message, core_id=core_id, request_id=request_id)
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['retryable'] = self.retryable
        return data


class SecurityError(CorelinkError):
    """
    Trust or cryptographic failure.

    Never retried automatically: recovering requires an explicit
    re-handshake by the caller.
    """


class TrustConflictError(SecurityError):
    """A trusted core presented a different fingerprint."""


class DecryptionError(SecurityError):
    """Authenticated decryption failed (wrong key or corrupted data)."""


class ReplayError(SecurityError):
    """A nonce was presented twice for the same core."""


class AuthenticationError(SecurityError):
    """A bootstrap proof did not verify."""


class HandshakeError(SecurityError):
    """The peer violated the handshake protocol."""


class MessageFormatError(CorelinkError, ValueError):
    """A frame or envelope could not be parsed."""


class RequestTimeoutError(CorelinkError, TimeoutError):
    """No response arrived within the allotted time."""


class NoCoreAvailableError(CorelinkError):
    """No core qualifies for dispatch."""


class HelperCrashError(CorelinkError):
    """A helper exited or stopped answering health checks."""


class UnknownCoreError(CorelinkError):
    """The core identifier has no registry entry or trust record."""


class UnknownRequestError(CorelinkError):
    """The request identifier is not tracked (never sent or purged)."""


class UnknownOperationError(CorelinkError):
    """The helper has no handler for the requested operation."""


class RemoteOperationError(CorelinkError):
    """The operation itself failed on the helper."""


_ERROR_TYPES: Dict[str, Type[CorelinkError]] = {
    cls.__name__: cls
    for cls in (
        CorelinkError, ConfigError, EntropyError, TransportError,
        SecurityError, TrustConflictError, DecryptionError, ReplayError,
        AuthenticationError, HandshakeError, MessageFormatError, RequestTimeoutError,
        NoCoreAvailableError, HelperCrashError, UnknownCoreError,
        UnknownRequestError, UnknownOperationError, RemoteOperationError,
    )
}


def error_from_descriptor(
    descriptor: Dict[str, Any],
    core_id: Optional[int] = None,
    request_id: Optional[str] = None
) -> CorelinkError:
    """
    Rebuild a typed error from a wire descriptor.

    Unknown kinds map to RemoteOperationError so a misbehaving helper can
    never inject an arbitrary exception type.
    """
    kind = str(descriptor.get('kind', 'RemoteOperationError'))
    message = str(descriptor.get('message', 'remote error'))
    error_type = _ERROR_TYPES.get(kind, RemoteOperationError)
    if kind not in _ERROR_TYPES:
        message = f"{kind}: {message}"
    if core_id is None:
        core_id = descriptor.get('core_id')
    if request_id is None:
        request_id = descriptor.get('request_id')
    if error_type is TransportError:
        return TransportError(
            message,
            retryable=bool(descriptor.get('retryable', False)),
            core_id=core_id,
            request_id=request_id
        )
    return error_type(message, core_id=core_id, request_id=request_id)
