"""
zcapauth error taxonomy.

Every error carries a stable ``name``, an HTTP status code, optional
``details`` and a ``public`` flag. Only public errors may have their details
rendered to a client; everything raised inside the authorization path is
re-wrapped by :func:`wrap_authorization_error` before it leaves the service.
"""

from typing import Any, Dict, Optional


class ZcapError(Exception):
    """Base class for all zcapauth errors."""

    name = "OperationError"
    http_status = 500
    default_public = False

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        public: Optional[bool] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})
        self.public = self.default_public if public is None else public
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        """Render the error for a client, hiding non-public details."""
        data: Dict[str, Any] = {
            "name": self.name,
            "message": self.message,
            "type": f"zcapauth.{self.name}",
            "details": {"httpStatusCode": self.http_status},
        }
        if self.public:
            data["details"].update(self.details)
            if isinstance(self.cause, ZcapError) and self.cause.public:
                data["cause"] = self.cause.to_dict()
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ValidationError(ZcapError):
    """Malformed input."""

    name = "ValidationError"
    http_status = 400
    default_public = True


class DataError(ZcapError):
    """A signature or proof is structurally invalid or does not verify."""

    name = "DataError"
    http_status = 400


class ConstraintError(ZcapError):
    """A policy constraint is not (yet) satisfied."""

    name = "ConstraintError"
    http_status = 400
    default_public = True


class NotAllowedError(ZcapError):
    """Authorization or policy denial."""

    name = "NotAllowedError"
    http_status = 403


class NotFoundError(ZcapError):
    """A policy or other resource does not exist."""

    name = "NotFoundError"
    http_status = 404
    default_public = True


class DuplicateError(ZcapError):
    """A resource with the same identity already exists."""

    name = "DuplicateError"
    http_status = 409
    default_public = True


class InvalidStateError(ZcapError):
    """Optimistic concurrency conflict; re-fetch and retry."""

    name = "InvalidStateError"
    http_status = 409
    default_public = True


class OperationError(ZcapError):
    """Unexpected downstream failure."""

    name = "OperationError"
    http_status = 500


def wrap_authorization_error(error: BaseException) -> NotAllowedError:
    """
    Normalize any failure in the authorization path to a generic 403.

    The original error is kept as ``cause``. Its name and message are always
    exposed; its details only when it was explicitly marked public.

    Args:
        error: The underlying failure.

    Returns:
        A public NotAllowedError suitable for rendering.
    """
    if isinstance(error, ZcapError):
        cause = error
    else:
        # unknown errors only disclose a message, never their structure
        cause = NotAllowedError(str(error) or type(error).__name__, public=True, cause=error)
        cause.name = getattr(error, "name", None) or "NotAllowedError"
    if not cause.public:
        cause = _public_copy(cause)
    return NotAllowedError("Authorization error.", public=True, cause=cause)


def _public_copy(error: ZcapError) -> ZcapError:
    """Expose a private error's name and message but none of its details."""
    copy = ZcapError(error.message, public=True, cause=error)
    copy.name = error.name
    copy.http_status = error.http_status
    return copy
