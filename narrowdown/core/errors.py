class UpstreamError(Exception):
    """A third-party call failed (network error, 5xx, unexpected status)."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ConfigurationError(Exception):
    """A required key or endpoint is not configured. Not retried."""


class ProxyError(UpstreamError):
    """
    Error returned by the TMDB proxy.

    `code` is the `error` field of the JSON body when the proxy sent one
    (`unsupported_endpoint`, `invalid_endpoint_params`, `tmdb_key_not_configured`, ...).
    """

    PARAMETER_ERROR_CODES = frozenset({"unsupported_endpoint", "invalid_endpoint_params"})

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        body: str | None = None,
        endpoint: str | None = None,
    ):
        super().__init__(message, status=status)
        self.code = code
        self.body = body
        self.endpoint = endpoint

    @property
    def is_parameter_error(self) -> bool:
        return self.code in self.PARAMETER_ERROR_CODES

    def summary(self) -> str:
        parts = []
        if self.status is not None:
            parts.append(f"status {self.status}")
        if self.code:
            parts.append(f'code "{self.code}"')
        body = (self.body or "").strip()
        if body:
            parts.append(f"body: {body[:120]}{'…' if len(body) > 120 else ''}")
        return ", ".join(parts) if parts else "unknown error"


def summarize_error(err: BaseException | str | None) -> str:
    """Human readable one-liner for status messages."""
    if err is None:
        return "Unknown error"
    if isinstance(err, str):
        return err
    message = str(err).strip()
    if message:
        return message
    status = getattr(err, "status", None)
    if isinstance(status, int):
        return f"Request failed with status {status}"
    return "Unknown error"


class StorageError(Exception):
    """A user document could not be read or written."""
