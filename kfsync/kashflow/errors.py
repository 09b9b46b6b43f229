"""Exceptions raised by the KashFlow client and session-token flow."""

from typing import Any


class KashFlowError(Exception):
    """Base class for KashFlow failures."""


class KashFlowAuthError(KashFlowError):
    """No usable session token could be obtained."""


class KashFlowApiError(KashFlowError):
    """A KashFlow request returned a non-2xx response after retries.

    ``error_code`` and ``api_message`` come from the structured error body
    (``{"Error": "...", "Message": "..."}``) when the API sends one.
    """

    def __init__(
        self,
        status: int,
        message: str,
        *,
        error_code: str | None = None,
        api_message: str | None = None,
        data: Any = None,
    ):
        super().__init__(message)
        self.status = status
        self.error_code = error_code
        self.api_message = api_message
        self.data = data

    @classmethod
    def from_response(cls, response) -> "KashFlowApiError":
        data: Any
        try:
            data = response.json()
        except ValueError:
            data = response.text or None

        error_code = None
        api_message = None
        if isinstance(data, dict):
            error_code = data.get("Error") or data.get("error") or None
            api_message = data.get("Message") or data.get("message") or None

        detail = api_message or error_code or response.reason_phrase or "request failed"
        return cls(
            response.status_code,
            f"KashFlow {response.request.method} {response.request.url.path} "
            f"returned {response.status_code}: {detail}",
            error_code=error_code,
            api_message=api_message,
            data=data,
        )

    @property
    def is_not_found(self) -> bool:
        return self.status == 404
