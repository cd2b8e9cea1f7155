"""
Error types shared by the adapters, the pipeline and the HTTP layer.

Every error carries the HTTP status it should surface with, so the app
can render all of them through one exception handler.
"""
from typing import Any, Optional


class StorybookError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail

    def to_dict(self) -> dict:
        body = {"message": self.message}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class ConfigurationError(StorybookError):
    """A provider credential or required setting is missing."""
    status_code = 500


class ValidationError(StorybookError):
    """The request is missing required fields; nothing was started."""
    status_code = 400


class NotFoundError(StorybookError):
    status_code = 404


class FeatureDisabledError(StorybookError):
    status_code = 503

    def __init__(self, feature: str):
        super().__init__(f"{feature} is disabled on this server.")
        self.feature = feature


class UpstreamProviderError(StorybookError):
    """Non-2xx, malformed or timed out response from an external provider."""
    status_code = 502

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(f"{provider}: {message}", status_code=status_code, detail=body)
        self.provider = provider
        self.body = body
