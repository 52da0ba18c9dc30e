import asyncio

import httpx
import pytest

from omnichat.providers.base_provider import (
    BadRequestError,
    BillingRequiredError,
    ContentRejected,
    ErrorClass,
    ModelNotFoundError,
    NetworkIssueError,
    PermissionDeniedError,
    ProviderAuthError,
    ProviderError,
    ProviderQuotaError,
    RequestCancelled,
    ServerError,
    classify_status,
    error_for_status,
    normalize_error,
    stream_error,
)


@pytest.mark.parametrize("status,cls", [
    (400, BadRequestError),
    (401, ProviderAuthError),
    (402, BillingRequiredError),
    (403, PermissionDeniedError),
    (404, ModelNotFoundError),
    (429, ProviderQuotaError),
    (503, ServerError),
])
def test_error_for_status(status, cls):
    err = error_for_status(status, "x")
    assert type(err) is cls
    assert err.code == str(status)


def test_status_classes():
    assert classify_status(None) is ErrorClass.FATAL
    assert classify_status(404) is ErrorClass.FATAL
    assert classify_status(418) is ErrorClass.FATAL
    assert classify_status(429) is ErrorClass.TRANSIENT
    assert classify_status(502) is ErrorClass.TRANSIENT


def test_special_classes():
    assert NetworkIssueError("x").error_class is ErrorClass.TRANSIENT
    assert NetworkIssueError("x").code == "Network"
    assert ContentRejected("SAFETY").error_class is ErrorClass.REJECTION
    assert RequestCancelled().error_class is ErrorClass.CANCELLED
    assert ProviderError("mystery").is_fatal


def test_normalize_httpx_errors():
    request = httpx.Request("GET", "https://example.com")
    response = httpx.Response(401, request=request)
    status_error = httpx.HTTPStatusError("nope", request=request, response=response)

    assert isinstance(normalize_error(status_error), ProviderAuthError)
    assert isinstance(normalize_error(httpx.ConnectError("refused", request=request)), NetworkIssueError)
    assert isinstance(normalize_error(httpx.ReadTimeout("slow", request=request)), NetworkIssueError)
    assert isinstance(normalize_error(asyncio.TimeoutError()), NetworkIssueError)


def test_normalize_uses_status_attribute():
    class SdkError(Exception):
        def __init__(self, code):
            super().__init__("sdk failure")
            self.code = code

    assert isinstance(normalize_error(SdkError(403)), PermissionDeniedError)
    assert isinstance(normalize_error(SdkError(500)), ServerError)


def test_normalize_sniffs_message():
    assert isinstance(normalize_error(Exception("429 RESOURCE_EXHAUSTED")), ProviderQuotaError)
    assert isinstance(normalize_error(Exception("Daily quota reached")), ProviderQuotaError)
    assert isinstance(normalize_error(Exception("got 402 from upstream")), BillingRequiredError)
    unknown = normalize_error(Exception("something odd"))
    assert type(unknown) is ProviderError
    assert unknown.is_fatal


def test_normalize_keeps_provider_errors():
    err = ModelNotFoundError("gone")
    assert normalize_error(err) is err


def test_stream_error_payloads():
    assert isinstance(stream_error({"code": 429, "message": "rate limited"}, "OpenAI"), ProviderQuotaError)
    assert stream_error({"message": "model 'x' not found"}, "Ollama").is_fatal
    assert stream_error("upstream returned 503", "Ollama").error_class is ErrorClass.TRANSIENT


@pytest.mark.parametrize("exc", [
    ConnectionResetError("Connection reset by peer"),
    ConnectionRefusedError("Connection refused"),
    OSError("Temporary failure in name resolution"),
])
def test_builtin_network_errors_are_transient(exc):
    err = normalize_error(exc, "Gemini")
    assert isinstance(err, NetworkIssueError)
    assert err.error_class is ErrorClass.TRANSIENT
