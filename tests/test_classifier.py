import httpx
import pytest

from crudclient.services.classifier import classify, kind_for_status
from crudclient.services.errors import (
    ApiError,
    FailureKind,
    NoRefreshCredential,
    RenewalFailed,
    RequestCancelled,
    RequestThrottled,
)


def _status_error(status: int, **kwargs) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "http://crud.test/api/v1/users")
    response = httpx.Response(status, request=request, **kwargs)
    return httpx.HTTPStatusError("boom", request=request, response=response)


@pytest.mark.parametrize(
    "status, kind",
    [
        (401, FailureKind.AUTHENTICATION_ERROR),
        (403, FailureKind.AUTHORIZATION_ERROR),
        (404, FailureKind.NOT_FOUND_ERROR),
        (409, FailureKind.CONFLICT_ERROR),
        (422, FailureKind.VALIDATION_ERROR),
        (500, FailureKind.SERVER_ERROR),
        (400, FailureKind.VALIDATION_ERROR),
        (429, FailureKind.VALIDATION_ERROR),
        (502, FailureKind.SERVER_ERROR),
        (503, FailureKind.SERVER_ERROR),
    ],
)
def test_status_decision_table(status, kind):
    failure = classify(_status_error(status))
    assert failure.kind is kind
    assert failure.status_code == status


def test_classify_is_total_over_all_status_codes():
    for status in range(100, 600):
        failure = classify(status)
        assert isinstance(failure, ApiError)
        assert failure.kind in FailureKind
        if status < 400:
            assert failure.kind is FailureKind.UNKNOWN_ERROR


@pytest.mark.parametrize(
    "raw",
    [
        ValueError("bad"),
        RuntimeError(),
        "plain string",
        None,
        object(),
        {"message": "dict"},
        True,
    ],
)
def test_unrecognized_shapes_degrade_to_unknown(raw):
    failure = classify(raw)
    assert failure.kind is FailureKind.UNKNOWN_ERROR
    assert failure.cause is raw


def test_unknown_keeps_original_message():
    assert classify(ValueError("disk on fire")).message == "disk on fire"


@pytest.mark.parametrize(
    "raw",
    [
        httpx.ConnectError("refused"),
        httpx.ReadTimeout("slow"),
        httpx.ConnectTimeout("slow"),
        ConnectionResetError("reset"),
        TimeoutError(),
    ],
)
def test_transport_failures_are_network_errors(raw):
    failure = classify(raw)
    assert failure.kind is FailureKind.NETWORK_ERROR
    assert failure.status_code is None


def test_transport_timeout_is_flagged_as_timeout():
    assert classify(httpx.ReadTimeout("slow")).is_timeout
    assert not classify(httpx.ConnectError("refused")).is_timeout


def test_http_408_is_flagged_as_timeout():
    failure = classify(_status_error(408))
    assert failure.kind is FailureKind.VALIDATION_ERROR
    assert failure.is_timeout


def test_message_from_string_body():
    failure = classify(_status_error(404, json={"message": "User not found"}))
    assert failure.message == "User not found"


def test_message_from_list_body_uses_first_element():
    body = {"message": ["email must be an email", "name is required"], "statusCode": 422}
    failure = classify(_status_error(422, json=body))
    assert failure.message == "email must be an email"


def test_non_json_body_falls_back_to_status_line():
    failure = classify(_status_error(500, text="<html>oops</html>"))
    assert failure.kind is FailureKind.SERVER_ERROR
    assert failure.message.startswith("HTTP 500")


def test_empty_message_list_falls_back_to_status_line():
    failure = classify(_status_error(400, json={"message": []}))
    assert failure.message.startswith("HTTP 400")


def test_response_objects_are_classified():
    failure = classify(httpx.Response(403, json={"message": "nope"}))
    assert failure.kind is FailureKind.AUTHORIZATION_ERROR
    assert failure.message == "nope"


@pytest.mark.parametrize(
    "raw, kind",
    [
        (NoRefreshCredential(), FailureKind.NO_REFRESH_CREDENTIAL),
        (RenewalFailed(), FailureKind.RENEWAL_FAILED),
        (RequestThrottled("search"), FailureKind.REQUEST_THROTTLED),
        (RequestCancelled("GET:users:"), FailureKind.REQUEST_CANCELLED),
    ],
)
def test_layer_exceptions_keep_their_kind(raw, kind):
    assert classify(raw).kind is kind


def test_existing_structured_failure_passes_through():
    failure = ApiError(FailureKind.CONFLICT_ERROR, "dup", status_code=409)
    assert classify(failure) is failure


def test_structured_failure_is_read_only():
    failure = classify(_status_error(404))
    with pytest.raises(AttributeError):
        failure.kind = FailureKind.SERVER_ERROR  # type: ignore[misc]


def test_kind_for_status_outside_http_range():
    assert kind_for_status(0) is FailureKind.UNKNOWN_ERROR
    assert kind_for_status(700) is FailureKind.UNKNOWN_ERROR
