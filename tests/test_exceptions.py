"""Unit tests for the error taxonomy and ApiError."""

from datetime import UTC, datetime

import pytest

from ngurra_api.exceptions import (
    STATUS_BY_KIND,
    ApiError,
    ErrorKind,
    Errors,
    format_retry_after,
    kind_for_status,
    make_error,
)


@pytest.mark.parametrize(
    ("kind", "status"),
    [
        (ErrorKind.BAD_REQUEST, 400),
        (ErrorKind.UNAUTHORIZED, 401),
        (ErrorKind.FORBIDDEN, 403),
        (ErrorKind.NOT_FOUND, 404),
        (ErrorKind.CONFLICT, 409),
        (ErrorKind.VALIDATION_ERROR, 422),
        (ErrorKind.RATE_LIMITED, 429),
        (ErrorKind.PAYLOAD_TOO_LARGE, 413),
        (ErrorKind.INTERNAL_ERROR, 500),
        (ErrorKind.SERVICE_UNAVAILABLE, 503),
        (ErrorKind.DATABASE_ERROR, 500),
        (ErrorKind.EXTERNAL_SERVICE_ERROR, 502),
    ],
)
def test_every_kind_has_a_fixed_status(kind: ErrorKind, status: int) -> None:
    assert STATUS_BY_KIND[kind] == status
    assert make_error(kind).status_code == status


def test_status_table_covers_every_kind() -> None:
    assert set(STATUS_BY_KIND) == set(ErrorKind)


def test_status_table_is_read_only() -> None:
    with pytest.raises(TypeError):
        STATUS_BY_KIND[ErrorKind.CONFLICT] = 400  # type: ignore[index]


def test_not_found_message_names_the_resource() -> None:
    error = Errors.not_found("Mentor")
    assert error.message == "Mentor not found"
    assert error.code is ErrorKind.NOT_FOUND
    assert error.status_code == 404
    assert error.is_operational


def test_not_found_defaults_to_resource() -> None:
    assert make_error(ErrorKind.NOT_FOUND).message == "Resource not found"


def test_explicit_message_wins_over_default() -> None:
    assert Errors.forbidden("Mentors only").message == "Mentors only"


def test_external_service_error_names_the_service() -> None:
    error = Errors.external_service("payments")
    assert error.status_code == 502
    assert error.details == {"service": "payments"}
    assert error.message == "payments failed to respond"


def test_code_is_derived_from_status() -> None:
    assert ApiError("Gone fishing", status_code=404).code is ErrorKind.NOT_FOUND


def test_status_is_derived_from_code() -> None:
    assert ApiError(code=ErrorKind.CONFLICT).status_code == 409


def test_bare_error_is_internal() -> None:
    error = ApiError()
    assert error.code is ErrorKind.INTERNAL_ERROR
    assert error.status_code == 500
    assert error.message == "An unexpected error occurred"


def test_out_of_range_status_is_replaced() -> None:
    error = ApiError("nope", code=ErrorKind.FORBIDDEN, status_code=200)
    assert error.status_code == 403


@pytest.mark.parametrize(
    ("status", "kind"),
    [
        (404, ErrorKind.NOT_FOUND),
        (500, ErrorKind.INTERNAL_ERROR),
        (418, ErrorKind.INTERNAL_ERROR),
        (None, ErrorKind.INTERNAL_ERROR),
    ],
)
def test_kind_for_status(status: int | None, kind: ErrorKind) -> None:
    assert kind_for_status(status) is kind


def test_api_error_is_read_only() -> None:
    error = Errors.conflict()
    with pytest.raises(AttributeError):
        error.status_code = 200  # type: ignore[misc]
    assert error.status_code == 409


def test_api_error_can_still_be_raised_and_chained() -> None:
    with pytest.raises(ApiError) as excinfo:
        try:
            raise KeyError("missing")
        except KeyError as exc:
            raise Errors.internal() from exc
    assert isinstance(excinfo.value.__cause__, KeyError)


def test_format_retry_after_seconds() -> None:
    assert format_retry_after(42) == "42"
    assert format_retry_after(-3) == "0"


def test_format_retry_after_http_date() -> None:
    when = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
    assert format_retry_after(when) == "Fri, 02 Jan 2026 03:04:05 GMT"
