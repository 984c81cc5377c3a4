"""API documentation schemas."""

from ngurra_api.exceptions import ErrorKind
from ngurra_api.schemas.envelope import ApiSchema


class ErrorCodeInfo(ApiSchema):
    """One entry of the published error-code catalogue."""

    code: ErrorKind
    status: int
    default_message: str
