"""Error taxonomy shared by the routes, the database layer and the tutor pipelines."""


class ApiError(Exception):
    """Base class for errors surfaced to API callers as ``{"error": {code, message}}``."""

    code = "INTERNAL_SERVER_ERROR"
    status = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class BadRequest(ApiError):
    code = "BAD_REQUEST"
    status = 400


class Unauthorized(ApiError):
    code = "UNAUTHORIZED"
    status = 401


class Forbidden(ApiError):
    code = "FORBIDDEN"
    status = 403


class NotFound(ApiError):
    code = "NOT_FOUND"
    status = 404


class UpstreamError(ApiError):
    """The language model returned nothing usable (no content, bad JSON, wrong shape)."""


class DatabaseUnavailable(ApiError):
    """A write was attempted without a reachable database."""
