"""
Service-layer errors carrying an HTTP status

Services raise these instead of HTTPException so they stay usable outside a
request; route handlers translate them with to_http_exception().
"""

from fastapi import HTTPException


class ServiceError(Exception):
    """Error with the HTTP status the client should see."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.message)


class BadRequestError(ServiceError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class InternalServerError(ServiceError):
    status_code = 500
