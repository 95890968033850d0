"""
Error taxonomy for request handling.

Every error raised while serving one connection is an HTTPError carrying the
status code, the message shown to the client and whether an HTML body is sent.
"""

from typing import Optional


class HTTPError(Exception):
    """Base class for errors that map onto an HTTP error response."""

    status_code = 500
    include_body = True
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None):
        if message is None:
            message = self.default_message
        super().__init__(message)
        self.message = message


class MalformedRequest(HTTPError):
    status_code = 400
    default_message = "Bad Request"


class NotFound(HTTPError):
    status_code = 404
    default_message = "Not Found"


class MethodNotSupported(HTTPError):
    status_code = 405
    include_body = False
    default_message = "Method Not Allowed"


class UnsupportedMedia(HTTPError):
    status_code = 415
    include_body = False
    default_message = "Unsupported Media Type"


class IOFailure(HTTPError):
    status_code = 500
    default_message = "Internal Server Error"
