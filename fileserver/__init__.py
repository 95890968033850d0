"""
fileserver: a multi-threaded HTTP/1.1 file server on raw sockets.
"""

from .errors import HTTPError, IOFailure, MalformedRequest, MethodNotSupported, NotFound, UnsupportedMedia
from .mime import mime_type
from .server import ConnectionWorker, HTTPServer, main

__version__ = "1.0.0"
