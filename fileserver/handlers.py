"""
Method handlers: GET, HEAD, POST and PUT against a document root.
"""

import datetime
import json
import logging
import os
import random
import re
import string
from typing import Callable, Dict, Optional
from urllib.parse import parse_qs

from .errors import HTTPError, IOFailure, MalformedRequest, MethodNotSupported, NotFound, UnsupportedMedia
from .mime import mime_type
from .multipart import MultipartDecoder, boundary_from_content_type
from .request import Request, resolve_path, resolve_target
from .response import ResponseWriter, http_date

DEFAULT_UPLOAD_DIR = "uploads"

FORM_URLENCODED = "application/x-www-form-urlencoded"
JSON = "application/json"
MULTIPART_FORM_DATA = "multipart/form-data"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class RequestHandler:
    """
    Dispatches a parsed request to the handler for its method.

    Handlers raise HTTPError subclasses for anything that is not a success;
    ``handle`` turns them into error responses as long as the head has not
    gone out yet.

    Args:
        document_root: Directory request targets are resolved against
        upload_dir: Where multipart file uploads are stored
            (default: ``uploads`` under the document root)
        logger: Logger to report through
    """

    def __init__(self, document_root: str, upload_dir: Optional[str] = None,
                 logger: Optional[logging.Logger] = None):
        self.document_root = os.path.abspath(document_root)
        self.upload_dir = os.path.abspath(upload_dir or os.path.join(self.document_root, DEFAULT_UPLOAD_DIR))
        self.logger = logger or logging.getLogger("fileserver.handlers")
        self._methods: Dict[str, Callable[[Request, ResponseWriter], None]] = {
            "GET": self.handle_get,
            "HEAD": self.handle_head,
            "POST": self.handle_post,
            "PUT": self.handle_put,
        }

    def handle(self, request: Request, writer: ResponseWriter) -> None:
        """
        Produce exactly one response for the request.

        Args:
            request: Parsed request
            writer: Response writer bound to the connection

        Raises:
            HTTPError: Only when the failure happens after the head was sent
        """
        handler = self._methods.get(request.method)
        try:
            if handler is None:
                raise MethodNotSupported()
            handler(request, writer)
        except HTTPError as e:
            if writer.head_sent:
                raise
            self.logger.warning(f"{request.method} {request.target} -> {e.status_code} {e.message}")
            include_body = e.include_body and request.method != "HEAD"
            writer.send_error(e.status_code, e.message, include_body)

    def handle_get(self, request: Request, writer: ResponseWriter) -> None:
        file_path = resolve_target(self.document_root, request.target)
        self._serve_file(file_path, writer)

    def handle_head(self, request: Request, writer: ResponseWriter) -> None:
        file_path = resolve_target(self.document_root, request.target)
        self._serve_file(file_path, writer, include_body=False)

    def handle_post(self, request: Request, writer: ResponseWriter) -> None:
        """
        Handle POST by body type.

        Form and JSON bodies name a file to serve as GET would; multipart
        bodies upload files.
        """
        content_type = request.content_type

        if content_type == FORM_URLENCODED:
            body = request.body.read_all().decode("utf-8", errors="replace")
            fields = parse_qs(body, keep_blank_values=True)
            filename = fields.get("filename", [""])[0]
            self._serve_named_file(filename, writer)

        elif content_type == JSON:
            try:
                data = json.loads(request.body.read_all())
            except ValueError as e:
                raise MalformedRequest(f"Bad Request: invalid JSON ({e})")
            if not isinstance(data, dict):
                raise MalformedRequest("Bad Request: JSON body must be an object")
            filename = data.get("filename")
            self._serve_named_file(filename if isinstance(filename, str) else "", writer)

        elif content_type == MULTIPART_FORM_DATA:
            self._store_uploads(request, writer)

        else:
            raise UnsupportedMedia()

    def handle_put(self, request: Request, writer: ResponseWriter) -> None:
        """
        Store the request body at the target path, replacing any existing file.

        Responds 201 when the file was created and 200 when it was replaced;
        the response carries the stored file so Content-Length matches its size.
        """
        file_path = resolve_target(self.document_root, request.target)
        expected = max(request.content_length, 0)

        try:
            os.makedirs(os.path.dirname(file_path), exist_ok=True)
            created = not os.path.exists(file_path)
            with open(file_path, "wb") as out:
                written = request.body.copy_to(out)
        except OSError as e:
            self.logger.error(f"Error writing file {file_path}: {e}")
            raise IOFailure("Internal Server Error: Failed to write file")

        if written < expected:
            self.logger.error(f"File write incomplete: {file_path} ({written} of {expected} bytes)")
            raise IOFailure("Internal Server Error: Failed to write file")

        self.logger.info(f"Stored {written} bytes in {file_path}")
        self._serve_file(file_path, writer, status_code=201 if created else 200)

    def _serve_named_file(self, filename: str, writer: ResponseWriter) -> None:
        if not filename or not filename.strip():
            raise MalformedRequest("Bad Request: Filename is required")
        self._serve_file(resolve_path(self.document_root, "/" + filename), writer)

    def _serve_file(self, file_path: str, writer: ResponseWriter, status_code: int = 200,
                    include_body: bool = True) -> None:
        """
        Send a file with its MIME type, size and modification time.

        Args:
            file_path: Absolute path of the file
            writer: Response writer
            status_code: Status for the success response
            include_body: False for HEAD
        """
        if not os.path.isfile(file_path):
            self.logger.warning(f"File not found: {file_path}")
            raise NotFound()

        try:
            f = open(file_path, "rb")
        except OSError as e:
            self.logger.error(f"Error opening file {file_path}: {e}")
            raise IOFailure()

        with f:
            stat = os.fstat(f.fileno())
            writer.send_header(status_code, mime_type(file_path), stat.st_size,
                               {"Last-Modified": http_date(stat.st_mtime)})
            if include_body:
                writer.send_file(f, stat.st_size)

        self.logger.info(f"Served {file_path} ({stat.st_size} bytes, status {status_code})")

    def _store_uploads(self, request: Request, writer: ResponseWriter) -> None:
        boundary = boundary_from_content_type(request.get_header("content-type"))

        try:
            os.makedirs(self.upload_dir, exist_ok=True)
        except OSError as e:
            self.logger.error(f"Error creating upload directory {self.upload_dir}: {e}")
            raise IOFailure()

        saved = 0
        for part in MultipartDecoder(request.body, boundary):
            if not part.is_file:
                self.logger.info(f"Form field {part.name!r} ({len(part.value)} bytes)")
                continue
            if not part.filename.strip():
                # Browsers send an empty filename for an unused file input
                continue

            file_path = os.path.join(self.upload_dir, self._upload_name(part.filename))
            try:
                with open(file_path, "wb") as out:
                    size = part.save(out)
            except HTTPError:
                self._discard(file_path)
                raise
            except OSError as e:
                self.logger.error(f"Error saving upload {file_path}: {e}")
                self._discard(file_path)
                raise IOFailure("Internal Server Error: Failed to save upload")

            saved += 1
            self.logger.info(f"Upload saved: {file_path} ({size} bytes)")

        self.logger.info(f"Multipart upload complete, {saved} file(s) saved")
        writer.send_header(201, "text/plain", 0)

    def _upload_name(self, filename: str) -> str:
        """Build a unique, filesystem-safe name for an uploaded file."""
        timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        random_id = ''.join(random.choices(string.ascii_lowercase + string.digits, k=8))
        base_name = os.path.basename(filename.replace("\\", "/")).strip()
        base_name = _UNSAFE_FILENAME_CHARS.sub("_", base_name).lstrip(".")
        return f"{timestamp}_{random_id}_{base_name or 'upload.bin'}"

    def _discard(self, file_path: str) -> None:
        try:
            os.remove(file_path)
        except OSError as e:
            self.logger.warning(f"Could not remove partial upload {file_path}: {e}")
