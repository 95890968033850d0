#!/usr/bin/env python3
"""
Multi-threaded HTTP file server using socket programming.

The server implements a small HTTP/1.1 subset on raw sockets with:
- A fixed pool of worker threads fed from a connection queue
- File serving (GET, HEAD), form and JSON file lookup and multipart
  uploads (POST), file storage (PUT)
- One request per connection, framed by Content-Length only
- Path confinement to the document root
- Logging to the console and to a log file
"""

import enum
import logging
import os
import queue
import signal
import socket
import sys
import threading
from typing import Optional, Tuple

from .errors import MalformedRequest
from .handlers import RequestHandler
from .request import Request, parse_request
from .response import ResponseWriter

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080
DEFAULT_MAX_THREADS = 10
DEFAULT_DOCUMENT_ROOT = "resources"
DEFAULT_LOG_FILE = os.path.join("logs", "server.log")

LISTEN_BACKLOG = 50
ACCEPT_POLL_INTERVAL = 0.5
LINGER_SECONDS = 1.0
MAX_DRAIN_BYTES = 1024 * 1024

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(threadName)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ConnectionState(enum.Enum):
    ACCEPTED = "accepted"
    PARSING_REQUEST = "parsing_request"
    DISPATCHING = "dispatching"
    WRITING_RESPONSE = "writing_response"
    CLOSED = "closed"


class ConnectionWorker:
    """
    Serves one client connection end to end: parse, dispatch, respond, close.

    Nothing raised while serving escapes ``run``; the socket is closed on
    every path.

    Args:
        client_socket: Accepted client socket, owned exclusively by this worker
        client_address: Client address tuple (host, port)
        handler: Method dispatcher
        logger: Server logger
    """

    def __init__(self, client_socket: socket.socket, client_address: Tuple[str, int],
                 handler: RequestHandler, logger: logging.Logger):
        self.client_socket = client_socket
        self.client_address = client_address
        self.handler = handler
        self.logger = logger
        self.connection_id = f"{client_address[0]}:{client_address[1]}"
        self.state = ConnectionState.ACCEPTED
        self.request: Optional[Request] = None
        self.status_code: Optional[int] = None

    def _transition(self, state: ConnectionState) -> None:
        self.logger.debug(f"[{self.connection_id}] {self.state.name} -> {state.name}")
        self.state = state

    def run(self) -> None:
        self._transition(ConnectionState.PARSING_REQUEST)
        try:
            with self.client_socket.makefile("rb") as rfile, self.client_socket.makefile("wb") as wfile:
                writer = ResponseWriter(wfile)
                try:
                    self._process(rfile, writer)
                finally:
                    self.status_code = writer.status_code
                writer.flush()
            self._linger()
            self.logger.info(f"[{self.connection_id}] Connection completed with status {self.status_code}")
        except OSError as e:
            self.logger.error(f"[{self.connection_id}] Connection error: {e}")
        except Exception:
            self.logger.exception(f"[{self.connection_id}] Unexpected error, abandoning connection")
        finally:
            self._transition(ConnectionState.CLOSED)
            self.client_socket.close()

    def _process(self, rfile, writer: ResponseWriter) -> None:
        try:
            request = parse_request(rfile)
        except MalformedRequest as e:
            self.logger.warning(f"[{self.connection_id}] Invalid request: {e.message}")
            self._transition(ConnectionState.WRITING_RESPONSE)
            writer.send_error(e.status_code, e.message, e.include_body)
            return

        self.request = request
        self.logger.info(f"[{self.connection_id}] {request.method} {request.target}")
        self._transition(ConnectionState.DISPATCHING)
        try:
            self.handler.handle(request, writer)
        except Exception as e:
            if writer.head_sent:
                raise
            self.logger.error(f"[{self.connection_id}] Error processing request: {e}")
            writer.send_error(500, "Internal Server Error", request.method != "HEAD")
        self._transition(ConnectionState.WRITING_RESPONSE)

    def _linger(self) -> None:
        """
        Half-close the socket and read off whatever the client still sends.

        Closing with unread bytes in the receive buffer makes the kernel reset
        the connection, which can destroy the response before the client reads it.
        """
        try:
            self.client_socket.shutdown(socket.SHUT_WR)
            self.client_socket.settimeout(LINGER_SECONDS)
            drained = 0
            while drained < MAX_DRAIN_BYTES:
                data = self.client_socket.recv(65536)
                if not data:
                    break
                drained += len(data)
        except OSError as e:
            self.logger.debug(f"[{self.connection_id}] Linger ended: {e}")


class HTTPServer:
    """
    Multi-threaded HTTP server with a fixed-size worker pool.
    Connections beyond the pool size wait in the queue until a worker frees up.
    """

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                 max_threads: int = DEFAULT_MAX_THREADS, document_root: str = DEFAULT_DOCUMENT_ROOT,
                 upload_dir: Optional[str] = None, log_file: Optional[str] = DEFAULT_LOG_FILE):
        """
        Initialize the HTTP server with configuration parameters.

        Args:
            host: Server host address (default: 127.0.0.1)
            port: Server port number, 0 for any free port (default: 8080)
            max_threads: Number of worker threads (default: 10)
            document_root: Directory files are served from and stored to
            upload_dir: Directory for multipart uploads (default: uploads/ under the root)
            log_file: Log file path, None to log to the console only
        """
        self.host = host
        self.port = port
        self.max_threads = max_threads
        self.document_root = os.path.abspath(document_root)
        self.log_file = log_file
        self.server_socket: Optional[socket.socket] = None
        self.running = False
        self.ready = threading.Event()
        self.thread_pool = []
        self.connection_queue = queue.Queue()
        self.stats_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._stopped = False

        # Statistics tracking
        self.total_requests = 0
        self.total_connections = 0
        self.active_connections = 0

        self._setup_logging()
        self.handler = RequestHandler(self.document_root, upload_dir, self.logger)
        self._ensure_directories()

        self.logger.info(f"HTTP Server initialized: {host}:{port}, max_threads={max_threads}, "
                         f"document_root={self.document_root}")

    def _setup_logging(self):
        """Attach console and file handlers to the package logger, once per destination."""
        formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

        self.logger = logging.getLogger("fileserver")
        self.logger.setLevel(logging.INFO)
        # Prevent duplicate logs
        self.logger.propagate = False

        if not any(getattr(h, "name", None) == "console" for h in self.logger.handlers):
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.set_name("console")
            console_handler.setLevel(logging.INFO)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

        if self.log_file:
            log_path = os.path.abspath(self.log_file)
            if not any(isinstance(h, logging.FileHandler) and h.baseFilename == log_path
                       for h in self.logger.handlers):
                os.makedirs(os.path.dirname(log_path), exist_ok=True)
                file_handler = logging.FileHandler(log_path, mode='a')
                file_handler.setLevel(logging.INFO)
                file_handler.setFormatter(formatter)
                self.logger.addHandler(file_handler)

    def _ensure_directories(self):
        """Ensure the document root and upload directory exist."""
        for directory in (self.document_root, self.handler.upload_dir):
            os.makedirs(directory, exist_ok=True)
            self.logger.info(f"Ensured directory exists: {directory}")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully."""
        self.logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.stop()

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def start(self):
        """Bind, start the worker pool and run the accept loop until stopped."""
        try:
            self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.server_socket.bind((self.host, self.port))
            self.server_socket.listen(LISTEN_BACKLOG)
            self.server_socket.settimeout(ACCEPT_POLL_INTERVAL)
            self.port = self.server_socket.getsockname()[1]

            self.running = True
            self.logger.info(f"Server started on {self.host}:{self.port}")
            self.logger.info(f"Thread pool size: {self.max_threads}")

            for i in range(self.max_threads):
                thread = threading.Thread(target=self._worker_thread, name=f"Worker-{i+1}")
                thread.daemon = True
                thread.start()
                self.thread_pool.append(thread)

            self.ready.set()
            self.logger.info("Server ready to accept connections...")

            while self.running:
                try:
                    client_socket, client_address = self.server_socket.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if not self.running:
                        break
                    self.logger.error(f"Error accepting connection: {e}")
                    continue

                if not self.running:
                    client_socket.close()
                    break

                client_socket.settimeout(None)
                with self.stats_lock:
                    self.total_connections += 1

                self.connection_queue.put((client_socket, client_address))
                self.logger.info(f"New connection from {client_address[0]}:{client_address[1]}, "
                                 f"queue size: {self.connection_queue.qsize()}")

        except Exception as e:
            self.logger.error(f"Failed to start server: {e}")
            raise
        finally:
            self.stop()

    def _worker_thread(self):
        """Worker thread that serves connections from the queue until it gets a sentinel."""
        while True:
            item = self.connection_queue.get()
            try:
                if item is None:
                    return

                client_socket, client_address = item
                with self.stats_lock:
                    self.active_connections += 1

                worker = ConnectionWorker(client_socket, client_address, self.handler, self.logger)
                worker.run()

                with self.stats_lock:
                    self.active_connections -= 1
                    if worker.request is not None:
                        self.total_requests += 1
            finally:
                self.connection_queue.task_done()

    def stop(self, timeout: Optional[float] = None):
        """
        Stop the HTTP server gracefully.

        Closes the listening socket, lets queued and in-flight connections
        finish, then waits for the workers. Safe to call more than once.

        Args:
            timeout: Seconds to wait for each worker, None to wait indefinitely
        """
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True

        self.logger.info("Stopping HTTP server...")
        self.running = False

        if self.server_socket:
            try:
                self.server_socket.close()
            except OSError as e:
                self.logger.error(f"Error closing server socket: {e}")

        for _ in self.thread_pool:
            self.connection_queue.put(None)

        self.logger.info("Waiting for active connections to complete...")
        for thread in self.thread_pool:
            thread.join(timeout)

        # Connections that slipped in behind the sentinels
        while True:
            try:
                item = self.connection_queue.get_nowait()
            except queue.Empty:
                break
            if item is not None:
                item[0].close()

        with self.stats_lock:
            self.logger.info(f"Server stopped. Total requests: {self.total_requests}, "
                             f"Total connections: {self.total_connections}")


def main():
    """
    Main entry point for the HTTP server.

    Usage: python -m fileserver [port] [host] [max_threads] [document_root]
    """
    # Default values
    host = DEFAULT_HOST
    port = DEFAULT_PORT
    max_threads = DEFAULT_MAX_THREADS
    document_root = DEFAULT_DOCUMENT_ROOT

    # Parse command line arguments
    if len(sys.argv) >= 2:
        try:
            port = int(sys.argv[1])
        except ValueError:
            print("Error: Port must be an integer")
            sys.exit(1)

    if len(sys.argv) >= 3:
        host = sys.argv[2]

    if len(sys.argv) >= 4:
        try:
            max_threads = int(sys.argv[3])
        except ValueError:
            print("Error: Max threads must be an integer")
            sys.exit(1)

    if len(sys.argv) >= 5:
        document_root = sys.argv[4]

    # Validate arguments
    if not (1 <= port <= 65535):
        print("Error: Port must be between 1 and 65535")
        sys.exit(1)

    if max_threads < 1:
        print("Error: Max threads must be at least 1")
        sys.exit(1)

    # Create and start server
    try:
        server = HTTPServer(host, port, max_threads, document_root)
        server.install_signal_handlers()
        print(f"Starting HTTP server on {host}:{port} with {max_threads} threads, serving {document_root}...")
        print("Press Ctrl+C to stop the server")
        server.start()
    except KeyboardInterrupt:
        print("\nServer stopped by user")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
