"""Transient HTTP listener answering one ACME HTTP-01 probe."""

import contextvars
import socketserver
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import TypeVar
from urllib.parse import urlsplit

from autocert._logging import get_domain_extra, get_logger
from autocert.exceptions import BindError, ChallengeFailedError
from autocert.models import ChallengeResponse

logger = get_logger(__name__)

T = TypeVar("T")

VALIDATION_PORT = 80


class _ChallengeServer(HTTPServer):
    """HTTPServer carrying the single path/body pair it answers."""

    def __init__(self, address: tuple[str, int], response: ChallengeResponse):
        self.response = response
        self.probes = 0
        self._probes_lock = threading.Lock()
        super().__init__(address, _ChallengeHandler)

    def server_bind(self) -> None:
        # Skip HTTPServer's reverse lookup of the bound address
        socketserver.TCPServer.server_bind(self)
        self.server_name = str(self.server_address[0])
        self.server_port = self.server_address[1]

    def record_probe(self) -> None:
        with self._probes_lock:
            self.probes += 1


class _ChallengeHandler(BaseHTTPRequestHandler):
    """Serves only the expected challenge path; 404 for everything else."""

    server: _ChallengeServer

    def do_GET(self) -> None:
        response = self.server.response
        if urlsplit(self.path).path != response.path:
            self.send_error(404)
            return

        body = response.body.encode()
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)
        self.server.record_probe()
        logger.info(
            "Answered challenge probe",
            extra={"client": self.client_address[0], "path": response.path, **get_domain_extra()},
        )

    def log_message(self, format: str, *args: object) -> None:
        logger.debug(format % args)


class Listener:
    """Handle on a running challenge listener."""

    def __init__(self, server: _ChallengeServer):
        self._server = server

    @property
    def port(self) -> int:
        """Port actually bound (differs from the requested one for port 0)."""
        return self._server.server_address[1]

    @property
    def probes(self) -> int:
        """Number of requests answered with the expected body."""
        return self._server.probes


class ChallengeResponder:
    """Short-lived HTTP listener for HTTP-01 validation.

    The listener owns the port only for the duration of one attempt and
    always releases it before returning.

    Args:
        host: Address to bind ("" for all interfaces).
        port: Port to bind (80 for real validation).
        shutdown_timeout: Seconds to wait for the listener thread to exit.
    """

    def __init__(self, host: str = "", port: int = VALIDATION_PORT, shutdown_timeout: float = 5.0):
        self.host = host
        self.port = port
        self.shutdown_timeout = shutdown_timeout

    @contextmanager
    def serving(self, response: ChallengeResponse) -> Iterator[Listener]:
        """Run a listener answering response for the duration of the block.

        Raises:
            BindError: If the port cannot be bound.
        """
        try:
            server = _ChallengeServer((self.host, self.port), response)
        except OSError as e:
            raise BindError(
                f"Could not bind challenge listener on port {self.port}: {e}",
                host=self.host,
                port=self.port,
            ) from e

        thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name=f"autocert-challenge-{self.port}",
            daemon=True,
        )
        thread.start()
        listener = Listener(server)
        logger.debug(
            "Challenge listener started",
            extra={"port": listener.port, "path": response.path, **get_domain_extra()},
        )
        try:
            yield listener
        finally:
            server.shutdown()
            server.server_close()
            thread.join(timeout=self.shutdown_timeout)
            logger.debug(
                "Challenge listener stopped",
                extra={"port": listener.port, "probes": listener.probes, **get_domain_extra()},
            )

    def answer(
        self,
        response: ChallengeResponse,
        verdict: Callable[[threading.Event], T],
        timeout: float | None = None,
    ) -> T:
        """Serve response while verdict waits for the CA's decision.

        verdict is typically the adapter's "challenge ready" call; it blocks
        until the CA has validated (or rejected) the challenge. It receives
        a cancellation event which is set when the wait times out; the
        verdict must stop talking to the CA once it is set.

        Args:
            response: Path/body pair to serve.
            verdict: Blocking callable taking the cancellation event and
                returning the CA's verdict.
            timeout: Seconds to wait for verdict (None waits indefinitely).

        Returns:
            Whatever verdict returns.

        Raises:
            BindError: If the port cannot be bound.
            ChallengeFailedError: If the verdict does not arrive within timeout.
            Exception: Whatever verdict raises (ChallengeFailedError on rejection).
        """
        cancel = threading.Event()
        with self.serving(response):
            if timeout is None:
                return verdict(cancel)

            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="autocert-verdict")
            try:
                future = executor.submit(contextvars.copy_context().run, verdict, cancel)
                try:
                    return future.result(timeout=timeout)
                except FutureTimeoutError:
                    cancel.set()
                    done, _ = wait([future], timeout=self.shutdown_timeout)
                    if not done:
                        logger.warning(
                            "Verdict still running after cancellation",
                            extra={"path": response.path, **get_domain_extra()},
                        )
                    raise ChallengeFailedError(
                        f"No validation verdict within {timeout}s",
                        timed_out=True,
                        path=response.path,
                    ) from None
            finally:
                executor.shutdown(wait=False, cancel_futures=True)
