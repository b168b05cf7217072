"""Logging utilities for the autocert library."""

import logging
import time
from contextvars import ContextVar, Token

# Silent unless the application configures logging
_root = logging.getLogger("autocert")
_root.addHandler(logging.NullHandler())

# Domain currently being processed by a lifecycle flow
_current_domain: ContextVar[str | None] = ContextVar("current_domain", default=None)


def set_domain(domain: str | None) -> Token[str | None]:
    """Set the current domain for logging context.

    Args:
        domain: Domain being processed.

    Returns:
        Token to reset the context.
    """
    return _current_domain.set(domain)


def reset_domain(token: Token[str | None]) -> None:
    """Reset the domain context.

    Args:
        token: Token from set_domain() call.
    """
    _current_domain.reset(token)


def get_domain_extra() -> dict[str, str]:
    """Get domain info for log extra fields.

    Returns:
        Dict with 'domain', or empty dict outside of a flow.
    """
    domain = _current_domain.get()
    if domain is None:
        return {}
    return {"domain": domain}


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the autocert namespace."""
    return logging.getLogger(name)


class Timer:
    """Context manager for timing operations.

    Usage:
        with Timer() as t:
            # do work
        print(f"Elapsed: {t.elapsed_ms}ms")
    """

    def __init__(self) -> None:
        self.elapsed_ms: float = 0
        self._start: float = 0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000
