"""
Instrumentation Bridge.

============================================================
PURPOSE
============================================================
Interface to the external service that reaches into the
application's execution contexts, plus an HTTP client for it.

The bridge is a collaborator, not part of the engine:
- list contexts
- select a context
- evaluate an expression inside a context
- read console output / network activity
- take a structural snapshot

============================================================
CONTRACT
============================================================
- Every call may return data or raise a typed ProbeError
- ContextGone means the context no longer exists (never retried)
- ProbeUnavailable means the bridge could not be reached
- Callers wrap every call with a timeout

============================================================
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from .exceptions import ContextGone, InvalidMetric, ProbeUnavailable


logger = logging.getLogger(__name__)


# ============================================================
# BRIDGE INTERFACE
# ============================================================

class InstrumentationBridge(ABC):
    """Remote instrumentation bridge."""

    @abstractmethod
    async def list_contexts(self) -> List[Dict[str, Any]]:
        """Raw descriptors of every reachable context."""
        pass

    @abstractmethod
    async def select_context(self, ref: str) -> None:
        """Make a context the target of subsequent calls."""
        pass

    @abstractmethod
    async def evaluate_in_context(self, ref: str, expression: str) -> Any:
        """Evaluate an expression inside a context and return its value."""
        pass

    @abstractmethod
    async def read_console_output(self, ref: str) -> List[Dict[str, Any]]:
        """Console entries produced since the previous read."""
        pass

    @abstractmethod
    async def read_network_activity(self, ref: str) -> List[Dict[str, Any]]:
        """Network requests observed since the previous read."""
        pass

    @abstractmethod
    async def take_structural_snapshot(self, ref: str) -> Dict[str, Any]:
        """Structural (DOM/accessibility) snapshot of a context."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None


# ============================================================
# HTTP BRIDGE CLIENT
# ============================================================

class HttpInstrumentationBridge(InstrumentationBridge):
    """
    Bridge client speaking JSON over HTTP.

    Endpoints (relative to base_url):
        GET  /contexts
        POST /contexts/{ref}/select
        POST /contexts/{ref}/evaluate      {"expression": ...}
        GET  /contexts/{ref}/console
        GET  /contexts/{ref}/network
        GET  /contexts/{ref}/snapshot

    Responses are {"status": "ok", "data": ...}. HTTP 404/410 means the
    context is gone.
    """

    GONE_STATUSES = (404, 410)

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout: float = 5.0,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize bridge client.

        Args:
            base_url: Root URL of the bridge service
            session: Optional shared session (not closed by this client)
            request_timeout: Transport-level timeout in seconds
            headers: Extra headers sent with every request
        """
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = request_timeout
        self._headers = headers or {}
        self._request_count = 0
        self._error_count = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Accept": "application/json", **self._headers},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the owned session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _context_url(self, ref: str, action: str) -> str:
        return f"{self._base_url}/contexts/{quote(ref, safe='')}/{action}"

    async def _request(
        self,
        method: str,
        url: str,
        ref: Optional[str] = None,
        operation: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make a request and unwrap the data field."""
        session = await self._get_session()
        self._request_count += 1

        try:
            async with session.request(method, url, json=payload) as response:
                if response.status in self.GONE_STATUSES:
                    raise ContextGone(
                        f"Context {ref} is gone (HTTP {response.status})",
                        context_ref=ref,
                        operation=operation,
                    )
                if response.status >= 400:
                    body = await response.text()
                    self._error_count += 1
                    raise ProbeUnavailable(
                        f"Bridge returned HTTP {response.status}: {body[:200]}",
                        context_ref=ref,
                        operation=operation,
                    )
                body = await response.json()

        except aiohttp.ClientError as e:
            self._error_count += 1
            raise ProbeUnavailable(
                f"Bridge connection error: {e}",
                context_ref=ref,
                operation=operation,
                cause=e,
            )

        if not isinstance(body, dict) or body.get("status") != "ok":
            raise InvalidMetric(
                f"Malformed bridge response for {operation}",
                field="status",
                actual=body,
            )
        return body.get("data")

    async def list_contexts(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"{self._base_url}/contexts", operation="list_contexts")
        return list(data or [])

    async def select_context(self, ref: str) -> None:
        await self._request("POST", self._context_url(ref, "select"), ref, "select_context")

    async def evaluate_in_context(self, ref: str, expression: str) -> Any:
        return await self._request(
            "POST",
            self._context_url(ref, "evaluate"),
            ref,
            "evaluate_in_context",
            payload={"expression": expression},
        )

    async def read_console_output(self, ref: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", self._context_url(ref, "console"), ref, "read_console_output")
        return list(data or [])

    async def read_network_activity(self, ref: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", self._context_url(ref, "network"), ref, "read_network_activity")
        return list(data or [])

    async def take_structural_snapshot(self, ref: str) -> Dict[str, Any]:
        data = await self._request("GET", self._context_url(ref, "snapshot"), ref, "take_structural_snapshot")
        return dict(data or {})

    def stats(self) -> Dict[str, int]:
        return {
            "requests": self._request_count,
            "errors": self._error_count,
        }


__all__ = [
    "InstrumentationBridge",
    "HttpInstrumentationBridge",
]
