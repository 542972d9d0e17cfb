"""Minimal HTTP layer over urllib.request.

Every outbound call in the bridge goes through HttpClient so that each one
carries a bounded timeout and so tests can swap in a fake transport.
Non-2xx responses are returned, not raised; callers classify them with
raise_for_status.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable

from posse_bridge.errors import ProtocolError, TransientError

DEFAULT_TIMEOUT = 30.0


@dataclass
class HttpRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None
    timeout: float = DEFAULT_TIMEOUT


@dataclass
class HttpResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)  # keys lower-cased
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)

    def json(self) -> Any:
        if not self.body:
            return {}
        return json.loads(self.body.decode("utf-8"))

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


Transport = Callable[[HttpRequest], HttpResponse]


def urllib_transport(request: HttpRequest) -> HttpResponse:
    """Send a request with urllib; connection-level failures become TransientError."""
    req = urllib.request.Request(
        request.url,
        data=request.body,
        headers=request.headers,
        method=request.method,
    )
    try:
        with urllib.request.urlopen(req, timeout=request.timeout) as resp:
            return HttpResponse(
                status=resp.status,
                headers={k.lower(): v for k, v in resp.headers.items()},
                body=resp.read(),
            )
    except urllib.error.HTTPError as exc:
        return HttpResponse(
            status=exc.code,
            headers={k.lower(): v for k, v in (exc.headers or {}).items()},
            body=exc.read(),
        )
    except urllib.error.URLError as exc:
        raise TransientError(f"Connection error for {request.url}: {exc.reason}") from exc
    except (TimeoutError, OSError) as exc:
        raise TransientError(f"Timed out or connection lost for {request.url}: {exc}") from exc


class HttpClient:
    """Builds requests, applies the timeout and hands them to the transport."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, transport: Transport | None = None) -> None:
        self.timeout = timeout
        self._transport = transport or urllib_transport

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        json_body: Any | None = None,
        form: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> HttpResponse:
        all_headers = {"Accept": "application/json"}
        all_headers.update(headers or {})
        body: bytes | None = None
        if json_body is not None:
            body = json.dumps(json_body).encode("utf-8")
            all_headers["Content-Type"] = "application/json"
        elif form is not None:
            body = urllib.parse.urlencode(form).encode("utf-8")
            all_headers["Content-Type"] = "application/x-www-form-urlencoded"
        if params:
            sep = "&" if "?" in url else "?"
            url = f"{url}{sep}{urllib.parse.urlencode(params)}"
        return self._transport(HttpRequest(
            method=method, url=url, headers=all_headers, body=body, timeout=self.timeout,
        ))

    def get(self, url: str, **kwargs: Any) -> HttpResponse:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> HttpResponse:
        return self.request("POST", url, **kwargs)


def error_code(response: HttpResponse) -> str:
    """Best-effort extraction of an OAuth/XRPC style `error` field."""
    try:
        data = response.json()
    except (ValueError, UnicodeDecodeError):
        return ""
    if isinstance(data, dict):
        return str(data.get("error", ""))
    return ""


def raise_for_status(response: HttpResponse, service: str) -> None:
    """Raise TransientError for 429/5xx and ProtocolError for other 4xx."""
    if response.ok:
        return
    if response.status == 429 or response.status >= 500:
        retry_after: float | None = None
        raw = response.header("retry-after")
        if raw:
            try:
                retry_after = float(raw)
            except ValueError:
                retry_after = None
        raise TransientError(
            f"{service} error {response.status}: {response.text[:200]}",
            status=response.status,
            retry_after=retry_after,
        )
    raise ProtocolError(response.status, response.text, error_code(response))
