"""
Shared helpers for the unit suites.

``Routes`` is a tiny router for ``httpx.MockTransport``: tests register canned
answers per (method, path) and inspect the recorded requests afterwards.
"""
from __future__ import annotations

import json
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
from jose import jwt

from app.core.config import settings
from app.core.time_utils import epoch_seconds
from app.integrations.token_store import StoredToken

Answer = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class Routes:
    """Canned responses keyed by (method, host + path)."""

    def __init__(self):
        self._answers: Dict[Tuple[str, str], List[Answer]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, url: str, *answers: Answer) -> "Routes":
        """Queue answers for a route; the last one repeats once the queue is drained."""
        parsed = httpx.URL(url)
        self._answers.setdefault((method.upper(), f"{parsed.host}{parsed.path}"), []).extend(answers)
        return self

    def json(self, method: str, url: str, payload: Any, status_code: int = 200, **kwargs) -> "Routes":
        return self.add(method, url, httpx.Response(status_code, json=payload, **kwargs))

    def calls(self, method: str, url: str) -> List[httpx.Request]:
        parsed = httpx.URL(url)
        return [
            request for request in self.requests
            if request.method == method.upper()
            and request.url.host == parsed.host
            and request.url.path == parsed.path
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._answers.get((request.method, f"{request.url.host}{request.url.path}"))
        if not queue:
            return httpx.Response(404, json={"error": f"no route for {request.method} {request.url}"})
        answer = queue.pop(0) if len(queue) > 1 else queue[0]
        return answer(request) if callable(answer) else answer

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def form_body(request: httpx.Request) -> Dict[str, str]:
    return dict(httpx.QueryParams(request.content.decode("utf-8")))


def json_body(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content.decode("utf-8"))


def make_token(
    access_token: str = "access-1",
    refresh_token: Optional[str] = "refresh-1",
    expires_in: int = 3600,
    **kwargs,
) -> StoredToken:
    return StoredToken(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=epoch_seconds() + expires_in,
        **kwargs,
    )


def make_access_token(user_id: uuid.UUID, **claims) -> str:
    """A user JWT as the identity service would issue it."""
    payload = {"sub": str(user_id), "exp": epoch_seconds() + 600, **claims}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)
