"""HTTP client the agent uses to talk to the forit server.

Keeps the ETag of the last task list so repeated polls against an unchanged
corpus come back as ``304 Not Modified``. Every network or protocol problem
is raised as :class:`~forit.errors.TransportError`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import httpx

from .errors import TransportError
from .types import Task, TaskResult

DEFAULT_TIMEOUT = 30.0


@dataclass
class FetchResult:
    modified: bool
    etag: str = ""
    tasks: list[Task] = field(default_factory=list)


def normalize_server_url(server: str) -> str:
    server = server.strip().rstrip("/")
    if "://" not in server:
        server = f"http://{server}"
    return server


class ServerClient:
    def __init__(
        self,
        server: str,
        customer: str,
        environment: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = normalize_server_url(server)
        self.customer = customer
        self.environment = environment
        self._http = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ServerClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def fetch_tasks(self, hostname: str, etag: str = "") -> FetchResult:
        params = {"hostname": hostname, "customer": self.customer, "environment": self.environment}
        headers = {"If-None-Match": etag} if etag else {}
        try:
            response = self._http.get("/tasks", params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise TransportError(f"failed to fetch tasks from {self.base_url}: {exc}") from exc

        if response.status_code == httpx.codes.NOT_MODIFIED:
            return FetchResult(modified=False, etag=response.headers.get("ETag", etag))
        if response.status_code != httpx.codes.OK:
            raise TransportError(
                f"unexpected status code fetching tasks: {response.status_code} {response.text.strip()}",
                status=response.status_code,
            )
        try:
            payload = response.json()
            if not isinstance(payload, list):
                raise ValueError("expected a JSON array")
            tasks = [Task.from_dict(item) for item in payload]
        except (ValueError, KeyError, TypeError) as exc:
            raise TransportError(f"failed to decode tasks: {exc}") from exc
        return FetchResult(modified=True, etag=response.headers.get("ETag", ""), tasks=tasks)

    def post_results(self, hostname: str, results: Sequence[TaskResult]) -> None:
        params = {"hostname": hostname, "environment": self.environment}
        body = [result.to_dict() for result in results]
        try:
            response = self._http.post("/results", params=params, json=body)
        except httpx.HTTPError as exc:
            raise TransportError(f"failed to post results to {self.base_url}: {exc}") from exc
        if response.status_code != httpx.codes.OK:
            raise TransportError(
                f"unexpected status code posting results: {response.status_code}",
                status=response.status_code,
            )
