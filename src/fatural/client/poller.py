"""
Client-side completion polling for receipt jobs.

The server answers the trigger request as soon as the job is `processing`; a
client then polls the status endpoint until the job is terminal and fetches
the line items once it is `processed`.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from fatural.core.logging import get_logger, log_event

logger = get_logger(__name__)


class PollError(RuntimeError):
    pass


class JobFailedError(PollError):
    def __init__(self, job_id: str, error_code: str | None, error_detail: str | None) -> None:
        super().__init__(f"Job {job_id} failed: {error_code or 'unknown'}")
        self.job_id = job_id
        self.error_code = error_code
        self.error_detail = error_detail


class PollTimeoutError(PollError):
    pass


class PollNetworkError(PollError):
    pass


class PollRequestError(PollError):
    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class JobStatus:
    job_id: str
    state: str
    error_code: str | None = None
    error_detail: str | None = None
    terminal_at: str | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> JobStatus:
        return cls(
            job_id=str(data.get("job_id") or ""),
            state=str(data.get("state") or ""),
            error_code=data.get("error_code"),
            error_detail=data.get("error_detail"),
            terminal_at=data.get("terminal_at"),
        )


class JobStatusPoller:
    def __init__(
        self,
        client: httpx.Client,
        *,
        interval_seconds: float = 3.0,
        max_attempts: int = 60,
        max_consecutive_errors: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if max_consecutive_errors < 1:
            raise ValueError("max_consecutive_errors must be >= 1")
        self._client = client
        self._interval = interval_seconds
        self._max_attempts = max_attempts
        self._max_consecutive_errors = max_consecutive_errors
        self._sleep = sleep

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> JobStatusPoller:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @staticmethod
    def _json_body(resp: httpx.Response, what: str) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise PollNetworkError(f"{what} endpoint returned invalid JSON") from e
        if not isinstance(data, dict):
            raise PollNetworkError(f"{what} endpoint returned an unexpected body")
        return data

    def wait(self, job_id: str) -> JobStatus:
        """Poll until the job is terminal. Returns the `processed` status."""
        errors = 0
        for attempt in range(1, self._max_attempts + 1):
            if attempt > 1:
                self._sleep(self._interval)
            try:
                resp = self._client.get(f"/api/jobs/{job_id}/status")
            except httpx.HTTPError as e:
                errors += 1
                log_event(
                    logger,
                    "poll.network_error",
                    job_id=job_id,
                    attempt=attempt,
                    consecutive_errors=errors,
                    error_type=type(e).__name__,
                )
                if errors >= self._max_consecutive_errors:
                    raise PollNetworkError(
                        f"Status endpoint unreachable after {errors} attempts"
                    ) from e
                continue

            if resp.status_code in {401, 403, 404}:
                raise PollRequestError(
                    f"Status request rejected (HTTP {resp.status_code})",
                    status_code=resp.status_code,
                )
            if resp.status_code >= 500:
                errors += 1
                log_event(
                    logger,
                    "poll.server_error",
                    job_id=job_id,
                    attempt=attempt,
                    consecutive_errors=errors,
                    status_code=resp.status_code,
                )
                if errors >= self._max_consecutive_errors:
                    raise PollNetworkError(f"Status endpoint returned HTTP {resp.status_code}")
                continue
            if resp.status_code >= 400:
                raise PollRequestError(
                    f"Status request failed (HTTP {resp.status_code})",
                    status_code=resp.status_code,
                )

            errors = 0
            status = JobStatus.from_json(self._json_body(resp, "Status"))
            if status.state == "processed":
                log_event(logger, "poll.finished", job_id=job_id, attempts=attempt)
                return status
            if status.state == "failed":
                raise JobFailedError(job_id, status.error_code, status.error_detail)

        raise PollTimeoutError(f"Job {job_id} not finished after {self._max_attempts} attempts")

    def fetch_result(self, job_id: str) -> list[dict[str, Any]]:
        try:
            resp = self._client.get(f"/api/jobs/{job_id}/result")
        except httpx.HTTPError as e:
            raise PollNetworkError("Result endpoint unreachable") from e
        if resp.status_code >= 400:
            raise PollRequestError(
                f"Result request failed (HTTP {resp.status_code})", status_code=resp.status_code
            )
        return list(self._json_body(resp, "Result").get("items") or [])

    def wait_for_result(self, job_id: str) -> list[dict[str, Any]]:
        self.wait(job_id)
        return self.fetch_result(job_id)


def create_poller(base_url: str, token: str, **kwargs: Any) -> JobStatusPoller:
    transport = kwargs.pop("transport", None)
    client = httpx.Client(
        base_url=base_url,
        headers={"Authorization": f"Bearer {token}"},
        timeout=kwargs.pop("timeout", 30.0),
        transport=transport,
    )
    return JobStatusPoller(client, **kwargs)
