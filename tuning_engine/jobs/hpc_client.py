"""
HPC backend client.

Translates orchestrator actions into calls against the remote compute API
and normalizes its responses and errors:

| Action  | Request                    |
|---------|----------------------------|
| submit  | POST /jobs                 |
| status  | GET  /jobs/{id}/status     |
| logs    | GET  /jobs/{id}/logs       |
| metrics | GET  /jobs/{id}/metrics    |
| cancel  | POST /jobs/{id}/cancel     |

The backend is treated as slow and unreliable: every call carries a
timeout, idempotent calls are retried with exponential backoff, and
failures are mapped onto the RemoteError taxonomy.

Usage:
    client = HPCBackendClient(base_url="https://hpc.example.org/api", api_key="...")
    remote_id = client.submit(job)
    report = client.poll_status(remote_id)
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from tuning_engine.jobs.errors import (
    RemoteError,
    RemoteNotConfigured,
    RemoteNotFound,
    RemoteRejected,
    RemoteUnreachable,
)
from tuning_engine.jobs.models import Job, LogLine, MetricPoint, NormalizedStatus, Page
from tuning_engine.jobs.state_machine import normalize_status

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """HTTP retry settings for remote compute requests."""
    max_retries: int = 2
    backoff_seconds: float = 0.5
    timeout_seconds: float = 10.0


def _error_message(resp: requests.Response) -> str:
    """Best-effort error text from a JSON or plain-text body."""
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "").strip() or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        for key in ("error", "detail", "message", "reason"):
            if body.get(key):
                return str(body[key])
    return str(body)


def _page_items(body: Any, key: str) -> List[Dict[str, Any]]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        items = body.get(key, body.get("items", []))
        return items if isinstance(items, list) else []
    return []


def _page_cursor(body: Any) -> Optional[str]:
    if isinstance(body, dict) and body.get("cursor") not in (None, ""):
        return str(body["cursor"])
    return None


class HPCBackendClient:
    """
    Client for the remote compute API.

    Features:
    - Bearer credential on every request
    - Caller-supplied timeout per call (defaults from RetryPolicy)
    - Retries with exponential backoff for transient failures of
      idempotent calls; submit is never retried here
    - "Not configured" reported as RemoteNotConfigured, distinct from
      transport failure (RemoteUnreachable)
    """

    # Marker text of the boundary proxy's "no endpoint configured" response
    NOT_CONFIGURED_MARKERS = ("not configured",)

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: str = "",
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize client.

        Args:
            base_url: Remote API base URL; None/empty means not configured
            api_key: Bearer credential
            retry_policy: Retry/timeout settings
            session: Optional requests session (tests inject a mock)
            sleep: Sleep function used between retries
        """
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key or ""
        self.retry_policy = retry_policy or RetryPolicy()
        self.session = session or requests.Session()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "HPCBackendClient":
        return cls(
            base_url=settings.hpc_base_url,
            api_key=settings.hpc_api_key,
            retry_policy=RetryPolicy(
                max_retries=settings.hpc_max_retries,
                backoff_seconds=settings.hpc_backoff_seconds,
                timeout_seconds=settings.hpc_timeout_seconds,
            ),
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def close(self) -> None:
        self.session.close()

    # =========================================================================
    # Transport
    # =========================================================================

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _send(
        self,
        method: str,
        path: str,
        timeout: Optional[float],
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        """Single attempt; raises a RemoteError subclass for every failure."""
        if not self.configured:
            raise RemoteNotConfigured("HPC server not configured. Set HPC_BASE_URL.")

        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            resp = self.session.request(
                method=method,
                url=url,
                headers=self._headers(),
                params=params,
                json=json_body,
                timeout=timeout if timeout is not None else self.retry_policy.timeout_seconds,
            )
        except requests.Timeout as e:
            raise RemoteUnreachable(f"{method} {path} timed out") from e
        except requests.RequestException as e:
            raise RemoteUnreachable(f"{method} {path} failed: {e}") from e

        if resp.status_code < 400:
            return resp

        message = _error_message(resp)
        if resp.status_code == 503 and any(m in message.lower() for m in self.NOT_CONFIGURED_MARKERS):
            raise RemoteNotConfigured(message)
        if resp.status_code in (401, 403):
            raise RemoteNotConfigured(f"Credential rejected by HPC backend: {message}")
        if resp.status_code == 404:
            raise RemoteNotFound(message)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise RemoteUnreachable(f"Transient status={resp.status_code}: {message}")
        raise RemoteRejected(message, status_code=resp.status_code)

    def _request(
        self,
        method: str,
        path: str,
        timeout: Optional[float] = None,
        retry: bool = True,
        **kwargs,
    ) -> requests.Response:
        """Send with retries for RemoteUnreachable (when retry is True)."""
        attempts = self.retry_policy.max_retries + 1 if retry else 1
        last_err: Optional[RemoteError] = None
        for attempt in range(attempts):
            try:
                return self._send(method, path, timeout, **kwargs)
            except RemoteUnreachable as e:
                last_err = e
                if attempt + 1 >= attempts:
                    break
                sleep_for = self.retry_policy.backoff_seconds * (2 ** attempt)
                logger.debug("Retrying %s %s in %.2fs (%s)", method, path, sleep_for, e)
                self._sleep(sleep_for)
        raise last_err

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return (resp.text or "").strip()

    # =========================================================================
    # Actions
    # =========================================================================

    def submit(self, job: Job, timeout: Optional[float] = None) -> str:
        """
        Register a job with the remote compute system.

        Returns:
            Backend-assigned job id

        Raises:
            ValueError: job already has a remote id (must not submit twice)
            RemoteUnreachable, RemoteNotConfigured, RemoteRejected
        """
        if job.remote_job_id:
            raise ValueError(f"Job {job.id} already submitted as {job.remote_job_id}")

        body = {
            "job_id": job.id,
            "model": job.base_model,
            "corpus_id": job.corpus_ref,
            "config": job.config,
        }
        resp = self._request("POST", "/jobs", timeout=timeout, retry=False, json_body=body)
        payload = self._json(resp)

        remote_id = None
        if isinstance(payload, dict):
            for key in ("hpc_job_id", "remote_job_id", "job_id", "id"):
                if payload.get(key):
                    remote_id = str(payload[key])
                    break
        elif isinstance(payload, (str, int)) and str(payload):
            remote_id = str(payload)

        if not remote_id:
            raise RemoteRejected(f"Backend accepted job without an id: {payload!r}")
        logger.info("Submitted job %s to HPC backend as %s", job.id[:8], remote_id)
        return remote_id

    def poll_status(self, remote_job_id: str, timeout: Optional[float] = None) -> NormalizedStatus:
        """
        Fetch and normalize the backend status.

        Raises:
            RemoteUnreachable, RemoteNotFound, RemoteNotConfigured
        """
        resp = self._request("GET", f"/jobs/{remote_job_id}/status", timeout=timeout)
        payload = self._json(resp)

        if isinstance(payload, dict):
            raw = payload.get("status", payload.get("state", ""))
            progress = payload.get("progress")
            try:
                progress = int(float(progress)) if progress is not None else None
            except (TypeError, ValueError, OverflowError):
                progress = None
            slurm = payload.get("slurm_job_id")
            return NormalizedStatus(
                raw=str(raw),
                status=normalize_status(raw),
                progress=progress,
                error_detail=payload.get("error") or payload.get("error_message"),
                slurm_job_id=str(slurm) if slurm else None,
            )
        return NormalizedStatus(raw=str(payload), status=normalize_status(payload))

    def fetch_logs_since(
        self,
        remote_job_id: str,
        cursor: Optional[str] = None,
        job_id: Optional[str] = None,
        timeout: Optional[float] = None,
        start_sequence: Optional[int] = None,
    ) -> Page[LogLine]:
        """
        Fetch log lines after cursor, ascending by sequence.

        Lines without a sequence are numbered after the cursor when the
        cursor is numeric, otherwise after start_sequence (the last
        sequence already stored for the job). Malformed lines are skipped
        with a warning.
        """
        params = {"since": cursor} if cursor is not None else None
        resp = self._request("GET", f"/jobs/{remote_job_id}/logs", timeout=timeout, params=params)
        body = self._json(resp)

        next_seq = (start_sequence or 0) + 1
        if cursor is not None:
            try:
                next_seq = int(cursor) + 1
            except ValueError:
                pass

        lines = []
        for raw in _page_items(body, "logs"):
            if isinstance(raw, str):
                raw = {"message": raw}
            try:
                line = LogLine.from_dict(raw, job_id=job_id or remote_job_id, sequence=next_seq)
            except (ValueError, TypeError, AttributeError, OverflowError) as e:
                logger.warning("Skipping malformed log line for %s: %s", remote_job_id, e)
                continue
            lines.append(line)
            next_seq = line.sequence + 1

        lines.sort(key=lambda l: l.sequence)
        next_cursor = _page_cursor(body) or (str(lines[-1].sequence) if lines else cursor)
        return Page(items=lines, cursor=next_cursor)

    def fetch_metrics_since(
        self,
        remote_job_id: str,
        cursor: Optional[str] = None,
        job_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Page[MetricPoint]:
        """Fetch metric points after cursor, ascending by step."""
        params = {"since": cursor} if cursor is not None else None
        resp = self._request("GET", f"/jobs/{remote_job_id}/metrics", timeout=timeout, params=params)
        body = self._json(resp)

        points = []
        for raw in _page_items(body, "metrics"):
            try:
                points.append(MetricPoint.from_dict(raw, job_id=job_id or remote_job_id))
            except (ValueError, TypeError, AttributeError, OverflowError) as e:
                logger.warning("Skipping malformed metric for %s: %s", remote_job_id, e)

        points.sort(key=lambda p: p.step)
        next_cursor = _page_cursor(body) or (str(points[-1].step) if points else cursor)
        return Page(items=points, cursor=next_cursor)

    def cancel(self, remote_job_id: str, timeout: Optional[float] = None) -> bool:
        """
        Request cancellation of a remote job.

        Returns:
            True when the backend acknowledged

        Raises:
            RemoteUnreachable, RemoteNotFound, RemoteNotConfigured
        """
        self._request("POST", f"/jobs/{remote_job_id}/cancel", timeout=timeout)
        logger.info("Backend acknowledged cancel for %s", remote_job_id)
        return True
