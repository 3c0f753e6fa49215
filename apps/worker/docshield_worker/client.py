"""HTTP client for the job queue the worker pulls from."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests


@dataclass
class QueueError(Exception):
    """Raised when the job queue rejects a request."""

    message: str
    status_code: Optional[int] = None
    data: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        """Initialize the base exception with the message."""
        super().__init__(self.message)


class JobQueueClient:
    """Minimal JSON client for claiming, reporting and finishing jobs."""

    def __init__(self, url: str, worker_id: str, worker_token: str, timeout: int = 60) -> None:
        """Initialize the client with the queue base URL and worker credentials."""
        self.url = url.rstrip("/")
        self.worker_id = worker_id
        self.worker_token = worker_token
        self.timeout = timeout
        self.session = requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.worker_token}",
            "X-Worker-Id": self.worker_id,
            "User-Agent": "docshield-worker",
        }

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """Send a JSON request and unwrap the ``value`` of a success envelope."""
        response = self.session.request(
            method,
            f"{self.url}/{path.lstrip('/')}",
            json=payload,
            headers=self._headers(),
            timeout=self.timeout,
        )
        if response.status_code == 204:
            return None
        try:
            body = response.json()
        except ValueError as error:
            raise QueueError(
                f"Invalid response from job queue: {response.text[:200]}",
                response.status_code,
            ) from error
        if response.status_code >= 400 or body.get("status") != "success":
            raise QueueError(
                body.get("errorMessage") or f"Job queue error ({response.status_code})",
                response.status_code,
                body.get("errorData"),
            )
        return body.get("value")

    def claim_job(self) -> Optional[Dict[str, Any]]:
        """Claim the next pending job, or return None when the queue is empty."""
        return self._request("POST", "jobs/claim", {"workerId": self.worker_id})

    def report_progress(self, job_id: str, progress: int) -> None:
        """Report progress and renew the job lease."""
        self._request("POST", f"jobs/{job_id}/progress", {"progress": progress})

    def complete_job(
        self,
        job_id: str,
        outputs: List[Dict[str, Any]],
        metadata: Dict[str, Any],
        minutes_used: float,
        bytes_processed: int,
    ) -> None:
        self._request(
            "POST",
            f"jobs/{job_id}/complete",
            {
                "outputs": outputs,
                "metadata": metadata,
                "minutesUsed": minutes_used,
                "bytesProcessed": bytes_processed,
            },
        )

    def fail_job(
        self,
        job_id: str,
        error_code: str,
        error_message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload: Dict[str, Any] = {"errorCode": error_code, "errorMessage": error_message}
        if details:
            payload["details"] = details
        self._request("POST", f"jobs/{job_id}/fail", payload)

    def download_file(self, storage_id: str, target: Path) -> Path:
        """Stream a stored input file to ``target``."""
        url = self._request("GET", f"files/{storage_id}/download-url")
        if not url:
            raise RuntimeError("Missing download URL")
        with self.session.get(url, stream=True, timeout=120) as response:
            response.raise_for_status()
            with target.open("wb") as handle:
                for chunk in response.iter_content(chunk_size=1024 * 1024):
                    if chunk:
                        handle.write(chunk)
        return target

    def upload_file(self, path: Path, content_type: str) -> Dict[str, Any]:
        """Upload an output file and return its storage descriptor."""
        upload_url = self._request("POST", "files/upload-url")
        with path.open("rb") as handle:
            response = self.session.post(
                upload_url,
                data=handle,
                headers={"Content-Type": content_type},
                timeout=120,
            )
        response.raise_for_status()
        return {
            "storageId": response.json()["storageId"],
            "filename": path.name,
            "sizeBytes": path.stat().st_size,
        }
