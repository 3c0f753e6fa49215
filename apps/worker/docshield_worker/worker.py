"""Worker runtime for executing redaction and compression jobs."""

import logging
import os
import sys
import threading
import time
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any, Dict, List, Tuple

from .client import JobQueueClient, QueueError
from .compression import CompressionSearchError, compress_to_size, ghostscript_transform, parse_target_size
from .config import load_compression_settings, load_redaction_settings
from .patterns import build_patterns
from .redaction import output_stem, redact_batch
from .sandbox import SandboxError

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".zip": "application/zip",
}


def _strip_input_prefix(path: Path) -> Path:
    name = path.name
    if "_" in name:
        prefix, remainder = name.split("_", 1)
        if prefix.isdigit():
            name = remainder
    return Path(name)


def _content_type(path: Path) -> str:
    return CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")


class DocShieldWorker:
    """Poll the job queue and run redaction or compression jobs."""

    def __init__(self, client: JobQueueClient) -> None:
        """Initialize the worker around a queue client."""
        self.client = client
        self._client_lock = threading.Lock()

    def run(self) -> None:
        """Run the worker polling loop."""
        poll_interval = float(os.environ.get("DOCSHIELD_POLL_INTERVAL", "5"))
        while True:
            with self._client_lock:
                job = self.client.claim_job()
            if not job:
                time.sleep(poll_interval)
                continue
            self._process_job(job)

    def _process_job(self, job: Dict[str, Any]) -> None:
        """Process a single claimed job."""
        job_id = job["_id"]
        started = time.time()
        progress = {"value": 10}
        stop_event = threading.Event()
        heartbeat = threading.Thread(
            target=self._heartbeat, args=(job_id, progress, stop_event), daemon=True
        )
        heartbeat.start()
        try:
            self._report(job_id, 10)
            with TemporaryDirectory() as temp:
                temp_path = Path(temp)
                inputs = self._download_inputs(job.get("inputs") or [], temp_path)
                progress["value"] = 40
                self._report(job_id, 40)
                outputs, metadata = self._run_tool(job, inputs, temp_path)
                progress["value"] = 75
                self._report(job_id, 75)
                output_payload = self._upload_outputs(outputs)
            elapsed_minutes = max((time.time() - started) / 60, 0.01)
            bytes_processed = sum(item.get("sizeBytes", 0) for item in job.get("inputs") or [])
            with self._client_lock:
                self.client.complete_job(
                    job_id, output_payload, metadata, elapsed_minutes, bytes_processed
                )
            self._report(job_id, 100)
        except ValueError as error:
            self._safe_fail(job_id, "USER_INPUT_INVALID", str(error))
        except CompressionSearchError as error:
            self._safe_fail(job_id, "PROCESSING_FAILED", str(error), error.to_payload())
        except SandboxError as error:
            self._safe_fail(job_id, "PROCESSING_FAILED", str(error))
        except QueueError as error:
            self._safe_fail(
                job_id,
                "SERVICE_CAPACITY_TEMPORARY",
                "Processing failed. Please retry.",
                log_message=error.message,
            )
        except Exception as error:  # noqa: BLE001
            self._safe_fail(
                job_id,
                "SERVICE_CAPACITY_TEMPORARY",
                "Processing failed. Please retry.",
                log_message=str(error),
            )
        finally:
            stop_event.set()
            heartbeat.join(timeout=1)

    def _report(self, job_id: str, progress: int) -> None:
        with self._client_lock:
            self.client.report_progress(job_id, progress)

    def _safe_fail(
        self,
        job_id: str,
        error_code: str,
        error_message: str,
        details: Dict[str, Any] | None = None,
        log_message: str | None = None,
    ) -> None:
        """Report a failed job without crashing the worker."""
        logger.error("Job %s failed: %s", job_id, log_message or error_message)
        try:
            with self._client_lock:
                self.client.fail_job(job_id, error_code, error_message, details)
        except Exception as error:  # noqa: BLE001
            logger.error("Failed to report job failure for %s: %s", job_id, error)

    def _heartbeat(
        self, job_id: str, progress: Dict[str, int], stop_event: threading.Event
    ) -> None:
        """Heartbeat loop that renews the job lease."""
        interval = float(os.environ.get("DOCSHIELD_WORKER_HEARTBEAT_SECONDS", "25"))
        while not stop_event.wait(interval):
            try:
                self._report(job_id, progress["value"])
            except Exception as error:  # noqa: BLE001
                logger.warning("Heartbeat for %s failed: %s", job_id, error)

    def _download_inputs(self, inputs: List[Dict[str, Any]], temp: Path) -> List[Path]:
        """Download job inputs to a temporary directory."""
        paths: List[Path] = []
        for index, item in enumerate(inputs, start=1):
            filename = f"{index:02d}_{Path(item['filename']).name}"
            with self._client_lock:
                paths.append(self.client.download_file(item["storageId"], temp / filename))
        return paths

    def _run_tool(
        self, job: Dict[str, Any], inputs: List[Path], temp: Path
    ) -> Tuple[List[Path], Dict[str, Any]]:
        """
        Dispatch a job to its pipeline and return the output files and metadata.

        Raises:
            ValueError: When the job's inputs or config are invalid.
            RuntimeError: When the job specifies an unsupported tool.
        """
        tool = job["tool"]
        config = job.get("config")
        if not isinstance(config, dict):
            config = {}
        if tool == "redact-pii":
            return self._redact(inputs, temp, config)
        if tool == "compress-to-size":
            return self._compress_to_size(inputs, temp, config)
        raise RuntimeError(f"Unsupported tool: {tool}")

    def _redact(
        self, inputs: List[Path], temp: Path, config: Dict[str, Any]
    ) -> Tuple[List[Path], Dict[str, Any]]:
        patterns = build_patterns(config.get("patterns"))
        settings = load_redaction_settings()
        payload = [(_strip_input_prefix(path).name, path.read_bytes()) for path in inputs]
        output_dir = temp / "redacted"
        output_dir.mkdir(exist_ok=True)
        report = redact_batch(payload, output_dir, patterns, settings)
        metadata = {
            "files": len(report.results),
            "succeeded": report.succeeded,
            "failed": report.failed,
            "entries": [
                {
                    "filename": result.filename,
                    "entry": result.entry_name,
                    "status": result.status,
                    "message": result.message,
                    "boxes": result.boxes,
                }
                for result in report.results
            ],
        }
        return [report.zip_path], metadata

    def _compress_to_size(
        self, inputs: List[Path], temp: Path, config: Dict[str, Any]
    ) -> Tuple[List[Path], Dict[str, Any]]:
        if not inputs:
            raise ValueError("PDF file is required")
        target = config.get("target", config.get("targetKb"))
        target_bytes = parse_target_size(target, config.get("unit"))
        settings = load_compression_settings()
        stem = output_stem(_strip_input_prefix(inputs[0]).name)
        output_dir = temp / "compressed"
        output_dir.mkdir(exist_ok=True)
        output_path = output_dir / f"{stem}_compressed_{target_bytes // 1024}kb.pdf"
        transform = ghostscript_transform(settings.ghostscript, settings.timeout_seconds)
        path, metadata = compress_to_size(
            inputs[0], output_path, target_bytes, settings.presets, transform
        )
        return [path], metadata

    def _upload_outputs(self, outputs: List[Path]) -> List[Dict[str, Any]]:
        payload = []
        for output in outputs:
            with self._client_lock:
                payload.append(self.client.upload_file(output, _content_type(output)))
        return payload


def configure_logging(level: str) -> None:
    """Send worker logs to stdout at the given level."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        root.addHandler(handler)


def main() -> None:
    """Entrypoint for the worker process."""
    configure_logging(os.environ.get("DOCSHIELD_LOG_LEVEL", "INFO"))
    queue_url = os.environ.get("DOCSHIELD_QUEUE_URL")
    if not queue_url:
        raise RuntimeError("DOCSHIELD_QUEUE_URL is required")
    worker_id = os.environ.get("DOCSHIELD_WORKER_ID", "worker-local")
    worker_token = os.environ.get("DOCSHIELD_WORKER_TOKEN")
    if not worker_token:
        raise RuntimeError("DOCSHIELD_WORKER_TOKEN is required")
    DocShieldWorker(JobQueueClient(queue_url, worker_id, worker_token)).run()


if __name__ == "__main__":
    main()
