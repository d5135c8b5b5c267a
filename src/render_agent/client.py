"""
HTTP client for the Render Agent service.

Used by the CLI queue commands and by anything else that drives a running
agent from another process.
"""
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_URL = "http://127.0.0.1:9200/"

# Job statuses after which a render attempt has ended
FINISHED_STATUSES = ("completed", "failed")


class RenderQueueClient:
    """HTTP client for the render queue service"""

    def __init__(self, base_url: str = DEFAULT_SERVICE_URL, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        response = requests.request(method, url, timeout=self.timeout, **kwargs)
        response.raise_for_status()
        return response.json()

    def health(self) -> bool:
        try:
            return self._request("GET", "/health").get("status") == "healthy"
        except requests.RequestException:
            return False

    def get_status(self) -> Dict[str, Any]:
        """Get queue status summary"""
        return self._request("GET", "/status")

    def add_job(
        self,
        command: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        name: str = "",
        priority: Optional[int] = None,
        dependencies: Optional[List[str]] = None,
        scheduled_time: Optional[datetime] = None,
        output_path: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Queue a job from a command string or engine parameters"""
        payload: Dict[str, Any] = {
            "name": name,
            "dependencies": dependencies or [],
        }
        if command:
            payload["command"] = command
        if parameters:
            payload["parameters"] = parameters
        if priority is not None:
            payload["priority"] = priority
        if scheduled_time is not None:
            payload["scheduled_time"] = scheduled_time.isoformat()
        if output_path is not None:
            payload["output_path"] = output_path

        return self._request("POST", "/jobs", json=payload)

    def list_jobs(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"status": status} if status else None
        return self._request("GET", "/jobs", params=params)

    def get_job(self, job_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/jobs/{job_id}")

    def update_job(self, job_id: str, **changes: Any) -> Dict[str, Any]:
        return self._request("PATCH", f"/jobs/{job_id}", json=changes)

    def remove_job(self, job_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/jobs/{job_id}")

    def set_priority(self, job_id: str, priority: int) -> Dict[str, Any]:
        return self._request("POST", f"/jobs/{job_id}/priority", json={"priority": priority})

    def add_dependency(self, job_id: str, dependency_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/jobs/{job_id}/dependencies/{dependency_id}")

    def remove_dependency(self, job_id: str, dependency_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/jobs/{job_id}/dependencies/{dependency_id}")

    def schedule_job(self, job_id: str, when: datetime) -> Dict[str, Any]:
        return self._request("POST", f"/jobs/{job_id}/schedule", json={"scheduled_time": when.isoformat()})

    def cancel_schedule(self, job_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/jobs/{job_id}/schedule")

    def cancel_job(self, job_id: str) -> Dict[str, Any]:
        """Stop a running job"""
        return self._request("POST", f"/jobs/{job_id}/cancel")

    def reset_job(self, job_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/jobs/{job_id}/reset")

    def release_job(self, job_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/jobs/{job_id}/release")

    def start_queue(self) -> Dict[str, Any]:
        return self._request("POST", "/queue/start")

    def stop_queue(self) -> Dict[str, Any]:
        return self._request("POST", "/queue/stop")

    def get_settings(self) -> Dict[str, Any]:
        return self._request("GET", "/settings")

    def update_settings(self, **changes: Any) -> Dict[str, Any]:
        return self._request("PATCH", "/settings", json=changes)

    def get_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {"limit": limit} if limit is not None else None
        return self._request("GET", "/history", params=params)

    def clear_history(self) -> Dict[str, Any]:
        return self._request("DELETE", "/history")

    def get_events(self, since: int = 0) -> List[Dict[str, Any]]:
        return self._request("GET", "/events", params={"since": since})


def wait_for_job(
    client: RenderQueueClient,
    job_id: str,
    poll_interval: float = 2.0,
    timeout: float = 3600.0,
) -> Dict[str, Any]:
    """
    Poll until a job completes or fails.

    Args:
        client: RenderQueueClient instance
        job_id: Job ID to monitor
        poll_interval: Seconds between polls
        timeout: Maximum time to wait

    Returns:
        Final job dict

    Raises:
        TimeoutError: If the job doesn't finish within timeout
    """
    start_time = time.time()
    last_percentage = -1.0

    while True:
        if time.time() - start_time > timeout:
            raise TimeoutError(f"Job {job_id} did not finish within {timeout}s")

        try:
            job = client.get_job(job_id)
        except requests.RequestException as e:
            logger.warning(f"Failed to get job status: {e}")
            time.sleep(poll_interval)
            continue

        status = job.get("status", "unknown")
        progress = job.get("progress") or {}
        percentage = float(progress.get("percentage", 0.0))

        if percentage != last_percentage:
            logger.info(
                f"Job {job_id}: {status} - frame {progress.get('current_frame', 0)}"
                f"/{progress.get('total_frames', 0)} ({percentage:.1f}%)"
            )
            last_percentage = percentage

        if status in FINISHED_STATUSES:
            return job

        time.sleep(poll_interval)
