"""Client for reading job status from the cron-job.org API."""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


def _from_unix(value: Optional[int]) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


class CronJobClient:
    """Optional alternate status source backed by the external scheduler."""

    BASE_URL = "https://api.cron-job.org/jobs"

    def __init__(self, api_key: str, job_id: str, timeout: int = 10,
                 max_retries: int = 2, base_delay: float = 0.5):
        """
        Initialize the client.

        Args:
            api_key: cron-job.org API key
            job_id: Identifier of the job that triggers the refresh
            timeout: HTTP request timeout in seconds
            max_retries: Attempts per request before giving up
            base_delay: First backoff delay in seconds
        """
        self.api_key = api_key
        self.job_id = job_id
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay

    def fetch_job(self) -> Optional[Dict[str, Any]]:
        """
        Fetch raw job details.

        Returns:
            The ``jobDetails`` object, or None if it could not be fetched
        """
        url = f"{self.BASE_URL}/{self.job_id}"
        headers = {'Authorization': f"Bearer {self.api_key}"}

        for attempt in range(self.max_retries):
            try:
                response = requests.get(url, headers=headers, timeout=self.timeout)
                response.raise_for_status()
                return response.json().get('jobDetails')
            except requests.HTTPError as e:
                # Client errors will not fix themselves
                if e.response is not None and e.response.status_code < 500:
                    logger.error(f"Failed to fetch cron job status: {e}")
                    return None
                error = e
            except (requests.RequestException, ValueError) as e:
                error = e

            if attempt < self.max_retries - 1:
                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    f"Cron job status request failed (attempt {attempt + 1}/"
                    f"{self.max_retries}): {error}. Retrying in {delay} seconds..."
                )
                time.sleep(delay)
            else:
                logger.error(f"Error fetching cron job status: {error}")
        return None

    def fetch_status(self) -> Optional[Dict[str, Any]]:
        """
        Fetch job status in the same shape as the persisted status record.

        Returns:
            Status dict, or None so callers fall back to the stored record
        """
        job = self.fetch_job()
        if not job:
            return None

        enabled = bool(job.get('enabled'))
        last_status = job.get('lastStatus')
        if not enabled:
            status = 'disabled'
            message = 'Job is currently disabled on cron-job.org'
        elif last_status == 200:
            status = 'completed'
            message = 'Last run completed successfully'
        else:
            status = 'failed'
            message = f"Last run failed with status {last_status}"

        notification = job.get('notification') or {}
        return {
            'status': status,
            'lastRun': _from_unix(job.get('lastExecution')),
            'nextRun': _from_unix(job.get('nextExecution')),
            'message': message,
            'jobDetails': {
                'enabled': enabled,
                'title': job.get('title'),
                'url': job.get('url'),
                'schedule': job.get('schedule'),
                'lastStatus': last_status,
                'lastDuration': job.get('lastDuration'),
                'notifyOnFailure': notification.get('onFailure', False),
                'notifyOnSuccess': notification.get('onSuccess', False),
                'saveResponses': job.get('saveResponses'),
            },
        }
