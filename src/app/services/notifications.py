from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from src.app.domain.errors import NotificationDeliveryError

logger = logging.getLogger(__name__)

ONESIGNAL_API_URL = os.getenv("ONESIGNAL_API_URL", "https://api.onesignal.com/notifications")
DEFAULT_TIMEOUT_SECONDS = 10.0


class Notifier(ABC):
    @abstractmethod
    def send_summary_ready(self, user_id: str, job_id: str, title: Optional[str] = None) -> None:
        """
        Tell the owner that a lecture summary is ready.

        Raises:
            NotificationDeliveryError: If the push provider rejects or drops the request
        """
        pass


class OneSignalNotifier(Notifier):
    """
    Push delivery through the OneSignal REST API.

    Users are addressed by external id (the app logs the signed-in user id
    into OneSignal). The job id is used as the collapse id so a redelivered
    notification replaces the earlier one on the device.
    """

    def __init__(
        self,
        app_id: Optional[str] = None,
        api_key: Optional[str] = None,
        api_url: str = ONESIGNAL_API_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.app_id = app_id or os.getenv("ONESIGNAL_APP_ID", "")
        self.api_key = api_key or os.getenv("ONESIGNAL_API_KEY", "")
        self.api_url = api_url
        self.timeout = timeout
        self._transport = transport

    def build_payload(self, user_id: str, job_id: str, title: Optional[str] = None) -> dict:
        body = f"Your summary for \"{title}\" is ready." if title else "Your khutbah summary is ready."
        return {
            "app_id": self.app_id,
            "include_aliases": {"external_id": [user_id]},
            "target_channel": "push",
            "headings": {"en": "Summary ready"},
            "contents": {"en": body},
            "data": {"lectureId": job_id},
            "collapse_id": job_id,
        }

    def send_summary_ready(self, user_id: str, job_id: str, title: Optional[str] = None) -> None:
        if not self.app_id or not self.api_key:
            raise NotificationDeliveryError(job_id, "OneSignal is not configured")

        headers = {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(self.api_url, json=self.build_payload(user_id, job_id, title), headers=headers)
                response.raise_for_status()
        except httpx.TimeoutException as error:
            raise NotificationDeliveryError(job_id, f"timed out after {self.timeout}s") from error
        except httpx.HTTPStatusError as error:
            status_code = error.response.status_code
            raise NotificationDeliveryError(job_id, f"HTTP {status_code}", status_code=status_code) from error
        except httpx.HTTPError as error:
            raise NotificationDeliveryError(job_id, str(error)) from error

        logger.info("Summary notification sent: user=%s, lecture=%s", user_id, job_id)
