# fleet_engine/monitor/broker_client.py

from typing import Optional
from urllib.parse import quote

import requests

from fleet_engine.core.errors import ExternalServiceUnavailable
from fleet_engine.core.models import QueueSnapshot


class BrokerClient:
    """RabbitMQ management API client (queue depth and consumers)."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        vhost: str = "/",
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = (username, password)
        self.vhost = vhost
        self.timeout = timeout
        self._session = session or requests.Session()

    def queue_url(self, queue: str) -> str:
        # The default vhost "/" must travel as %2F.
        return f"{self.base_url}/api/queues/{quote(self.vhost, safe='')}/{quote(queue, safe='')}"

    def queue_snapshot(self, queue: str, timeout: Optional[float] = None) -> QueueSnapshot:
        """
        Fetch message and consumer counts for one queue.

        Raises:
            ExternalServiceUnavailable: unreachable, HTTP error, empty or non-JSON body
        """
        url = self.queue_url(queue)
        try:
            response = self._session.get(url, auth=self.auth, timeout=timeout or self.timeout)
        except requests.exceptions.RequestException as e:
            raise ExternalServiceUnavailable(f"Broker API unreachable: {e}") from e

        if response.status_code != 200:
            raise ExternalServiceUnavailable(
                f"Broker API returned [{response.status_code}] for queue {queue}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ExternalServiceUnavailable(f"Broker API returned non-JSON body for queue {queue}") from e

        if not isinstance(body, dict):
            raise ExternalServiceUnavailable(f"Unexpected broker response for queue {queue}")

        return QueueSnapshot(
            queue_name=queue,
            message_count=_as_int(body.get("messages")),
            consumer_count=_as_int(body.get("consumers")),
        )

    def safe_snapshot(self, queue: str, timeout: Optional[float] = None) -> QueueSnapshot:
        """Like queue_snapshot, but failures become a placeholder snapshot."""
        try:
            return self.queue_snapshot(queue, timeout=timeout)
        except ExternalServiceUnavailable as e:
            return QueueSnapshot.unavailable(queue, str(e))

    def close(self) -> None:
        self._session.close()


def _as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None
