import logging
from datetime import datetime

import httpx

from scheduling_backend.core import config
from scheduling_backend.scheduling.errors import ExternalCollaboratorError

logger = logging.getLogger(__name__)


class CalendarClient:
    """Client for the remote calendar service that owns session events."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url if base_url is not None else config.CALENDAR_SERVICE_URL).rstrip('/')
        self.token = token if token is not None else config.CALENDAR_SERVICE_TOKEN
        self.timeout = timeout or config.COLLABORATOR_TIMEOUT_SECONDS
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {'Authorization': f'Bearer {self.token}'}

    def _send(self, method: str, path: str, operation: str, event_id: str, payload: dict | None = None) -> None:
        if not self.is_configured:
            logger.info('calendar_not_configured', extra={'operation': operation, 'event_id': event_id})
            return

        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, path, json=payload, headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalCollaboratorError(
                f'Calendar {operation} failed: {exc}',
                operation=f'calendar.{operation}',
                entity_id=event_id,
            ) from exc

    def cancel_event(self, event_id: str, notify: bool = True) -> None:
        self._send('POST', f'/events/{event_id}/cancel', 'cancel_event', event_id, {'notify': notify})

    def reschedule_event(self, event_id: str, new_start: datetime, duration_minutes: int) -> None:
        self._send(
            'POST',
            f'/events/{event_id}/reschedule',
            'reschedule_event',
            event_id,
            {'start': new_start.isoformat(), 'duration_minutes': duration_minutes},
        )
