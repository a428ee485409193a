import logging

import httpx

from scheduling_backend.core import config
from scheduling_backend.scheduling.errors import ExternalCollaboratorError

logger = logging.getLogger(__name__)


class VideoBotClient:
    """Client for the meeting-recorder bot service attached to sessions."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url if base_url is not None else config.VIDEO_BOT_SERVICE_URL).rstrip('/')
        self.token = token if token is not None else config.VIDEO_BOT_SERVICE_TOKEN
        self.timeout = timeout or config.COLLABORATOR_TIMEOUT_SECONDS
        self.transport = transport

    def cancel_bot(self, bot_id: str) -> None:
        if not self.base_url:
            logger.info('video_bot_not_configured', extra={'operation': 'cancel_bot', 'bot_id': bot_id})
            return

        headers = {'Authorization': f'Token {self.token}'} if self.token else {}
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = client.delete(f'/bots/{bot_id}', headers=headers)
                # Already gone counts as cancelled.
                if response.status_code != 404:
                    response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalCollaboratorError(
                f'Video bot cancel failed: {exc}',
                operation='video_bot.cancel_bot',
                entity_id=bot_id,
            ) from exc
