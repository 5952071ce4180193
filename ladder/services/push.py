"""
Expo push notification client.

Sends messages to the Expo push API for devices that registered a token with
their profile. Delivery is best-effort: callers log failures and move on.
"""

from typing import Any, Dict, Iterable, List, Optional

import httpx

from ladder.config import Config
from ladder.constants import PushConstants
from ladder.utils.logger import setup_logger

logger = setup_logger(__name__)


def is_expo_token(token: Optional[str]) -> bool:
    return bool(token) and token.startswith(('ExponentPushToken[', 'ExpoPushToken[')) and token.endswith(']')


class ExpoPushClient:
    """Thin async wrapper around the Expo push endpoint"""

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url or Config.EXPO_PUSH_URL
        self._client = client or httpx.AsyncClient(
            timeout=timeout or Config.PUSH_TIMEOUT_SECONDS,
            headers={'Accept': 'application/json', 'Content-Type': 'application/json'}
        )

    async def send_push_notification(self, token: str, title: str, body: str,
                                     data: Optional[Dict[str, Any]] = None) -> int:
        return await self.send_many([token], title, body, data)

    async def send_many(self, tokens: Iterable[str], title: str, body: str,
                        data: Optional[Dict[str, Any]] = None) -> int:
        """
        Send one message to many devices.

        Invalid tokens are skipped. Returns the number of tickets Expo accepted.

        Raises:
            httpx.HTTPError: On transport failure or a non-2xx response
        """
        valid = []
        for token in dict.fromkeys(tokens):
            if is_expo_token(token):
                valid.append(token)
            else:
                logger.warning(f"Skipping malformed push token: {token!r}")

        accepted = 0
        for start in range(0, len(valid), PushConstants.MAX_BATCH_SIZE):
            batch = valid[start:start + PushConstants.MAX_BATCH_SIZE]
            messages = [
                {'to': token, 'sound': 'default', 'title': title, 'body': body, 'data': data or {}}
                for token in batch
            ]
            accepted += await self._post(messages)

        if valid:
            logger.info(f"Push '{title}' accepted for {accepted}/{len(valid)} devices")
        return accepted

    async def _post(self, messages: List[Dict[str, Any]]) -> int:
        response = await self._client.post(self.url, json=messages)
        response.raise_for_status()

        tickets = response.json().get('data', [])
        if isinstance(tickets, dict):
            tickets = [tickets]

        accepted = 0
        for message, ticket in zip(messages, tickets):
            if ticket.get('status') == 'ok':
                accepted += 1
            else:
                logger.warning(
                    f"Expo rejected push to {message['to']}: "
                    f"{ticket.get('message')} ({(ticket.get('details') or {}).get('error')})"
                )
        return accepted

    async def close(self):
        await self._client.aclose()
