from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from core.milestones.errors import NotifyFailure
from shared.logging.logger import get_logger

log = get_logger("slack.notifier")

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"


def build_milestone_message(display_name: str, count: int) -> Dict[str, Any]:
    if count >= 100:
        emoji = "🚀"
    elif count >= 50:
        emoji = "🔥"
    else:
        emoji = "🎉"

    return {
        "blocks": [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"{emoji} *{display_name}* just hit *{count} signups*!",
                },
            }
        ],
        "text": f"{display_name} reached {count} signups!",
    }


class SlackNotifier:
    """
    Posts milestone announcements to a single Slack channel.

    - One chat.postMessage call per send(); no batching, no retries.
    - Delivery failures are logged and reported as False.
    - dry_run logs the payload without any network I/O.
    """

    def __init__(
        self,
        token: Optional[str],
        channel: Optional[str],
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        dry_run: bool = False,
    ):
        if not dry_run and (not token or not channel):
            raise RuntimeError("Slack token and channel are required unless dry_run is set")

        self._token = token
        self.channel = channel
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self.dry_run = dry_run

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------ #
    # Messaging
    # ------------------------------------------------------------------ #

    async def send_or_raise(self, display_name: str, count: int) -> None:
        payload = {"channel": self.channel, **build_milestone_message(display_name, count)}

        if self.dry_run:
            log.info(f"[dry-run] Milestone message for {display_name}: {payload['text']}")
            return

        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json; charset=utf-8",
        }

        try:
            resp = await self._get_client().post(
                SLACK_POST_MESSAGE_URL,
                json=payload,
                headers=headers,
            )
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NotifyFailure(f"Slack post for {display_name} failed: {e}") from e

        if not body.get("ok"):
            raise NotifyFailure(
                f"Slack rejected post for {display_name}: {body.get('error', 'unknown_error')}"
            )

        log.info(f"Posted milestone for {display_name}: {count} signups")

    async def send(self, display_name: str, count: int) -> bool:
        try:
            await self.send_or_raise(display_name, count)
            return True
        except NotifyFailure as e:
            log.error(str(e))
            return False
