"""
External notification channels for the notify action
"""
import logging
from typing import Awaitable, Callable, Dict, Optional

import httpx

from .schema import AutoSortRule, NotifyAction

logger = logging.getLogger(__name__)

Notifier = Callable[[NotifyAction, AutoSortRule, str, str], Awaitable[None]]


async def log_notifier(action: NotifyAction, rule: AutoSortRule, account_id: str, message_id: str) -> None:
    """Write the notification to the application log"""
    logger.info(f"[{action.target}] Rule {rule.name} matched message {message_id} (account {account_id})")


class WebhookNotifier:
    """POST a JSON payload to the action's target URL"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self._client = client
        self.timeout = timeout

    async def __call__(self, action: NotifyAction, rule: AutoSortRule, account_id: str, message_id: str) -> None:
        payload = {
            'event': 'rule.matched',
            'accountId': account_id,
            'messageId': message_id,
            'ruleId': rule.id,
            'ruleName': rule.name,
        }
        if self._client is not None:
            response = await self._client.post(action.target, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(action.target, json=payload)
        response.raise_for_status()
        logger.debug(f"Webhook {action.target} answered {response.status_code}")


def default_notifiers() -> Dict[str, Notifier]:
    return {
        'log': log_notifier,
        'webhook': WebhookNotifier(),
    }
