"""
Rules engine: the match/apply pipeline shared by the daemon and the bulk applier
"""
import logging
from typing import List, Optional

from mailsort.errors import ActionError
from mailsort.providers.backoff import is_rate_limit_error
from mailsort.providers.base import MailProvider, Message
from .actions import ActionExecutor
from .matcher import ConditionMatcher
from .schema import AutoSortRule

logger = logging.getLogger(__name__)


class RulesEngine:
    """Engine for processing messages based on auto-sort rules"""

    def __init__(self, provider: MailProvider, matcher: Optional[ConditionMatcher] = None,
                 executor: Optional[ActionExecutor] = None):
        self.provider = provider
        self.matcher = matcher or ConditionMatcher()
        self.executor = executor or ActionExecutor()

    async def match_and_apply(self, message: Message, rule: AutoSortRule, account_id: str,
                              folder_role: str = 'inbox') -> bool:
        """Apply a rule to a message if it matches; returns whether it matched"""
        matched = await self.matcher.matches(message, rule, self.provider, account_id, folder_role)
        if not matched:
            logger.debug(f"Rule {rule.name} did not match message {message.id}")
            return False

        logger.debug(f"Rule {rule.name} matched message {message.id}, executing {len(rule.actions)} action(s)")
        await self.executor.apply(message.id, rule, self.provider, account_id)
        return True

    async def process_message(self, message: Message, rules: List[AutoSortRule], account_id: str,
                              folder_role: str = 'inbox') -> List[str]:
        """Process a message against every enabled rule.

        Rules are evaluated independently and every matching rule is applied.
        A failing rule is logged and does not stop the others; a rate-limit
        failure is re-raised once all rules had their turn so the caller can
        cool down. Returns the ids of the rules that were applied.
        """
        logger.info(f"Processing message: {message.subject} (From: {message.from_.email})")

        applied: List[str] = []
        rate_limited: Optional[Exception] = None
        for rule in rules:
            if not rule.enabled:
                continue
            try:
                if await self.match_and_apply(message, rule, account_id, folder_role):
                    applied.append(rule.id)
            except ActionError as e:
                logger.error(f"Failed to process message {message.id} with rule {rule.name}: {e}")
                if is_rate_limit_error(e):
                    rate_limited = e

        if rate_limited is not None:
            raise rate_limited
        return applied
