"""
Apply the actions of a matched rule to one message
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from mailsort.errors import ActionError
from mailsort.providers.backoff import DEFAULT_POLICY, BackoffPolicy, with_backoff
from mailsort.providers.base import Folder, MailProvider, MessageDetail
from .notify import Notifier, default_notifiers
from .schema import (
    Action,
    AutoArchiveAction,
    AutoDeleteAction,
    AutoSortRule,
    DeleteAction,
    ForwardAction,
    LabelAction,
    MarkImportantAction,
    MarkReadAction,
    MoveToFolderAction,
    NotifyAction,
)

logger = logging.getLogger(__name__)

# Destination ids that may name a folder role instead of a real folder
ROLE_ALIASES = frozenset({'inbox', 'sent', 'drafts', 'trash', 'spam', 'archive'})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def message_age_days(message: MessageDetail, now: datetime) -> int:
    sent = message.date if message.date.tzinfo else message.date.replace(tzinfo=timezone.utc)
    return (now - sent).days


class ActionExecutor:
    """Run a rule's actions in order, each through the backoff helper.

    Move, label and flag actions are idempotent at the provider; forward
    and notify are not, so callers apply a rule at most once per trigger.
    The first failing action stops the rest and raises ActionError; the
    actions before it stay applied.
    """

    def __init__(self, notifiers: Optional[Dict[str, Notifier]] = None,
                 policy: BackoffPolicy = DEFAULT_POLICY,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 now: Callable[[], datetime] = _utcnow):
        self.notifiers = notifiers if notifiers is not None else default_notifiers()
        self.policy = policy
        self.sleep = sleep
        self.now = now

    async def apply(self, message_id: str, rule: AutoSortRule, provider: MailProvider, account_id: str) -> None:
        """Apply every action of `rule` to one message"""
        for action in rule.actions:
            logger.debug(f"Executing action {action.type} of rule {rule.name} on message {message_id}")
            try:
                await with_backoff(
                    lambda: self._apply_action(action, message_id, rule, provider, account_id),
                    policy=self.policy,
                    label=f"{action.type}:{message_id}",
                    sleep=self.sleep,
                )
            except ActionError:
                raise
            except Exception as e:
                logger.error(f"Action {action.type} of rule {rule.name} failed on message {message_id}: {e}")
                raise ActionError(action.type, message_id, str(e)) from e

    async def _apply_action(self, action: Action, message_id: str, rule: AutoSortRule,
                            provider: MailProvider, account_id: str) -> None:
        if isinstance(action, MoveToFolderAction):
            folder_id = await self._resolve_folder_id(provider, account_id, action.folder_id)
            await provider.move_messages(account_id, [message_id], folder_id)

        elif isinstance(action, LabelAction):
            await provider.add_labels(account_id, message_id, action.label_ids)

        elif isinstance(action, MarkReadAction):
            await provider.update_flags(account_id, message_id, unread=False)

        elif isinstance(action, MarkImportantAction):
            await provider.update_flags(account_id, message_id, starred=True, important=True)

        elif isinstance(action, AutoArchiveAction):
            message = await self._old_enough(provider, account_id, message_id, action.days)
            if message is None:
                return
            archive = self._find_archive(await provider.get_folders(account_id))
            if archive is None:
                logger.warning(f"No archive folder for account {account_id}, cannot archive {message_id}")
                return
            await provider.move_messages(account_id, [message_id], archive.id)

        elif isinstance(action, AutoDeleteAction):
            if await self._old_enough(provider, account_id, message_id, action.days) is not None:
                await provider.delete_messages(account_id, [message_id])

        elif isinstance(action, ForwardAction):
            await provider.forward_message(account_id, message_id, action.email)

        elif isinstance(action, NotifyAction):
            notifier = self.notifiers.get(action.service)
            if notifier is None:
                raise ActionError(action.type, message_id, f"unknown notification service {action.service!r}")
            await notifier(action, rule, account_id, message_id)

        elif isinstance(action, DeleteAction):
            await provider.delete_messages(account_id, [message_id])

    async def _old_enough(self, provider: MailProvider, account_id: str, message_id: str,
                          days: int) -> Optional[MessageDetail]:
        """Return the message if it is at least `days` old"""
        message = await provider.get_message(account_id, message_id)
        if message is None:
            logger.warning(f"Message {message_id} disappeared before its age could be checked")
            return None
        age = message_age_days(message, self.now())
        if age < days:
            logger.debug(f"Message {message_id} is {age} day(s) old, waiting for {days}")
            return None
        return message

    @staticmethod
    def _find_archive(folders) -> Optional[Folder]:
        for folder in folders:
            if folder.role == 'archive':
                return folder
        for folder in folders:
            if 'archive' in folder.name.lower():
                return folder
        return None

    @staticmethod
    async def _resolve_folder_id(provider: MailProvider, account_id: str, folder_id: str) -> str:
        """Map a role alias such as `spam` onto the account's real folder id"""
        if folder_id not in ROLE_ALIASES:
            return folder_id
        folders = await provider.get_folders(account_id)
        if any(f.id == folder_id for f in folders):
            return folder_id
        for folder in folders:
            if folder.role == folder_id:
                return folder.id
        return folder_id
