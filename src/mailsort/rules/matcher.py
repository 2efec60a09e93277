"""
Evaluate condition trees against messages
"""
import logging
import time
from dataclasses import dataclass
from datetime import date
from fnmatch import fnmatchcase
from typing import Dict, Iterable, Optional, Tuple

from mailsort.providers.backoff import with_backoff
from mailsort.providers.base import Folder, MailProvider, Message, MessageDetail, is_full_message
from .schema import FULL_MESSAGE_FIELDS, AutoSortRule, FilterCondition, FilterGroup

logger = logging.getLogger(__name__)

FOLDER_CACHE_TTL = 5 * 60


def requires_full_message(group: FilterGroup) -> bool:
    """Check if any leaf of the tree needs the body or the attachments"""
    return any(c.field in FULL_MESSAGE_FIELDS for c in group.iter_conditions())


def uses_folder(group: FilterGroup) -> bool:
    return any(c.field == 'folder' or (c.field == 'is' and c.value == 'draft') for c in group.iter_conditions())


@dataclass
class FolderContext:
    """Where the message currently lives"""
    id: str
    role: str
    name: str


def _text_match(condition: FilterCondition, candidates: Iterable[Optional[str]], anchored: bool = False) -> bool:
    """Case-insensitive substring (or glob) match against any candidate"""
    needle = condition.value.lower()
    for candidate in candidates:
        if not candidate:
            continue
        haystack = candidate.lower()
        if condition.op == 'matches':
            pattern = needle if anchored else f"*{needle}*"
            if fnmatchcase(haystack, pattern):
                return True
        elif needle in haystack:
            return True
    return False


def _body_text(message: Message) -> str:
    if isinstance(message, MessageDetail):
        return message.body_text or message.body_html or ''
    return ''


def _message_day(message: Message) -> date:
    return message.date.date()


class ConditionMatcher:
    """Decide whether a message satisfies a rule's condition tree.

    The matcher never fetches message bodies. When a rule needs the full
    message and is handed a listing item, the message does not match.
    """

    def __init__(self, folder_cache_ttl: float = FOLDER_CACHE_TTL):
        self.folder_cache_ttl = folder_cache_ttl
        self._folders: Dict[str, Tuple[float, Dict[str, Folder]]] = {}

    async def matches(self, message: Message, rule: AutoSortRule, provider: MailProvider,
                      account_id: str, default_folder_role: str = 'inbox') -> bool:
        """Check if a message matches an enabled rule"""
        if not rule.enabled:
            logger.debug(f"Rule {rule.name} is disabled")
            return False

        group = rule.conditions
        if requires_full_message(group) and not is_full_message(message):
            logger.debug(f"Rule {rule.name} needs the full message but {message.id} is a listing item")
            return False

        folder = None
        if uses_folder(group):
            folder = await self._folder_context(message, provider, account_id, default_folder_role)

        result = self.evaluate(group, message, folder)
        logger.debug(f"Rule {rule.name} on message {message.id} -> {result}")
        return result

    def evaluate(self, group: FilterGroup, message: Message, folder: Optional[FolderContext] = None) -> bool:
        """Evaluate a group: AND/OR with short-circuit; empty groups are ignored"""
        children = [('leaf', c) for c in group.conditions]
        children += [('group', g) for g in group.groups if not g.is_empty()]
        if not children:
            return True

        for kind, child in children:
            if kind == 'leaf':
                result = self.evaluate_condition(child, message, folder)
            else:
                result = self.evaluate(child, message, folder)

            if group.operator == 'AND' and not result:
                return False
            if group.operator == 'OR' and result:
                return True

        return group.operator == 'AND'

    def evaluate_condition(self, condition: FilterCondition, message: Message,
                           folder: Optional[FolderContext] = None) -> bool:
        """Evaluate a single leaf, applying its negation"""
        result = self._evaluate_leaf(condition, message, folder)
        return not result if condition.negate else result

    def _evaluate_leaf(self, condition: FilterCondition, message: Message,
                       folder: Optional[FolderContext]) -> bool:
        field = condition.field

        if field == 'from':
            sender = message.from_
            if condition.op == 'matches':
                return _text_match(condition, [sender.email], anchored=True) or \
                    _text_match(condition, [sender.name])
            return _text_match(condition, [sender.email, sender.name])

        elif field == 'to':
            recipients = list(message.to)
            if condition.op == 'matches':
                return any(_text_match(condition, [r.email], anchored=True) for r in recipients)
            return any(_text_match(condition, [r.email, r.name]) for r in recipients)

        elif field == 'subject':
            return _text_match(condition, [message.subject])

        elif field == 'body':
            return _text_match(condition, [_body_text(message)])

        elif field == 'text':
            return _text_match(condition, [message.subject, _body_text(message)])

        elif field == 'has':
            if message.flags.has_attachments:
                return True
            return isinstance(message, MessageDetail) and bool(message.attachments)

        elif field in ('filename', 'attachment'):
            attachments = message.attachments if isinstance(message, MessageDetail) else []
            if not attachments:
                return False
            if _text_match(condition, [a.filename for a in attachments]):
                return True
            return field == 'attachment' and _text_match(condition, [a.content_text for a in attachments])

        elif field == 'after':
            return _message_day(message) >= condition.boundary

        elif field == 'before':
            return _message_day(message) <= condition.boundary

        elif field == 'folder':
            if folder is None:
                return False
            wanted = condition.value.lower()
            return wanted in (folder.id.lower(), folder.role.lower(), folder.name.lower())

        elif field == 'is':
            flags = message.flags
            if condition.value == 'unread':
                return flags.unread
            if condition.value == 'read':
                return not flags.unread
            if condition.value == 'starred':
                return flags.starred
            if condition.value == 'draft':
                return flags.draft or (folder is not None and folder.role == 'drafts')

        return False

    async def _folder_context(self, message: Message, provider: MailProvider, account_id: str,
                              default_folder_role: str) -> FolderContext:
        folder_id = message.folder_id
        folders = await self.folder_index(provider, account_id)

        if folder_id and folder_id in folders:
            folder = folders[folder_id]
            return FolderContext(id=folder.id, role=folder.role, name=folder.name)

        # Unknown location: fall back to the default role
        for folder in folders.values():
            if folder.role == default_folder_role:
                return FolderContext(id=folder.id, role=folder.role, name=folder.name)
        return FolderContext(id=folder_id or default_folder_role, role=default_folder_role,
                             name=folder_id or default_folder_role)

    async def folder_index(self, provider: MailProvider, account_id: str) -> Dict[str, Folder]:
        """Folders of an account by id, cached for a few minutes"""
        now = time.monotonic()
        cached = self._folders.get(account_id)
        if cached and cached[0] > now:
            return cached[1]

        try:
            folders = await with_backoff(lambda: provider.get_folders(account_id), label='getFolders')
        except Exception as e:
            logger.error(f"Could not load folders for account {account_id}: {e}")
            return cached[1] if cached else {}

        index = {f.id: f for f in folders}
        self._folders[account_id] = (now + self.folder_cache_ttl, index)
        return index
