"""
In-process mail provider, used for local runs and tests
"""
import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from mailsort.errors import ProviderError
from .base import Folder, MailEvent, MailProvider, MessageDetail, MessageListItem, MessagePage, Unsubscribe

logger = logging.getLogger(__name__)

DEFAULT_FOLDERS = [
    Folder(id='inbox', name='Inbox', role='inbox'),
    Folder(id='sent', name='Sent', role='sent'),
    Folder(id='drafts', name='Drafts', role='drafts'),
    Folder(id='trash', name='Trash', role='trash'),
    Folder(id='spam', name='Spam', role='spam'),
    Folder(id='archive', name='Archive', role='archive'),
]


class InMemoryProvider(MailProvider):
    """Mailbox kept in dictionaries.

    Mutations are idempotent the way a real server's are, every call is
    recorded in `calls`, and failures can be queued per method with
    `fail_next` to simulate throttling.
    """

    def __init__(self):
        self.folders: Dict[str, List[Folder]] = {}
        self.messages: Dict[str, Dict[str, MessageDetail]] = defaultdict(dict)
        self.calls: List[Tuple[str, tuple]] = []
        self.forwarded: List[Tuple[str, str, str]] = []
        self.deleted: List[Tuple[str, str]] = []
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self._channels: Dict[str, List[asyncio.Queue]] = defaultdict(list)

    # --- test helpers ---

    def add_account(self, account_id: str, folders: Optional[List[Folder]] = None) -> None:
        self.folders[account_id] = list(folders or DEFAULT_FOLDERS)

    def add_message(self, account_id: str, message: MessageDetail) -> MessageDetail:
        if account_id not in self.folders:
            self.add_account(account_id)
        self.messages[account_id][message.id] = message
        return message

    def fail_next(self, method: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls of `method` raise `error`"""
        self._failures[method].extend([error] * times)

    def calls_to(self, method: str) -> List[tuple]:
        return [args for name, args in self.calls if name == method]

    async def publish_new_message(self, account_id: str, message: MessageDetail) -> None:
        """Store a message and push a message.new event to every subscriber"""
        self.add_message(account_id, message)
        event = MailEvent(type='message.new', data={'messageId': message.id, 'folderId': message.folder_id})
        for channel in list(self._channels[account_id]):
            await channel.put(event)

    # --- MailProvider ---

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, args))
        if self._failures[method]:
            raise self._failures[method].pop(0)

    def _get(self, account_id: str, message_id: str) -> MessageDetail:
        message = self.messages[account_id].get(message_id)
        if message is None:
            raise ProviderError(f"Message {message_id} not found")
        return message

    async def get_folders(self, account_id: str) -> List[Folder]:
        self._record('get_folders', account_id)
        if account_id not in self.folders:
            raise ProviderError(f"Unknown account {account_id}")
        return list(self.folders[account_id])

    async def get_messages(self, account_id: str, folder_id: str, limit: int = 50) -> MessagePage:
        self._record('get_messages', account_id, folder_id, limit)
        in_folder = [m for m in self.messages[account_id].values() if m.folder_id == folder_id]
        in_folder.sort(key=lambda m: m.date, reverse=True)
        items = []
        for message in in_folder[:limit]:
            copy = message.model_copy(deep=True)
            items.append(MessageListItem(**{name: getattr(copy, name) for name in MessageListItem.model_fields}))
        return MessagePage(messages=items)

    async def get_message(self, account_id: str, message_id: str) -> Optional[MessageDetail]:
        self._record('get_message', account_id, message_id)
        message = self.messages[account_id].get(message_id)
        return message.model_copy(deep=True) if message else None

    async def subscribe_to_updates(self, account_id: str, channel: asyncio.Queue) -> Unsubscribe:
        self._record('subscribe_to_updates', account_id)
        self._channels[account_id].append(channel)

        def unsubscribe() -> None:
            if channel in self._channels[account_id]:
                self._channels[account_id].remove(channel)

        return unsubscribe

    def subscriber_count(self, account_id: str) -> int:
        return len(self._channels[account_id])

    async def move_messages(self, account_id: str, message_ids: List[str], folder_id: str) -> None:
        self._record('move_messages', account_id, tuple(message_ids), folder_id)
        for message_id in message_ids:
            message = self._get(account_id, message_id)
            if message.folder_id != folder_id:
                message.folder_id = folder_id

    async def add_labels(self, account_id: str, message_id: str, label_ids: List[str]) -> None:
        self._record('add_labels', account_id, message_id, tuple(label_ids))
        message = self._get(account_id, message_id)
        for label_id in label_ids:
            if label_id not in message.labels:
                message.labels.append(label_id)

    async def update_flags(self, account_id: str, message_id: str,
                           unread: Optional[bool] = None,
                           starred: Optional[bool] = None,
                           important: Optional[bool] = None) -> None:
        self._record('update_flags', account_id, message_id, unread, starred, important)
        message = self._get(account_id, message_id)
        if unread is not None:
            message.flags.unread = unread
        if starred is not None:
            message.flags.starred = starred
        if important is not None:
            message.flags.important = important

    async def delete_messages(self, account_id: str, message_ids: List[str]) -> None:
        self._record('delete_messages', account_id, tuple(message_ids))
        for message_id in message_ids:
            if self.messages[account_id].pop(message_id, None) is not None:
                self.deleted.append((account_id, message_id))

    async def forward_message(self, account_id: str, message_id: str, to: str) -> None:
        self._record('forward_message', account_id, message_id, to)
        self._get(account_id, message_id)
        self.forwarded.append((account_id, message_id, to))
