"""
Mail provider interface and the message shapes it returns
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

FolderRole = Literal['inbox', 'sent', 'drafts', 'trash', 'spam', 'archive', 'custom']

# Folders never scanned by the bulk applier and never watched by the daemon
EXCLUDED_FOLDER_ROLES = frozenset({'sent', 'drafts', 'trash'})

Unsubscribe = Callable[[], Union[None, Awaitable[None]]]


class Folder(BaseModel):
    """A mailbox folder (or Gmail label) as reported by the provider"""
    id: str
    name: str
    role: FolderRole = 'custom'


class Address(BaseModel):
    """An email address with an optional display name"""
    email: str
    name: Optional[str] = None


class MessageFlags(BaseModel):
    """Flags carried by both message shapes"""
    model_config = ConfigDict(populate_by_name=True)

    unread: bool = False
    starred: bool = False
    important: bool = False
    has_attachments: bool = Field(False, alias='hasAttachments')
    draft: bool = False


class Attachment(BaseModel):
    """Attachment metadata, with extracted text when the provider has it"""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    filename: str
    mime: str = 'application/octet-stream'
    size: int = 0
    content_text: Optional[str] = Field(None, alias='contentText')


class MessageListItem(BaseModel):
    """Lightweight listing shape, no body"""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_: Address = Field(alias='from')
    to: List[Address] = []
    subject: str = ''
    snippet: str = ''
    date: datetime
    flags: MessageFlags = Field(default_factory=MessageFlags)
    size: int = 0
    folder_id: Optional[str] = Field(None, alias='folderId')
    labels: List[str] = []


class MessageDetail(MessageListItem):
    """Full message shape: headers, body and attachments"""
    cc: List[Address] = []
    bcc: List[Address] = []
    headers: Dict[str, str] = {}
    body_text: str = Field('', alias='bodyText')
    body_html: str = Field('', alias='bodyHtml')
    attachments: List[Attachment] = []


Message = Union[MessageDetail, MessageListItem]


class MessagePage(BaseModel):
    """One page of a folder listing"""
    model_config = ConfigDict(populate_by_name=True)

    messages: List[MessageListItem] = []
    next_cursor: Optional[str] = Field(None, alias='nextCursor')


class MailEvent(BaseModel):
    """A push notification delivered by the provider onto a watcher channel"""
    type: str
    data: Dict[str, Optional[str]] = {}

    @property
    def message_id(self) -> Optional[str]:
        return self.data.get('messageId') or self.data.get('id')

    @property
    def folder_id(self) -> str:
        return self.data.get('folderId') or self.data.get('mailboxId') or 'inbox'


def is_full_message(message: Message) -> bool:
    """True if the message is the full-detail shape"""
    return isinstance(message, MessageDetail)


class MailProvider(ABC):
    """Remote mail store used by the auto-sort engine.

    Every call is a network call: it may be slow, it may fail, and it may
    raise RateLimitError when the server is throttling us.
    """

    @abstractmethod
    async def get_folders(self, account_id: str) -> List[Folder]:
        """List the folders of an account"""

    @abstractmethod
    async def get_messages(self, account_id: str, folder_id: str, limit: int = 50) -> MessagePage:
        """List up to `limit` messages of a folder, newest first"""

    @abstractmethod
    async def get_message(self, account_id: str, message_id: str) -> Optional[MessageDetail]:
        """Fetch the full message, or None if it does not exist (yet)"""

    @abstractmethod
    async def subscribe_to_updates(self, account_id: str, channel: asyncio.Queue) -> Unsubscribe:
        """Start pushing MailEvents for an account onto `channel`.

        Returns a handle that stops the subscription when called.
        """

    @abstractmethod
    async def move_messages(self, account_id: str, message_ids: List[str], folder_id: str) -> None:
        """Move messages to a folder; moving into the current folder is a no-op"""

    @abstractmethod
    async def add_labels(self, account_id: str, message_id: str, label_ids: List[str]) -> None:
        """Add labels to a message; labels already present are left alone"""

    @abstractmethod
    async def update_flags(self, account_id: str, message_id: str,
                           unread: Optional[bool] = None,
                           starred: Optional[bool] = None,
                           important: Optional[bool] = None) -> None:
        """Set message flags; flags left as None are untouched"""

    @abstractmethod
    async def delete_messages(self, account_id: str, message_ids: List[str]) -> None:
        """Delete messages"""

    @abstractmethod
    async def forward_message(self, account_id: str, message_id: str, to: str) -> None:
        """Forward a message to another address"""
