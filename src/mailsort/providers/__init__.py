"""
Mail provider abstraction for the auto-sort engine
"""
from .backoff import BackoffPolicy, is_rate_limit_error, with_backoff
from .base import (
    EXCLUDED_FOLDER_ROLES,
    Address,
    Attachment,
    Folder,
    MailEvent,
    MailProvider,
    Message,
    MessageDetail,
    MessageFlags,
    MessageListItem,
    MessagePage,
    is_full_message,
)
from .memory import InMemoryProvider

__all__ = [
    'EXCLUDED_FOLDER_ROLES',
    'Address',
    'Attachment',
    'BackoffPolicy',
    'Folder',
    'InMemoryProvider',
    'MailEvent',
    'MailProvider',
    'Message',
    'MessageDetail',
    'MessageFlags',
    'MessageListItem',
    'MessagePage',
    'is_full_message',
    'is_rate_limit_error',
    'with_backoff',
]
