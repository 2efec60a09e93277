"""
Gmail API mail provider
"""
import asyncio
import base64
import logging
from datetime import datetime, timezone
from email import message_from_bytes, policy
from email.message import EmailMessage
from email.utils import getaddresses, parseaddr
from typing import Callable, Dict, List, Optional

from dateutil import parser as date_parser
from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError

from mailsort.errors import ProviderError, RateLimitError
from mailsort.providers.base import (
    Address,
    Attachment,
    Folder,
    MailEvent,
    MailProvider,
    MessageDetail,
    MessageFlags,
    MessageListItem,
    MessagePage,
    Unsubscribe,
)

logger = logging.getLogger(__name__)

# System labels that behave like folders
SYSTEM_FOLDERS = {
    'INBOX': ('Inbox', 'inbox'),
    'SENT': ('Sent', 'sent'),
    'DRAFT': ('Drafts', 'drafts'),
    'TRASH': ('Trash', 'trash'),
    'SPAM': ('Spam', 'spam'),
}

# Gmail has no archive label: archived mail is mail outside the inbox
ARCHIVE_ID = 'ARCHIVE'
ARCHIVE_QUERY = '-in:inbox -in:spam -in:trash -in:sent -in:drafts'

# Labels removed when a message moves to another folder
FOLDER_LABELS = ['INBOX', 'SPAM', 'TRASH']

RATE_LIMIT_REASONS = ('rateLimitExceeded', 'userRateLimitExceeded')
METADATA_HEADERS = ['From', 'To', 'Subject', 'Date']
MAX_PAGE_SIZE = 500


def _decode(data: str) -> str:
    """Decode a base64url body part"""
    if not data:
        return ''
    padded = data + '=' * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode('utf-8', errors='replace')


def _address(value: str) -> Address:
    name, email = parseaddr(value or '')
    return Address(email=email or value or '', name=name or None)


def _addresses(value: Optional[str]) -> List[Address]:
    if not value:
        return []
    return [Address(email=email, name=name or None) for name, email in getaddresses([value]) if email]


def _message_date(headers: Dict[str, str], message: Dict) -> datetime:
    date_str = headers.get('Date')
    if date_str:
        try:
            return date_parser.parse(date_str)
        except (ValueError, OverflowError):
            logger.debug(f"Unparseable Date header {date_str!r} on message {message.get('id')}")
    internal = message.get('internalDate')
    if internal:
        return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc)
    return datetime.now(timezone.utc)


def _walk_parts(payload: Dict):
    yield payload
    for part in payload.get('parts', []) or []:
        yield from _walk_parts(part)


def folder_for_labels(label_ids: List[str]) -> str:
    """The folder a message lives in, judged by its labels"""
    for label in ('DRAFT', 'SENT', 'TRASH', 'SPAM', 'INBOX'):
        if label in label_ids:
            return label
    for label in label_ids:
        if label.startswith('Label_'):
            return label
    return ARCHIVE_ID


def translate_http_error(error: HttpError) -> ProviderError:
    """Turn an API error into our error types"""
    status = getattr(error.resp, 'status', None)
    content = error.content.decode('utf-8', errors='replace') if isinstance(error.content, bytes) else str(error.content)
    if status == 429 or (status == 403 and any(reason in content for reason in RATE_LIMIT_REASONS)):
        retry_after = error.resp.get('retry-after') if hasattr(error.resp, 'get') else None
        return RateLimitError(f"Gmail rate limit: {status}", retry_after=float(retry_after) if retry_after else None)
    return ProviderError(f"Gmail API error {status}: {content}", status=status)


class GmailProvider(MailProvider):
    """Gmail accounts through the synchronous Google API client.

    Blocking calls run in worker threads. New-mail events are produced by
    polling each subscribed account's history.
    """

    def __init__(self, service_factory: Callable[[str], Resource], poll_interval: float = 30.0):
        self.service_factory = service_factory
        self.poll_interval = poll_interval
        self.user_id = 'me'
        self._services: Dict[str, Resource] = {}

    async def _service(self, account_id: str) -> Resource:
        if account_id not in self._services:
            self._services[account_id] = await asyncio.to_thread(self.service_factory, account_id)
        return self._services[account_id]

    async def _execute(self, request) -> Dict:
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as e:
            raise translate_http_error(e) from e

    async def get_folders(self, account_id: str) -> List[Folder]:
        service = await self._service(account_id)
        response = await self._execute(service.users().labels().list(userId=self.user_id))

        folders = []
        for label in response.get('labels', []):
            if label['id'] in SYSTEM_FOLDERS:
                name, role = SYSTEM_FOLDERS[label['id']]
                folders.append(Folder(id=label['id'], name=name, role=role))
            elif label.get('type') == 'user':
                folders.append(Folder(id=label['id'], name=label['name'], role='custom'))
        folders.append(Folder(id=ARCHIVE_ID, name='Archive', role='archive'))
        return folders

    async def get_messages(self, account_id: str, folder_id: str, limit: int = 50) -> MessagePage:
        """List messages in a folder, handling pagination"""
        service = await self._service(account_id)
        ids: List[str] = []
        page_token = None

        while len(ids) < limit:
            params = {'userId': self.user_id, 'maxResults': min(MAX_PAGE_SIZE, limit - len(ids))}
            if folder_id == ARCHIVE_ID:
                params['q'] = ARCHIVE_QUERY
            else:
                params['labelIds'] = [folder_id]
            if page_token:
                params['pageToken'] = page_token

            response = await self._execute(service.users().messages().list(**params))
            ids.extend(m['id'] for m in response.get('messages', []))
            page_token = response.get('nextPageToken')
            if not page_token:
                break

        messages = []
        for message_id in ids[:limit]:
            raw = await self._execute(service.users().messages().get(
                userId=self.user_id,
                id=message_id,
                format='metadata',
                metadataHeaders=METADATA_HEADERS,
            ))
            messages.append(self.to_list_item(raw))
        logger.debug(f"Listed {len(messages)} messages in {folder_id} for {account_id}")
        return MessagePage(messages=messages, next_cursor=page_token)

    async def get_message(self, account_id: str, message_id: str) -> Optional[MessageDetail]:
        service = await self._service(account_id)
        try:
            raw = await asyncio.to_thread(service.users().messages().get(
                userId=self.user_id,
                id=message_id,
                format='full',
            ).execute)
        except HttpError as e:
            if getattr(e.resp, 'status', None) == 404:
                return None
            raise translate_http_error(e) from e
        return self.to_detail(raw)

    async def subscribe_to_updates(self, account_id: str, channel: asyncio.Queue) -> Unsubscribe:
        service = await self._service(account_id)
        profile = await self._execute(service.users().getProfile(userId=self.user_id))
        task = asyncio.create_task(self._poll_history(account_id, channel, profile['historyId']),
                                   name=f"gmail-history:{account_id}")

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    async def _poll_history(self, account_id: str, channel: asyncio.Queue, history_id: Optional[str]) -> None:
        """Turn new history records into events until cancelled.

        A failed poll is logged and retried on the next tick. An expired
        start id (404) is re-seeded from the profile, skipping the gap.
        """
        delay = self.poll_interval
        while True:
            await asyncio.sleep(delay)
            delay = self.poll_interval
            try:
                service = await self._service(account_id)
                if history_id is None:
                    profile = await self._execute(service.users().getProfile(userId=self.user_id))
                    history_id = profile['historyId']
                    continue
                history_id = await self._poll_history_once(service, channel, history_id)
            except RateLimitError as e:
                delay = max(e.retry_after or 0, self.poll_interval * 2)
                logger.warning(f"History poll for {account_id} rate limited, next poll in {delay}s")
            except ProviderError as e:
                if e.status == 404:
                    logger.warning(f"History {history_id} for {account_id} expired, starting from the current state")
                    history_id = None
                else:
                    logger.warning(f"History poll failed for {account_id}: {e}")
            except Exception as e:
                logger.error(f"History poll failed for {account_id}: {e!r}")

    async def _poll_history_once(self, service: Resource, channel: asyncio.Queue, history_id: str) -> str:
        page_token = None
        while True:
            params = {
                'userId': self.user_id,
                'startHistoryId': history_id,
                'historyTypes': ['messageAdded'],
            }
            if page_token:
                params['pageToken'] = page_token
            response = await self._execute(service.users().history().list(**params))

            for record in response.get('history', []):
                for added in record.get('messagesAdded', []):
                    message = added['message']
                    await channel.put(MailEvent(type='message.new', data={
                        'messageId': message['id'],
                        'folderId': folder_for_labels(message.get('labelIds', [])),
                    }))
            page_token = response.get('nextPageToken')
            if not page_token:
                return response.get('historyId', history_id)

    async def move_messages(self, account_id: str, message_ids: List[str], folder_id: str) -> None:
        service = await self._service(account_id)
        add_labels = [] if folder_id == ARCHIVE_ID else [folder_id]
        remove_labels = [label for label in FOLDER_LABELS if label != folder_id]
        await self._execute(service.users().messages().batchModify(
            userId=self.user_id,
            body={'ids': list(message_ids), 'addLabelIds': add_labels, 'removeLabelIds': remove_labels},
        ))
        logger.debug(f"Moved {len(message_ids)} message(s) to {folder_id}")

    async def add_labels(self, account_id: str, message_id: str, label_ids: List[str]) -> None:
        service = await self._service(account_id)
        await self._execute(service.users().messages().modify(
            userId=self.user_id,
            id=message_id,
            body={'addLabelIds': list(label_ids)},
        ))

    async def update_flags(self, account_id: str, message_id: str,
                           unread: Optional[bool] = None,
                           starred: Optional[bool] = None,
                           important: Optional[bool] = None) -> None:
        add, remove = [], []
        for label, value in (('UNREAD', unread), ('STARRED', starred), ('IMPORTANT', important)):
            if value is True:
                add.append(label)
            elif value is False:
                remove.append(label)
        if not add and not remove:
            return

        service = await self._service(account_id)
        await self._execute(service.users().messages().modify(
            userId=self.user_id,
            id=message_id,
            body={'addLabelIds': add, 'removeLabelIds': remove},
        ))

    async def delete_messages(self, account_id: str, message_ids: List[str]) -> None:
        """Move messages to the trash; the granted scope cannot delete for good"""
        service = await self._service(account_id)
        for message_id in message_ids:
            await self._execute(service.users().messages().trash(userId=self.user_id, id=message_id))

    async def forward_message(self, account_id: str, message_id: str, to: str) -> None:
        service = await self._service(account_id)
        raw = await self._execute(service.users().messages().get(userId=self.user_id, id=message_id, format='raw'))
        original = message_from_bytes(base64.urlsafe_b64decode(raw['raw'] + '=' * (-len(raw['raw']) % 4)),
                                      policy=policy.default)

        forward = EmailMessage()
        forward['To'] = to
        forward['Subject'] = f"Fwd: {original.get('Subject', '')}"
        forward.set_content(f"Forwarded message from {original.get('From', 'unknown sender')}.")
        forward.add_attachment(original)

        encoded = base64.urlsafe_b64encode(forward.as_bytes()).decode('ascii')
        await self._execute(service.users().messages().send(userId=self.user_id, body={'raw': encoded}))
        logger.info(f"Forwarded message {message_id} to {to}")

    # --- conversion ---

    @staticmethod
    def _headers(message: Dict) -> Dict[str, str]:
        return {h['name']: h['value'] for h in message.get('payload', {}).get('headers', [])}

    @classmethod
    def to_list_item(cls, message: Dict) -> MessageListItem:
        """Convert a Gmail API message (any format) to the listing shape"""
        headers = cls._headers(message)
        labels = message.get('labelIds', [])
        payload = message.get('payload', {})
        has_attachments = any(part.get('filename') for part in _walk_parts(payload)) if payload else False

        return MessageListItem(
            id=message['id'],
            from_=_address(headers.get('From', '')),
            to=_addresses(headers.get('To')),
            subject=headers.get('Subject', ''),
            snippet=message.get('snippet', ''),
            date=_message_date(headers, message),
            flags=MessageFlags(
                unread='UNREAD' in labels,
                starred='STARRED' in labels,
                important='IMPORTANT' in labels,
                has_attachments=has_attachments,
                draft='DRAFT' in labels,
            ),
            size=message.get('sizeEstimate', 0),
            folder_id=folder_for_labels(labels),
            labels=labels,
        )

    @classmethod
    def to_detail(cls, message: Dict) -> MessageDetail:
        """Convert a `format=full` Gmail API message to the full shape"""
        item = cls.to_list_item(message)
        headers = cls._headers(message)

        body_text, body_html = '', ''
        attachments = []
        for part in _walk_parts(message.get('payload', {})):
            body = part.get('body', {})
            if part.get('filename'):
                attachments.append(Attachment(
                    id=body.get('attachmentId') or part.get('partId', ''),
                    filename=part['filename'],
                    mime=part.get('mimeType', 'application/octet-stream'),
                    size=body.get('size', 0),
                ))
            elif part.get('mimeType') == 'text/plain' and not body_text:
                body_text = _decode(body.get('data', ''))
            elif part.get('mimeType') == 'text/html' and not body_html:
                body_html = _decode(body.get('data', ''))

        item.flags.has_attachments = bool(attachments)
        return MessageDetail(
            **item.model_dump(),
            cc=_addresses(headers.get('Cc')),
            bcc=_addresses(headers.get('Bcc')),
            headers=headers,
            body_text=body_text,
            body_html=body_html,
            attachments=attachments,
        )

