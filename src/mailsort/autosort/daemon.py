"""
Live auto-sort: one watcher per account, fed by provider push events
"""
import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

import structlog

from mailsort.config import Settings
from mailsort.database import RuleStore
from mailsort.providers.backoff import is_rate_limit_error, with_backoff
from mailsort.providers.base import EXCLUDED_FOLDER_ROLES, Folder, MailEvent, MailProvider, Unsubscribe
from mailsort.rules.engine import RulesEngine

logger = structlog.get_logger()

ROLE_IDS = frozenset({'inbox', 'sent', 'drafts', 'trash', 'spam', 'archive'})


@dataclass
class Watcher:
    """Subscription state of one watched account"""
    account_id: str
    channel: asyncio.Queue
    unsubscribe: Unsubscribe
    task: Optional[asyncio.Task] = None
    folders: Dict[str, Folder] = field(default_factory=dict)


def is_ignored_folder(folder_id: str, folders: Dict[str, Folder]) -> bool:
    """Events from these folders never reach the rules.

    Moving a message into sent/trash/drafts or a deleted-items folder
    fires a new event; ignoring those keeps rules from re-triggering.
    """
    folder = folders.get(folder_id)
    if folder is not None:
        role, name = folder.role, folder.name
    else:
        role = folder_id.lower() if folder_id.lower() in ROLE_IDS else None
        name = folder_id
    return role in EXCLUDED_FOLDER_ROLES or 'deleted' in name.lower()


class DaemonSupervisor:
    """Owns the account -> watcher map of the live auto-sort daemon"""

    def __init__(self, provider: MailProvider, rule_store: RuleStore, engine: RulesEngine,
                 list_accounts: Callable[[], Iterable[str]],
                 settings: Optional[Settings] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.provider = provider
        self.rule_store = rule_store
        self.engine = engine
        self.list_accounts = list_accounts
        self.settings = settings or Settings()
        self.sleep = sleep
        self.watchers: Dict[str, Watcher] = {}
        self._starting: Set[str] = set()
        self._stopped = asyncio.Event()

    def is_watching(self, account_id: str) -> bool:
        return account_id in self.watchers

    async def start_watching(self, account_id: str) -> bool:
        """Subscribe to an account; returns False if it is already watched"""
        if account_id in self.watchers or account_id in self._starting:
            return False
        self._starting.add(account_id)
        log = logger.bind(account=account_id)
        try:
            folders: Dict[str, Folder] = {}
            try:
                listed = await with_backoff(lambda: self.provider.get_folders(account_id),
                                            label='getFolders', sleep=self.sleep)
                folders = {f.id: f for f in listed}
            except Exception as e:
                # Event data alone still tells us the folder id
                log.warning("Could not snapshot folders", error=str(e))

            channel = asyncio.Queue(maxsize=self.settings.daemon_channel_capacity)
            unsubscribe = await self.provider.subscribe_to_updates(account_id, channel)
            watcher = Watcher(account_id=account_id, channel=channel, unsubscribe=unsubscribe, folders=folders)
            watcher.task = asyncio.create_task(self._consume(watcher), name=f"autosort:{account_id}")
            self.watchers[account_id] = watcher
        finally:
            self._starting.discard(account_id)

        log.info("Watching account", folders=len(folders))
        return True

    async def stop_watching(self, account_id: str) -> bool:
        """Unsubscribe an account and stop its consumer"""
        watcher = self.watchers.pop(account_id, None)
        if watcher is None:
            return False

        result = watcher.unsubscribe()
        if inspect.isawaitable(result):
            await result
        if watcher.task is not None:
            watcher.task.cancel()
            try:
                await watcher.task
            except asyncio.CancelledError:
                pass
        logger.info("Stopped watching account", account=account_id)
        return True

    async def refresh(self) -> List[str]:
        """Start watchers for accounts that appeared since the last scan"""
        started = []
        for account_id in self.list_accounts():
            if account_id in self.watchers:
                continue
            try:
                if await self.start_watching(account_id):
                    started.append(account_id)
            except Exception as e:
                logger.error("Failed to start watcher", account=account_id, error=str(e))
        return started

    async def run(self) -> None:
        """Refresh now and periodically until shutdown() is called"""
        self._stopped.clear()
        logger.info("Auto-sort daemon started", refresh_interval=self.settings.daemon_refresh_interval)
        while not self._stopped.is_set():
            await self.refresh()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.settings.daemon_refresh_interval)
            except asyncio.TimeoutError:
                pass

    async def shutdown(self) -> None:
        self._stopped.set()
        for account_id in list(self.watchers):
            await self.stop_watching(account_id)
        logger.info("Auto-sort daemon stopped")

    async def _consume(self, watcher: Watcher) -> None:
        log = logger.bind(account=watcher.account_id)
        while True:
            event = await watcher.channel.get()
            try:
                await self.handle_event(watcher.account_id, event, watcher.folders)
            except Exception as e:
                log.error("Failed to process event", message=event.message_id, folder=event.folder_id,
                          error=str(e))
                if is_rate_limit_error(e):
                    await self.sleep(self.settings.daemon_rate_limit_cooldown)
            finally:
                watcher.channel.task_done()

    async def handle_event(self, account_id: str, event: MailEvent,
                           folders: Optional[Dict[str, Folder]] = None) -> Optional[List[str]]:
        """Run all enabled rules of the account on the message behind an event.

        Returns the ids of the applied rules, or None if the event was
        dropped before any rule was evaluated.
        """
        folders = folders or {}
        if event.type != 'message.new' or not event.message_id:
            return None

        folder_id = event.folder_id
        if is_ignored_folder(folder_id, folders):
            logger.debug("Ignoring event from excluded folder", account=account_id,
                         message=event.message_id, folder=folder_id)
            return None

        # Let the server finish indexing the new message
        await self.sleep(self.settings.daemon_event_settle_delay)

        message = await with_backoff(lambda: self.provider.get_message(account_id, event.message_id),
                                     label=f"getMessage:{event.message_id}", sleep=self.sleep)
        if message is None:
            logger.warning("Message not found", account=account_id, message=event.message_id, folder=folder_id)
            return None
        if message.folder_id is None:
            message.folder_id = folder_id

        rules = self.rule_store.load_enabled_rules(account_id)
        if not rules:
            return []

        folder = folders.get(folder_id)
        folder_role = folder.role if folder is not None else 'inbox'
        applied = await self.engine.process_message(message, rules, account_id, folder_role)
        if applied:
            logger.info("Applied rules to new message", account=account_id, message=message.id,
                        folder=folder_id, rules=applied)
        return applied
