"""
Apply one rule to the mail already in an account, within a time budget
"""
import asyncio
import time
from typing import Awaitable, Callable, List, Optional, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field

from mailsort.config import Settings
from mailsort.database import RuleStore
from mailsort.errors import RuleDisabledError
from mailsort.providers.backoff import DEFAULT_POLICY, is_rate_limit_error, with_backoff
from mailsort.providers.base import EXCLUDED_FOLDER_ROLES, Folder, MailProvider, Message, is_full_message
from mailsort.rules.engine import RulesEngine
from mailsort.rules.matcher import requires_full_message

logger = structlog.get_logger()

Candidate = Tuple[Message, Folder]


class BulkApplyResult(BaseModel):
    """Counters reported by one bulk pass"""
    model_config = ConfigDict(populate_by_name=True)

    applied: int = 0
    total: int = 0
    processed: int = 0
    timed_out: bool = Field(False, alias='timedOut')
    elapsed_ms: int = Field(0, alias='elapsedMs')

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True)


class BulkRuleApplier:
    """Runs a rule over existing messages, folder by folder.

    Every provider call goes through the backoff helper. The pass stops
    early, with `timed_out` set, once the wall-clock budget is spent.
    """

    def __init__(self, provider: MailProvider, rule_store: RuleStore, engine: RulesEngine,
                 settings: Optional[Settings] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.provider = provider
        self.rule_store = rule_store
        self.engine = engine
        self.settings = settings or Settings()
        self.clock = clock
        self.sleep = sleep

    async def apply(self, rule_id: str, account_id: str, limit: Optional[int] = None,
                    folder_id: Optional[str] = None) -> BulkApplyResult:
        """Apply a stored rule to up to `limit` existing messages"""
        settings = self.settings
        limit = limit or settings.bulk_default_limit
        started = self.clock()
        log = logger.bind(account=account_id, rule=rule_id)

        # Always the stored version, never a cached one
        rule = self.rule_store.get_rule(account_id, rule_id)
        if not rule.enabled:
            raise RuleDisabledError(rule_id)

        # The one failure that aborts the whole pass
        folders = await with_backoff(lambda: self.provider.get_folders(account_id),
                                     label='getFolders', sleep=self.sleep)
        folders = self._candidate_folders(folders, folder_id)
        log.info("Starting bulk pass", rule_name=rule.name, folders=[f.id for f in folders], limit=limit)

        candidates = await self._list_candidates(account_id, folders, limit, log)
        result = BulkApplyResult(total=len(candidates))

        if requires_full_message(rule.conditions):
            if not await self._upgrade_messages(account_id, candidates, started, log):
                result.timed_out = True

        if not result.timed_out:
            for message, folder in candidates:
                if self._budget_spent(started):
                    result.timed_out = True
                    break
                result.processed += 1
                try:
                    if await self.engine.match_and_apply(message, rule, account_id, folder.role):
                        result.applied += 1
                        if result.applied % settings.apply_pause_every == 0:
                            await self.sleep(settings.apply_pause)
                except Exception as e:
                    log.error("Failed to apply rule to message", message=message.id, folder=folder.id,
                              error=str(e))
                    if is_rate_limit_error(e):
                        await self.sleep(settings.message_rate_limit_cooldown)

        result.elapsed_ms = int((self.clock() - started) * 1000)
        log.info("Bulk pass finished", **result.model_dump())
        return result

    @staticmethod
    def _candidate_folders(folders: List[Folder], folder_id: Optional[str]) -> List[Folder]:
        if folder_id:
            # An explicit folder is scanned even if its role is normally skipped
            return [f for f in folders if f.id == folder_id or f.role == folder_id][:1]
        return [f for f in folders if f.role not in EXCLUDED_FOLDER_ROLES]

    async def _list_candidates(self, account_id: str, folders: List[Folder], limit: int, log) -> List[Candidate]:
        settings = self.settings
        candidates: List[Candidate] = []
        for index, folder in enumerate(folders):
            if len(candidates) >= limit:
                break
            if index:
                await self.sleep(settings.folder_delay)

            count = min(settings.bulk_per_folder_limit, limit - len(candidates))
            try:
                page = await with_backoff(
                    lambda: self.provider.get_messages(account_id, folder.id, count),
                    label=f"getMessages:{folder.id}",
                    sleep=self.sleep,
                )
            except Exception as e:
                log.warning("Skipping folder, listing failed", folder=folder.id, error=str(e))
                if is_rate_limit_error(e):
                    await self.sleep(settings.folder_failure_cooldown)
                continue

            for message in page.messages:
                if message.folder_id is None:
                    message.folder_id = folder.id
                candidates.append((message, folder))
            log.debug("Listed folder", folder=folder.id, count=len(page.messages))

        return candidates[:limit]

    async def _upgrade_messages(self, account_id: str, candidates: List[Candidate], started: float, log) -> bool:
        """Replace listing items with full messages in small batches.

        Returns False if the budget ran out before all batches were done.
        """
        settings = self.settings
        policy = DEFAULT_POLICY.with_base_delay(settings.body_fetch_base_delay_ms)
        pending = [i for i, (message, _) in enumerate(candidates) if not is_full_message(message)]
        batch_size = settings.body_fetch_batch_size

        for start in range(0, len(pending), batch_size):
            if self._budget_spent(started):
                log.warning("Time budget spent while fetching bodies", fetched=start, needed=len(pending))
                return False
            if start:
                await self.sleep(settings.body_fetch_batch_delay)

            for position, index in enumerate(pending[start:start + batch_size]):
                if position:
                    await self.sleep(settings.body_fetch_message_delay)
                message, folder = candidates[index]
                try:
                    detail = await with_backoff(
                        lambda: self.provider.get_message(account_id, message.id),
                        policy=policy,
                        label=f"getMessage:{message.id}",
                        sleep=self.sleep,
                    )
                except Exception as e:
                    log.warning("Could not fetch full message", message=message.id, folder=folder.id, error=str(e))
                    continue
                if detail is None:
                    log.warning("Message disappeared before fetch", message=message.id, folder=folder.id)
                    continue
                if detail.folder_id is None:
                    detail.folder_id = folder.id
                candidates[index] = (detail, folder)

        return True

    def _budget_spent(self, started: float) -> bool:
        return self.clock() - started > self.settings.bulk_time_budget
