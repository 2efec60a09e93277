"""
Rule save/delete flow: validate, persist, and queue apply-to-existing
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from pydantic import ValidationError

from mailsort.database import RuleStore
from mailsort.errors import InvalidRuleError
from mailsort.rules.parser import compile_rule_query, validate_filter_group
from mailsort.rules.schema import AutoSortRule, FilterGroup
from .jobs import Job, JobQueue

logger = structlog.get_logger()

# camelCase keys accepted from callers, by attribute name
KEY_ALIASES = {
    'applyToExisting': 'apply_to_existing',
    'createdAt': 'created_at',
    'updatedAt': 'updated_at',
}


class RuleService:
    """Entry point used when a user creates, edits or removes a rule"""

    def __init__(self, store: RuleStore, job_queue: Optional[JobQueue] = None):
        self.store = store
        self.job_queue = job_queue
        self.last_job: Optional[Job] = None

    def save_rule(self, account_id: str, data: Dict[str, Any]) -> AutoSortRule:
        """Create or update a rule.

        `data` is a rule document, or carries a `query` string instead of
        `conditions`. Nothing is persisted when validation fails.
        """
        data = {KEY_ALIASES.get(key, key): value for key, value in data.items()}
        query = data.pop('query', None)
        if query is not None:
            data['conditions'] = compile_rule_query(query)
        elif 'conditions' in data:
            try:
                conditions = FilterGroup.model_validate(data['conditions'])
            except ValidationError as e:
                raise InvalidRuleError(f"Invalid conditions: {e}") from e
            data['conditions'] = validate_filter_group(conditions)

        rules = self.store.load_rules(account_id)
        existing = next((r for r in rules if data.get('id') and r.id == data['id']), None)
        now = datetime.now(timezone.utc)

        if existing is not None:
            payload = existing.model_dump(exclude={'apply_to_existing'})
            payload.update(data)
            payload.update(id=existing.id, created_at=existing.created_at, updated_at=now)
        else:
            payload = dict(data)
            payload.update(created_at=now, updated_at=now)

        try:
            rule = AutoSortRule.model_validate(payload)
        except ValidationError as e:
            raise InvalidRuleError(str(e)) from e

        if existing is not None:
            rules = [rule if r.id == rule.id else r for r in rules]
        else:
            rules.append(rule)
        self.store.save_rules(account_id, rules)
        logger.info("Saved rule", account=account_id, rule=rule.id, name=rule.name,
                    created=existing is None, enabled=rule.enabled)

        self.last_job = None
        if rule.apply_to_existing and rule.enabled and self.job_queue is not None:
            try:
                self.last_job = self.job_queue.add_job(account_id, rule.id)
            except Exception as e:
                # The rule is saved; only the backfill is lost
                logger.error("Failed to queue apply-to-existing job", account=account_id, rule=rule.id,
                             error=str(e))
        return rule

    def delete_rule(self, account_id: str, rule_id: str) -> None:
        self.store.delete_rule(account_id, rule_id)
