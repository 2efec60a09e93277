"""
Persistent per-account storage of auto-sort rules
"""
import logging
from typing import List

from mailsort.errors import RuleNotFoundError
from mailsort.rules.schema import AutoSortRule
from .connection import SessionFactory, get_db_session
from .models import StoredRule

logger = logging.getLogger(__name__)


class RuleStore:
    """Rules are stored one JSON row each, in list order per account"""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def load_rules(self, account_id: str) -> List[AutoSortRule]:
        """Load every rule of an account, enabled or not"""
        with get_db_session(self.session_factory) as db:
            rows = db.query(StoredRule).filter(
                StoredRule.account_id == account_id
            ).order_by(StoredRule.position).all()
            rules = []
            for row in rows:
                try:
                    rules.append(AutoSortRule.model_validate(row.data))
                except ValueError as e:
                    # A bad row must not hide the other rules
                    logger.error(f"Skipping unreadable rule {row.rule_id} of account {account_id}: {e}")
            return rules

    def load_enabled_rules(self, account_id: str) -> List[AutoSortRule]:
        return [rule for rule in self.load_rules(account_id) if rule.enabled]

    def get_rule(self, account_id: str, rule_id: str) -> AutoSortRule:
        """Load one rule or raise RuleNotFoundError"""
        with get_db_session(self.session_factory) as db:
            row = db.query(StoredRule).filter(
                StoredRule.account_id == account_id,
                StoredRule.rule_id == rule_id,
            ).first()
            if row is None:
                raise RuleNotFoundError(account_id, rule_id)
            return AutoSortRule.model_validate(row.data)

    def save_rules(self, account_id: str, rules: List[AutoSortRule]) -> None:
        """Replace the rule list of an account"""
        with get_db_session(self.session_factory) as db:
            db.query(StoredRule).filter(StoredRule.account_id == account_id).delete()
            for position, rule in enumerate(rules):
                db.add(StoredRule(
                    account_id=account_id,
                    rule_id=rule.id,
                    position=position,
                    enabled=rule.enabled,
                    data=rule.to_json(),
                ))
        logger.debug(f"Saved {len(rules)} rule(s) for account {account_id}")

    def delete_rule(self, account_id: str, rule_id: str) -> None:
        """Remove one rule or raise RuleNotFoundError"""
        with get_db_session(self.session_factory) as db:
            deleted = db.query(StoredRule).filter(
                StoredRule.account_id == account_id,
                StoredRule.rule_id == rule_id,
            ).delete()
            if not deleted:
                raise RuleNotFoundError(account_id, rule_id)
        logger.info(f"Deleted rule {rule_id} of account {account_id}")
