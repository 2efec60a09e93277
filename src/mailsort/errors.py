"""
Exception types shared by the auto-sort engine
"""
from typing import Optional


class MailsortError(Exception):
    """Base class for all mailsort errors"""


class ProviderError(MailsortError):
    """A mail provider call failed for a reason other than rate limiting"""

    status: Optional[int] = None

    def __init__(self, message: str = "", status: Optional[int] = None):
        super().__init__(message)
        if status is not None:
            self.status = status


class RateLimitError(ProviderError):
    """The upstream mail server asked us to slow down (HTTP 429)"""

    status = 429

    def __init__(self, message: str = "Too Many Requests", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class InvalidRuleError(MailsortError):
    """A rule or its condition tree cannot be compiled"""


class RuleNotFoundError(MailsortError):
    """No rule with the given id exists for the account"""

    def __init__(self, account_id: str, rule_id: str):
        super().__init__(f"Rule {rule_id} not found for account {account_id}")
        self.account_id = account_id
        self.rule_id = rule_id


class RuleDisabledError(MailsortError):
    """The requested rule exists but is disabled"""

    def __init__(self, rule_id: str):
        super().__init__(f"Rule {rule_id} is disabled")
        self.rule_id = rule_id


class ActionError(MailsortError):
    """An action of a matched rule could not be applied"""

    def __init__(self, action_type: str, message_id: str, reason: str):
        super().__init__(f"Action {action_type} failed for message {message_id}: {reason}")
        self.action_type = action_type
        self.message_id = message_id
