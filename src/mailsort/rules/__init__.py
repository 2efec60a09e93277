"""
Rules package: schema, query language, matching and actions
"""
from .actions import ActionExecutor
from .engine import RulesEngine
from .matcher import ConditionMatcher, requires_full_message
from .parser import FilterQueryParser, compile_rule_query, validate_filter_group
from .schema import AutoSortRule, FilterCondition, FilterGroup, ParseResult, RulesConfig
from .sieve import rules_to_sieve

__all__ = [
    'ActionExecutor',
    'AutoSortRule',
    'ConditionMatcher',
    'FilterCondition',
    'FilterGroup',
    'FilterQueryParser',
    'ParseResult',
    'RulesConfig',
    'RulesEngine',
    'compile_rule_query',
    'requires_full_message',
    'rules_to_sieve',
    'validate_filter_group',
]
