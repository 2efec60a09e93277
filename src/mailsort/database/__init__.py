"""
Database package for mailsort
"""
from .connection import create_session_factory, get_db_session, init_db
from .models import Base, FilterJob, StoredRule
from .rule_store import RuleStore

__all__ = [
    'Base',
    'FilterJob',
    'RuleStore',
    'StoredRule',
    'create_session_factory',
    'get_db_session',
    'init_db',
]
