"""
Auto-sort runners: bulk passes, the live daemon and the job queue
"""
from .bulk import BulkApplyResult, BulkRuleApplier
from .daemon import DaemonSupervisor
from .jobs import Job, JobQueue, JobWorker
from .service import RuleService

__all__ = [
    'BulkApplyResult',
    'BulkRuleApplier',
    'DaemonSupervisor',
    'Job',
    'JobQueue',
    'JobWorker',
    'RuleService',
]
