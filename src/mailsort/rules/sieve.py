"""
Export auto-sort rules as a server-side Sieve script
"""
import logging
from typing import Dict, Iterable, List, Optional

from .schema import AutoSortRule, FilterCondition, FilterGroup

logger = logging.getLogger(__name__)

HEADER_FIELDS = {
    'from': 'From',
    'to': 'To',
    'subject': 'Subject',
}

EMPTY_SCRIPT = '# No auto-sort rules could be converted to Sieve.\n'


def _escape(value: str) -> str:
    return value.replace('\\', '\\\\').replace('"', '\\"')


def condition_to_sieve(condition: FilterCondition) -> Optional[str]:
    """Sieve test for a header condition, None for anything else"""
    header = HEADER_FIELDS.get(condition.field)
    if header is None or condition.op not in ('contains', 'matches'):
        return None
    match_type = ':matches' if condition.op == 'matches' else ':contains'
    value = condition.value
    if condition.op == 'matches':
        # Our globs match anywhere in the header
        value = f"*{value.strip('*')}*"
    test = f'header {match_type} "{header}" "{_escape(value)}"'
    return f"not {test}" if condition.negate else test


def group_to_sieve(group: FilterGroup) -> Optional[str]:
    """Sieve test for a whole group, None if any leaf cannot be expressed"""
    parts = []
    for condition in group.conditions:
        test = condition_to_sieve(condition)
        if test is None:
            return None
        parts.append(test)
    for sub in group.groups:
        if sub.is_empty():
            continue
        test = group_to_sieve(sub)
        if test is None:
            return None
        parts.append(test)

    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    combinator = 'anyof' if group.operator == 'OR' else 'allof'
    return f"{combinator} ({', '.join(parts)})"


def _rule_commands(rule: AutoSortRule, folder_names: Dict[str, str]) -> List[tuple]:
    """(command, extension) pairs for the convertible actions of a rule"""
    commands = []
    for action in rule.actions:
        if action.type == 'moveToFolder':
            name = folder_names.get(action.folder_id)
            if name:
                commands.append((f'fileinto "{_escape(name)}";', 'fileinto'))
        elif action.type == 'markRead':
            commands.append(('addflag "\\\\Seen";', 'imap4flags'))
        elif action.type == 'markImportant':
            commands.append(('addflag "\\\\Flagged";', 'imap4flags'))
        elif action.type == 'delete':
            commands.append(('discard;', None))
        elif action.type == 'forward':
            commands.append((f'redirect "{_escape(action.email)}";', None))
    return commands


def rules_to_sieve(rules: Iterable[AutoSortRule], folder_names: Dict[str, str]) -> str:
    """Convert the expressible enabled rules into one Sieve script.

    Rules with body, date, folder or attachment conditions, or with no
    convertible action, are skipped and keep running through the engine.
    """
    blocks = []
    requires: List[str] = []
    for rule in rules:
        if not rule.enabled:
            continue
        test = group_to_sieve(rule.conditions)
        commands = _rule_commands(rule, folder_names) if test else []
        if not commands:
            logger.debug(f"Rule {rule.name} cannot be expressed in Sieve, skipping")
            continue

        for _, extension in commands:
            if extension and extension not in requires:
                requires.append(extension)
        lines = [f"# Rule: {rule.name}", f"if {test} {{"]
        lines += [f"  {command}" for command, _ in commands]
        lines += ['}', '']
        blocks.append('\n'.join(lines))

    if not blocks:
        return EMPTY_SCRIPT

    header = ''
    if requires:
        quoted = ', '.join(f'"{r}"' for r in requires)
        header = f"require [{quoted}];\n\n"
    return header + '\n'.join(blocks)
