"""
Search-bar query language: string <-> condition tree
"""
import logging
import re
from datetime import date, timedelta
from typing import List, Optional, Tuple, Union

from dateutil.relativedelta import relativedelta
from pydantic import ValidationError

from mailsort.errors import InvalidRuleError
from .schema import (
    DATE_FIELDS,
    QUICK_FILTERS,
    SUPPORTED_FIELDS,
    FilterCondition,
    FilterGroup,
    ParseResult,
)

logger = logging.getLogger(__name__)

# Field names accepted in queries; `text` is internal only
FIELD_NAMES = {name: name for name in SUPPORTED_FIELDS if name != 'text'}

_RELATIVE_DATE = re.compile(r'^(\d+)([dwmy])$', re.IGNORECASE)
_FIELD_TOKEN = re.compile(r'^([a-z][a-z-]*):(.*)$', re.IGNORECASE | re.DOTALL)
_NEEDS_QUOTES = re.compile(r'[\s()"\\]')

# Token kinds produced by the tokenizer
LPAREN, RPAREN, OR, TERM = 'LPAREN', 'RPAREN', 'OR', 'TERM'


class Token:
    """A lexical unit of a query"""

    def __init__(self, kind: str, text: str = '', negate: bool = False, quoted: bool = False,
                 phrase: bool = False):
        self.kind = kind
        self.text = text
        self.negate = negate
        self.quoted = quoted
        # Word opened with a quote: always free text, never field:value
        self.phrase = phrase

    def __repr__(self) -> str:
        return f"Token({self.kind}, {self.text!r}, negate={self.negate}, quoted={self.quoted})"


Node = Union[FilterCondition, FilterGroup]


class FilterQueryParser:
    """Parser for the search-bar filter language.

    Grammar (whitespace separated):

        query  := term*                      implicit AND
        term   := atom ('OR' atom)*          OR binds its neighbours only
        atom   := '(' query ')' | ['-'] word | ['-'] field ':' value

    A leading `is:<unread|read|starred|draft>` is lifted out as the quick
    filter. Unknown field names fall back to free text and are reported in
    `unknown_fields`; malformed dates are dropped.
    """

    @classmethod
    def parse(cls, query: str) -> ParseResult:
        """Parse a query string into a quick filter and a condition tree"""
        if not query or not query.strip():
            return ParseResult()

        tokens = cls.tokenize(query)
        quick_filter = None
        if tokens and cls._is_quick_filter(tokens[0]):
            quick_filter = tokens.pop(0).text.split(':', 1)[1].lower()

        unknown_fields: List[str] = []
        nodes, pos = cls._parse_sequence(tokens, 0, unknown_fields)
        while pos < len(tokens):
            # Unbalanced ')' at top level is ignored
            more, pos = cls._parse_sequence(tokens, pos + 1, unknown_fields)
            nodes.extend(more)
        group = cls._to_group(nodes)
        if group is not None and group.is_empty() and not group.groups:
            group = None

        logger.debug(f"Parsed {query!r} -> quick={quick_filter} group={group}")
        return ParseResult(quick_filter=quick_filter, filter_group=group, unknown_fields=unknown_fields)

    @staticmethod
    def _is_quick_filter(token: Token) -> bool:
        if token.kind != TERM or token.negate or token.quoted:
            return False
        field, _, value = token.text.partition(':')
        return field.lower() == 'is' and value.lower() in QUICK_FILTERS

    @staticmethod
    def tokenize(query: str) -> List[Token]:
        """Split a query into tokens, honouring double quotes and parentheses"""
        tokens: List[Token] = []
        i, n = 0, len(query)

        while i < n:
            char = query[i]
            if char.isspace():
                i += 1
                continue
            if char == '(':
                tokens.append(Token(LPAREN))
                i += 1
                continue
            if char == ')':
                tokens.append(Token(RPAREN))
                i += 1
                continue

            negate = False
            if char in '-!' and i + 1 < n and not query[i + 1].isspace():
                negate = True
                i += 1

            # Read one word; quoted sections may contain spaces and parens
            text = []
            quoted = False
            phrase = query[i] == '"'
            while i < n and not query[i].isspace() and query[i] not in '()':
                if query[i] == '"':
                    quoted = True
                    i += 1
                    while i < n and query[i] != '"':
                        if query[i] == '\\' and i + 1 < n:
                            i += 1
                        text.append(query[i])
                        i += 1
                    i += 1  # closing quote (or end of input)
                    continue
                text.append(query[i])
                i += 1

            word = ''.join(text)
            if not word and not quoted:
                continue
            if word == 'OR' and not quoted and not negate:
                tokens.append(Token(OR))
            else:
                tokens.append(Token(TERM, word, negate=negate, quoted=quoted, phrase=phrase))

        return tokens

    @classmethod
    def _parse_sequence(cls, tokens: List[Token], pos: int, unknown: List[str]) -> Tuple[List[Node], int]:
        """Parse terms until a closing paren or the end; returns AND-ed nodes"""
        nodes: List[Node] = []
        while pos < len(tokens) and tokens[pos].kind != RPAREN:
            if tokens[pos].kind == OR:
                # Dangling OR with nothing on its left
                pos += 1
                continue

            alternatives: List[Node] = []
            node, pos = cls._parse_atom(tokens, pos, unknown)
            if node is not None:
                alternatives.append(node)
            while pos < len(tokens) and tokens[pos].kind == OR:
                pos += 1
                if pos >= len(tokens) or tokens[pos].kind in (OR, RPAREN):
                    break
                node, pos = cls._parse_atom(tokens, pos, unknown)
                if node is not None:
                    alternatives.append(node)

            if len(alternatives) == 1:
                nodes.append(alternatives[0])
            elif alternatives:
                nodes.append(cls._make_group('OR', alternatives))
        return nodes, pos

    @classmethod
    def _parse_atom(cls, tokens: List[Token], pos: int, unknown: List[str]) -> Tuple[Optional[Node], int]:
        token = tokens[pos]
        if token.kind == LPAREN:
            inner, pos = cls._parse_sequence(tokens, pos + 1, unknown)
            if pos < len(tokens) and tokens[pos].kind == RPAREN:
                pos += 1
            # A parenthesised OR chain is an OR group, anything else AND
            if len(inner) == 1 and isinstance(inner[0], FilterGroup):
                return inner[0], pos
            return cls._make_group('AND', inner), pos
        return cls._parse_condition(token, unknown), pos + 1

    @classmethod
    def _parse_condition(cls, token: Token, unknown: List[str]) -> Optional[FilterCondition]:
        """Turn a TERM token into a leaf, or None if it must be dropped"""
        match = None if token.phrase else _FIELD_TOKEN.match(token.text)
        if match is None:
            return FilterCondition(field='text', value=token.text, negate=token.negate)

        name, value = match.group(1).lower(), match.group(2)
        if name == 'has' and value.lower() in ('attachment', 'attachments'):
            return FilterCondition(field='has', value='attachment', negate=token.negate)

        field = FIELD_NAMES.get(name)
        if field is None or field == 'has':
            unknown.append(name)
            return FilterCondition(field='text', value=token.text, negate=token.negate)

        if not value and not token.quoted:
            return None

        if field in DATE_FIELDS:
            parsed = cls.parse_date(value)
            if parsed is None:
                logger.debug(f"Dropping malformed date token {token.text!r}")
                return None
            value = parsed.isoformat()

        try:
            return FilterCondition(field=field, value=value, negate=token.negate)
        except ValidationError:
            logger.debug(f"Dropping invalid token {token.text!r}")
            return None

    @staticmethod
    def parse_date(value: str, today: Optional[date] = None) -> Optional[date]:
        """Parse YYYY-MM-DD, today, yesterday or a relative Nd/Nw/Nm/Ny"""
        value = value.strip().lower()
        today = today or date.today()

        if re.match(r'^\d{4}-\d{2}-\d{2}$', value):
            try:
                return date.fromisoformat(value)
            except ValueError:
                return None
        if value == 'today':
            return today
        if value == 'yesterday':
            return today - timedelta(days=1)

        match = _RELATIVE_DATE.match(value)
        if match:
            amount, unit = int(match.group(1)), match.group(2)
            delta = {
                'd': relativedelta(days=amount),
                'w': relativedelta(weeks=amount),
                'm': relativedelta(months=amount),
                'y': relativedelta(years=amount),
            }[unit]
            return today - delta
        return None

    @staticmethod
    def _make_group(operator: str, nodes: List[Node]) -> FilterGroup:
        return FilterGroup(
            operator=operator,
            conditions=[n for n in nodes if isinstance(n, FilterCondition)],
            groups=[n for n in nodes if isinstance(n, FilterGroup)],
        )

    @classmethod
    def _to_group(cls, nodes: List[Node]) -> Optional[FilterGroup]:
        if not nodes:
            return None
        if len(nodes) == 1 and isinstance(nodes[0], FilterGroup):
            return nodes[0]
        return cls._make_group('AND', nodes)

    # --- tree -> string ---

    @classmethod
    def build_query(cls, filter_group: Optional[FilterGroup] = None, quick_filter: Optional[str] = None) -> str:
        """Render a condition tree back into query syntax"""
        parts = []
        if quick_filter:
            parts.append(f"is:{quick_filter}")
        if filter_group is not None:
            body = cls._build_group(filter_group)
            if body:
                # A top-level OR must stay one group when it follows a quick filter
                if quick_filter and filter_group.operator == 'OR' and cls._size(filter_group) > 1:
                    body = f"({body})"
                # A leading is: leaf would be lifted into the quick filter on parse
                elif not quick_filter and cls._leads_with_quick_filter(filter_group):
                    body = f"({body})"
                parts.append(body)
        return ' '.join(parts)

    @staticmethod
    def _size(group: FilterGroup) -> int:
        return len(group.conditions) + len(group.groups)

    @staticmethod
    def _leads_with_quick_filter(group: FilterGroup) -> bool:
        if not group.conditions:
            return False
        first = group.conditions[0]
        return first.field == 'is' and not first.negate and first.value.lower() in QUICK_FILTERS

    @classmethod
    def _build_group(cls, group: FilterGroup) -> str:
        parts = [cls._build_condition(c) for c in group.conditions]
        for sub in group.groups:
            parts.append(f"({cls._build_group(sub)})")
        separator = ' OR ' if group.operator == 'OR' else ' '
        return separator.join(parts)

    @classmethod
    def _build_condition(cls, condition: FilterCondition) -> str:
        prefix = '-' if condition.negate else ''
        if condition.field == 'text':
            return prefix + cls._quote(condition.value, force=_FIELD_TOKEN.match(condition.value) is not None
                                       or condition.value == 'OR' or condition.value.startswith(('-', '!')))
        return f"{prefix}{condition.field}:{cls._quote(condition.value)}"

    @staticmethod
    def _quote(value: str, force: bool = False) -> str:
        if not value or force or _NEEDS_QUOTES.search(value):
            escaped = value.replace('\\', '\\\\').replace('"', '\\"')
            return f'"{escaped}"'
        return value


def validate_filter_group(group: Optional[FilterGroup]) -> FilterGroup:
    """Check a condition tree before it is persisted with a rule"""
    if group is None or group.is_empty():
        raise InvalidRuleError('Rule conditions are empty')
    for condition in group.iter_conditions():
        if condition.field not in SUPPORTED_FIELDS:
            raise InvalidRuleError(f"Unsupported field: {condition.field}")
    return group


def compile_rule_query(query: str) -> FilterGroup:
    """Compile a query into a rule condition tree, rejecting anything sloppy"""
    result = FilterQueryParser.parse(query)
    if result.unknown_fields:
        raise InvalidRuleError(f"Unknown field(s): {', '.join(sorted(set(result.unknown_fields)))}")

    group = result.filter_group
    if result.quick_filter:
        quick = FilterCondition(field='is', value=result.quick_filter)
        if group is None:
            group = FilterGroup(conditions=[quick])
        elif group.operator == 'AND':
            group = group.model_copy(update={'conditions': [quick] + group.conditions})
        else:
            group = FilterGroup(conditions=[quick], groups=[group])
    return validate_filter_group(group)
