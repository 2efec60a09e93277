"""
Test suite for the filter query language.

Test Coverage:

1. Tokens: bare words, field:value, quoted values, negation, OR, parentheses
2. Quick filter lifting and `is:` leaves
3. Dates: ISO, today/yesterday, relative Nd/Nw/Nm/Ny, malformed dates
4. Unknown fields and the strict rule compiler
5. Round trip: parse(build_query(g)) matches the same messages as g
"""

import unittest
from datetime import date, datetime, timedelta, timezone

from factories import make_message

from mailsort.errors import InvalidRuleError
from mailsort.rules.matcher import ConditionMatcher, FolderContext
from mailsort.rules.parser import FilterQueryParser, compile_rule_query, validate_filter_group
from mailsort.rules.schema import FilterCondition, FilterGroup


def leaf(field, value, negate=False):
    return FilterCondition(field=field, value=value, negate=negate)


class TestFilterQueryParser(unittest.TestCase):

    def test_implicit_and_of_fields(self):
        """Test the worked example from:amazon has:attachment after:2026-01-01"""
        result = FilterQueryParser.parse('from:amazon has:attachment after:2026-01-01')

        self.assertIsNone(result.quick_filter)
        group = result.filter_group
        self.assertEqual(group.operator, 'AND')
        self.assertEqual(
            [(c.field, c.op, c.value) for c in group.conditions],
            [('from', 'contains', 'amazon'), ('has', 'is', 'attachment'), ('after', 'gte', '2026-01-01')],
        )
        self.assertEqual(group.groups, [])

    def test_or_binds_neighbours_only(self):
        """Test that `a b OR c d` is AND(a, OR(b, c), d)"""
        group = FilterQueryParser.parse('a b OR c d').filter_group

        self.assertEqual(group.operator, 'AND')
        self.assertEqual([c.value for c in group.conditions], ['a', 'd'])
        self.assertEqual(len(group.groups), 1)
        self.assertEqual(group.groups[0].operator, 'OR')
        self.assertEqual([c.value for c in group.groups[0].conditions], ['b', 'c'])

    def test_or_chain_is_one_group(self):
        group = FilterQueryParser.parse('subject:invoice OR subject:receipt OR subject:bill').filter_group

        self.assertEqual(group.operator, 'OR')
        self.assertEqual([c.value for c in group.conditions], ['invoice', 'receipt', 'bill'])

    def test_parenthesised_groups(self):
        test_cases = [
            {
                'query': '(from:a OR from:b) subject:x',
                'operator': 'AND',
                'conditions': ['x'],
                'group_operator': 'OR',
                'group_conditions': ['a', 'b'],
                'description': 'OR chain in parentheses becomes an OR subgroup'
            },
            {
                'query': 'from:a OR (subject:x subject:y)',
                'operator': 'OR',
                'conditions': ['a'],
                'group_operator': 'AND',
                'group_conditions': ['x', 'y'],
                'description': 'Plain terms in parentheses become an AND subgroup'
            },
        ]

        for case in test_cases:
            with self.subTest(case=case['description']):
                group = FilterQueryParser.parse(case['query']).filter_group
                self.assertEqual(group.operator, case['operator'])
                self.assertEqual([c.value for c in group.conditions], case['conditions'])
                self.assertEqual(group.groups[0].operator, case['group_operator'])
                self.assertEqual([c.value for c in group.groups[0].conditions], case['group_conditions'])

    def test_single_terms(self):
        """Test how individual tokens turn into leaves"""
        test_cases = [
            {'query': 'hello', 'expected': ('text', 'contains', 'hello', False), 'description': 'Bare word is free text'},
            {'query': '-hello', 'expected': ('text', 'contains', 'hello', True), 'description': 'Negated bare word'},
            {'query': '-folder:spam', 'expected': ('folder', 'contains', 'spam', True), 'description': 'Negated field'},
            {'query': '!from:boss', 'expected': ('from', 'contains', 'boss', True), 'description': 'Bang negation'},
            {'query': 'subject:"hello world"', 'expected': ('subject', 'contains', 'hello world', False),
             'description': 'Quoted value keeps its spaces'},
            {'query': 'subject:"say \\"hi\\""', 'expected': ('subject', 'contains', 'say "hi"', False),
             'description': 'Escaped quote inside a quoted value'},
            {'query': '"foo:bar"', 'expected': ('text', 'contains', 'foo:bar', False),
             'description': 'Quoted phrase is never a field'},
            {'query': 'from:*@amazon.com', 'expected': ('from', 'matches', '*@amazon.com', False),
             'description': 'Glob value switches to matches'},
            {'query': 'has:attachments', 'expected': ('has', 'is', 'attachment', False),
             'description': 'Plural has: alias'},
            {'query': 'FROM:Boss', 'expected': ('from', 'contains', 'Boss', False),
             'description': 'Field names are case-insensitive'},
        ]

        for case in test_cases:
            with self.subTest(case=case['description']):
                group = FilterQueryParser.parse(case['query']).filter_group
                self.assertEqual(len(group.conditions), 1)
                c = group.conditions[0]
                self.assertEqual((c.field, c.op, c.value, c.negate), case['expected'])

    def test_quick_filter_lifted_only_when_leading(self):
        result = FilterQueryParser.parse('is:unread from:boss')
        self.assertEqual(result.quick_filter, 'unread')
        self.assertEqual([(c.field, c.value) for c in result.filter_group.conditions], [('from', 'boss')])

        result = FilterQueryParser.parse('from:boss is:starred')
        self.assertIsNone(result.quick_filter)
        self.assertEqual([(c.field, c.value) for c in result.filter_group.conditions],
                         [('from', 'boss'), ('is', 'starred')])

        result = FilterQueryParser.parse('is:unread')
        self.assertEqual(result.quick_filter, 'unread')
        self.assertIsNone(result.filter_group)

    def test_unknown_fields_fall_back_to_text(self):
        result = FilterQueryParser.parse('label:work from:boss')

        self.assertEqual(result.unknown_fields, ['label'])
        first = result.filter_group.conditions[0]
        self.assertEqual((first.field, first.value), ('text', 'label:work'))

    def test_malformed_tokens_are_dropped(self):
        test_cases = [
            {'query': 'after:notadate from:x', 'fields': ['from'], 'description': 'Malformed date'},
            {'query': 'before:2026-13-45 from:x', 'fields': ['from'], 'description': 'Impossible date'},
            {'query': 'from: subject:x', 'fields': ['subject'], 'description': 'Empty value'},
            {'query': 'is:bogus from:x', 'fields': ['from'], 'description': 'Unsupported is: value'},
            {'query': 'OR from:x', 'fields': ['from'], 'description': 'Dangling OR'},
            {'query': 'from:x ) subject:y', 'fields': ['from', 'subject'], 'description': 'Stray closing paren'},
        ]

        for case in test_cases:
            with self.subTest(case=case['description']):
                group = FilterQueryParser.parse(case['query']).filter_group
                self.assertEqual([c.field for c in group.iter_conditions()], case['fields'])

    def test_empty_query(self):
        for query in ['', '   ', '()']:
            with self.subTest(query=query):
                result = FilterQueryParser.parse(query)
                self.assertIsNone(result.quick_filter)
                self.assertIsNone(result.filter_group)

    def test_parse_date(self):
        today = date(2026, 3, 10)
        test_cases = [
            ('2026-01-01', date(2026, 1, 1)),
            ('today', today),
            ('yesterday', date(2026, 3, 9)),
            ('7d', date(2026, 3, 3)),
            ('2w', date(2026, 2, 24)),
            ('1m', date(2026, 2, 10)),
            ('1y', date(2025, 3, 10)),
            ('soon', None),
            ('2026-02-30', None),
        ]

        for value, expected in test_cases:
            with self.subTest(value=value):
                self.assertEqual(FilterQueryParser.parse_date(value, today=today), expected)

    def test_relative_dates_resolve_to_iso(self):
        condition = FilterQueryParser.parse('after:3d').filter_group.conditions[0]
        self.assertEqual(condition.value, (date.today() - timedelta(days=3)).isoformat())


class TestBuildQuery(unittest.TestCase):

    def test_build_query(self):
        test_cases = [
            {
                'group': FilterGroup(conditions=[leaf('from', 'amazon'), leaf('subject', 'big sale')]),
                'quick': None,
                'expected': 'from:amazon subject:"big sale"',
                'description': 'AND joins with spaces, values with spaces are quoted'
            },
            {
                'group': FilterGroup(operator='OR', conditions=[leaf('subject', 'a'), leaf('subject', 'b')]),
                'quick': 'unread',
                'expected': 'is:unread (subject:a OR subject:b)',
                'description': 'Top-level OR is parenthesised after a quick filter'
            },
            {
                'group': FilterGroup(conditions=[leaf('folder', 'spam', negate=True), leaf('text', 'from:x')]),
                'quick': None,
                'expected': '-folder:spam "from:x"',
                'description': 'Negation prefix and field-like free text'
            },
        ]

        for case in test_cases:
            with self.subTest(case=case['description']):
                self.assertEqual(FilterQueryParser.build_query(case['group'], case['quick']), case['expected'])

    def test_round_trip_matches_same_messages(self):
        """Test that parse(build_query(g)) matches the same messages as g"""
        trees = [
            FilterGroup(conditions=[leaf('from', 'amazon'), leaf('has', 'attachment'), leaf('after', '2026-01-01')]),
            FilterGroup(operator='OR', conditions=[leaf('subject', 'invoice'), leaf('subject', 'receipt')]),
            FilterGroup(
                operator='OR',
                conditions=[leaf('from', 'boss')],
                groups=[FilterGroup(conditions=[leaf('subject', 'weekly report'), leaf('is', 'unread')])],
            ),
            FilterGroup(
                conditions=[leaf('text', 'OR'), leaf('text', '-dash'), leaf('text', 'a:b')],
                groups=[FilterGroup(operator='OR', conditions=[leaf('to', 'me@example.com')])],
            ),
            FilterGroup(conditions=[
                leaf('from', '*@amazon.com'),
                leaf('folder', 'spam', negate=True),
                leaf('before', '2026-06-30'),
                leaf('filename', 'in voice'),
                leaf('subject', 'say "hi" \\ there'),
            ]),
            FilterGroup(operator='OR', conditions=[leaf('is', 'unread'), leaf('from', 'boss')]),
            FilterGroup(conditions=[leaf('is', 'starred'), leaf('from', 'amazon')]),
            compile_rule_query('is:unread from:boss OR subject:invoice'),
        ]
        messages = [
            make_message(sender='orders@amazon.com', subject='Your invoice', attachments=['in voice.pdf']),
            make_message(sender='boss@corp.com', subject='Weekly report', unread=True),
            make_message(sender='x@y.z', subject='receipt', body='OR -dash a:b',
                         date=datetime(2025, 12, 1, tzinfo=timezone.utc)),
            make_message(sender='orders@amazon.com', subject='say "hi" \\ there', attachments=['in voice.pdf']),
            make_message(sender='friend@example.com', subject='hi', to=('other@example.com',)),
            make_message(sender='other@x.com', subject='ping', unread=True),
            make_message(sender='orders@amazon.com', subject='Shipped', starred=True),
        ]
        matcher = ConditionMatcher()
        folder = FolderContext(id='inbox', role='inbox', name='Inbox')

        for tree in trees:
            query = FilterQueryParser.build_query(tree)
            parsed = FilterQueryParser.parse(query)
            with self.subTest(query=query):
                self.assertEqual(parsed.unknown_fields, [])
                for message in messages:
                    self.assertEqual(matcher.evaluate(parsed.filter_group, message, folder),
                                     matcher.evaluate(tree, message, folder),
                                     f"Round trip differs on message {message.subject!r}")


class TestRuleCompilation(unittest.TestCase):

    def test_compile_rule_query_folds_quick_filter(self):
        group = compile_rule_query('is:unread from:boss')
        self.assertEqual([(c.field, c.value) for c in group.conditions], [('is', 'unread'), ('from', 'boss')])

        group = compile_rule_query('is:starred')
        self.assertEqual([(c.field, c.value) for c in group.conditions], [('is', 'starred')])

        group = compile_rule_query('is:unread subject:a OR subject:b')
        self.assertEqual(group.operator, 'AND')
        self.assertEqual(group.conditions[0].field, 'is')

    def test_compiled_quick_filter_survives_round_trip(self):
        group = compile_rule_query('is:unread from:boss')
        query = FilterQueryParser.build_query(group)
        parsed = FilterQueryParser.parse(query)

        self.assertEqual(query, '(is:unread from:boss)')
        self.assertIsNone(parsed.quick_filter)
        self.assertEqual([(c.field, c.value) for c in parsed.filter_group.conditions],
                         [('is', 'unread'), ('from', 'boss')])

        or_tree = FilterGroup(operator='OR', conditions=[leaf('is', 'unread'), leaf('from', 'boss')])
        self.assertEqual(FilterQueryParser.build_query(or_tree), '(is:unread OR from:boss)')
        self.assertEqual(FilterQueryParser.parse('(is:unread OR from:boss)').filter_group.operator, 'OR')

    def test_compile_rule_query_rejects(self):
        for query in ['', 'after:garbage', 'label:work from:x', '()']:
            with self.subTest(query=query):
                with self.assertRaises(InvalidRuleError):
                    compile_rule_query(query)

    def test_validate_filter_group(self):
        with self.assertRaises(InvalidRuleError):
            validate_filter_group(None)
        with self.assertRaises(InvalidRuleError):
            validate_filter_group(FilterGroup(groups=[FilterGroup()]))

        group = FilterGroup(groups=[FilterGroup(conditions=[leaf('subject', 'x')])])
        self.assertIs(validate_filter_group(group), group)


if __name__ == '__main__':
    unittest.main()
