"""
Test suite for the condition matcher.

Test Coverage:

1. Leaf semantics for every supported field, with and without negation
2. AND/OR short-circuit, empty groups and monotonicity
3. Rule-level checks: disabled rules, full-message requirement, folders
4. Folder index caching and fallback when listing folders fails
"""

import unittest
from datetime import datetime, timezone

from factories import listing, make_message, make_rule

from mailsort.errors import ProviderError
from mailsort.providers import Attachment, Folder, InMemoryProvider
from mailsort.rules.matcher import ConditionMatcher, FolderContext, requires_full_message
from mailsort.rules.parser import FilterQueryParser
from mailsort.rules.schema import FilterCondition, FilterGroup


def leaf(field, value, negate=False):
    return FilterCondition(field=field, value=value, negate=negate)


class TestLeafEvaluation(unittest.TestCase):
    def setUp(self):
        self.matcher = ConditionMatcher()
        self.message = make_message(
            sender='orders@amazon.com',
            sender_name='Amazon Orders',
            subject='Your Invoice #42',
            body='Thanks for shopping. Unsubscribe here.',
            to=('me@example.com', 'team@example.com'),
            attachments=[Attachment(id='a1', filename='invoice-42.pdf', content_text='Total due: 19.99 EUR')],
            unread=True,
        )
        self.folder = FolderContext(id='f-work', role='custom', name='Work')

    def test_leaf_conditions(self):
        test_cases = [
            # from
            {'condition': leaf('from', 'amazon'), 'should_match': True, 'description': 'From domain substring'},
            {'condition': leaf('from', 'AMAZON'), 'should_match': True, 'description': 'From case insensitive'},
            {'condition': leaf('from', 'Orders'), 'should_match': True, 'description': 'From display name'},
            {'condition': leaf('from', '*@amazon.com'), 'should_match': True, 'description': 'From glob'},
            {'condition': leaf('from', '*@amazon.co'), 'should_match': False, 'description': 'From glob is anchored'},
            {'condition': leaf('from', 'ebay'), 'should_match': False, 'description': 'From negative match'},
            {'condition': leaf('from', 'ebay', negate=True), 'should_match': True, 'description': 'Negated from'},
            # to
            {'condition': leaf('to', 'team@'), 'should_match': True, 'description': 'Any recipient matches'},
            {'condition': leaf('to', 'boss'), 'should_match': False, 'description': 'To negative match'},
            # subject / body / text
            {'condition': leaf('subject', 'invoice'), 'should_match': True, 'description': 'Subject substring'},
            {'condition': leaf('subject', 'inv*42'), 'should_match': True, 'description': 'Subject glob'},
            {'condition': leaf('subject', 'receipt'), 'should_match': False, 'description': 'Subject negative'},
            {'condition': leaf('body', 'unsubscribe'), 'should_match': True, 'description': 'Body substring'},
            {'condition': leaf('text', 'shopping'), 'should_match': True, 'description': 'Free text in body'},
            {'condition': leaf('text', '#42'), 'should_match': True, 'description': 'Free text in subject'},
            # attachments
            {'condition': leaf('has', 'attachment'), 'should_match': True, 'description': 'Has attachment'},
            {'condition': leaf('filename', 'invoice'), 'should_match': True, 'description': 'Filename substring'},
            {'condition': leaf('filename', '*.pdf'), 'should_match': True, 'description': 'Filename glob'},
            {'condition': leaf('filename', '19.99'), 'should_match': False, 'description': 'Filename ignores content'},
            {'condition': leaf('attachment', '19.99'), 'should_match': True, 'description': 'Attachment content'},
            # dates (message is dated 2026-02-01)
            {'condition': leaf('after', '2026-01-01'), 'should_match': True, 'description': 'After earlier day'},
            {'condition': leaf('after', '2026-02-01'), 'should_match': True, 'description': 'After is inclusive'},
            {'condition': leaf('after', '2026-02-02'), 'should_match': False, 'description': 'After later day'},
            {'condition': leaf('before', '2026-02-01'), 'should_match': True, 'description': 'Before is inclusive'},
            {'condition': leaf('before', '2026-01-31'), 'should_match': False, 'description': 'Before earlier day'},
            # folder
            {'condition': leaf('folder', 'work'), 'should_match': True, 'description': 'Folder by name'},
            {'condition': leaf('folder', 'f-work'), 'should_match': True, 'description': 'Folder by id'},
            {'condition': leaf('folder', 'custom'), 'should_match': True, 'description': 'Folder by role'},
            {'condition': leaf('folder', 'spam'), 'should_match': False, 'description': 'Other folder'},
            # is
            {'condition': leaf('is', 'unread'), 'should_match': True, 'description': 'Is unread'},
            {'condition': leaf('is', 'read'), 'should_match': False, 'description': 'Is read'},
            {'condition': leaf('is', 'starred'), 'should_match': False, 'description': 'Is starred'},
            {'condition': leaf('is', 'draft'), 'should_match': False, 'description': 'Is draft'},
        ]

        for case in test_cases:
            with self.subTest(case=case['description']):
                result = self.matcher.evaluate_condition(case['condition'], self.message, self.folder)
                self.assertEqual(result, case['should_match'], case['description'])

    def test_no_attachments_never_match(self):
        message = make_message(subject='invoice')
        for condition in [leaf('filename', 'invoice'), leaf('attachment', 'invoice'), leaf('has', 'attachment')]:
            with self.subTest(field=condition.field):
                self.assertFalse(self.matcher.evaluate_condition(condition, message))

    def test_draft_from_folder_role(self):
        message = make_message()
        drafts = FolderContext(id='drafts', role='drafts', name='Drafts')
        self.assertTrue(self.matcher.evaluate_condition(leaf('is', 'draft'), message, drafts))
        self.assertTrue(self.matcher.evaluate_condition(leaf('is', 'draft'), make_message(draft=True)))


class TestGroupEvaluation(unittest.TestCase):
    def setUp(self):
        self.matcher = ConditionMatcher()
        self.message = make_message(sender='boss@corp.com', subject='Weekly report')

    def test_and_or(self):
        hit, miss = leaf('subject', 'report'), leaf('subject', 'invoice')
        test_cases = [
            {'group': FilterGroup(conditions=[hit, hit]), 'should_match': True, 'description': 'AND all true'},
            {'group': FilterGroup(conditions=[hit, miss]), 'should_match': False, 'description': 'AND one false'},
            {'group': FilterGroup(operator='OR', conditions=[miss, hit]), 'should_match': True,
             'description': 'OR one true'},
            {'group': FilterGroup(operator='OR', conditions=[miss, miss]), 'should_match': False,
             'description': 'OR all false'},
            {'group': FilterGroup(), 'should_match': True, 'description': 'Empty group is vacuously true'},
            {'group': FilterGroup(operator='OR', conditions=[miss], groups=[FilterGroup()]), 'should_match': False,
             'description': 'Empty subgroup does not turn OR true'},
            {'group': FilterGroup(conditions=[hit], groups=[FilterGroup(operator='OR', conditions=[miss, hit])]),
             'should_match': True, 'description': 'Nested OR under AND'},
        ]

        for case in test_cases:
            with self.subTest(case=case['description']):
                self.assertEqual(self.matcher.evaluate(case['group'], self.message), case['should_match'])

    def test_monotonicity(self):
        """Adding to AND can only remove matches, adding to OR can only add them"""
        base = [leaf('from', 'boss'), leaf('subject', 'invoice')]
        extra = [leaf('subject', 'report'), leaf('subject', 'nothing'), leaf('to', 'me', negate=True)]

        for operator in ['AND', 'OR']:
            for index in range(len(base)):
                group = FilterGroup(operator=operator, conditions=base[:index + 1])
                before = self.matcher.evaluate(group, self.message)
                for condition in extra:
                    with self.subTest(operator=operator, size=index + 1, added=condition.value):
                        grown = group.model_copy(update={'conditions': group.conditions + [condition]})
                        after = self.matcher.evaluate(grown, self.message)
                        if operator == 'AND':
                            self.assertFalse(after and not before)
                        else:
                            self.assertFalse(before and not after)

    def test_requires_full_message(self):
        test_cases = [
            ('from:amazon subject:x', False),
            ('body:unsubscribe', True),
            ('hello', True),
            ('from:a OR (filename:pdf)', True),
            ('has:attachment', False),
            ('attachment:invoice', True),
        ]
        for query, expected in test_cases:
            with self.subTest(query=query):
                group = FilterQueryParser.parse(query).filter_group
                self.assertEqual(requires_full_message(group), expected)


class TestRuleMatching(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.provider = InMemoryProvider()
        self.provider.add_account('acc')
        self.matcher = ConditionMatcher()

    async def test_amazon_example(self):
        """Test from:amazon has:attachment after:2026-01-01 on two dates"""
        rule = make_rule('from:amazon has:attachment after:2026-01-01')
        recent = make_message(sender='orders@amazon.com', attachments=['order.pdf'],
                              date=datetime(2026, 2, 1, tzinfo=timezone.utc))
        old = make_message(sender='orders@amazon.com', attachments=['order.pdf'],
                           date=datetime(2025, 12, 1, tzinfo=timezone.utc))

        self.assertTrue(await self.matcher.matches(recent, rule, self.provider, 'acc'))
        self.assertFalse(await self.matcher.matches(old, rule, self.provider, 'acc'))

    async def test_negated_folder_example(self):
        """Test -folder:spam from:boss never matches mail sitting in spam"""
        rule = make_rule('-folder:spam from:boss')
        in_spam = make_message(sender='boss@corp.com', folder_id='spam')
        in_inbox = make_message(sender='boss@corp.com', folder_id='inbox')

        self.assertFalse(await self.matcher.matches(in_spam, rule, self.provider, 'acc'))
        self.assertTrue(await self.matcher.matches(in_inbox, rule, self.provider, 'acc'))

    async def test_disabled_rule_never_matches(self):
        rule = make_rule('from:amazon', enabled=False)
        self.assertFalse(await self.matcher.matches(make_message(), rule, self.provider, 'acc'))

    async def test_listing_item_when_body_needed(self):
        rule = make_rule('body:unsubscribe')
        message = make_message(body='click to unsubscribe')

        self.assertFalse(await self.matcher.matches(listing(message), rule, self.provider, 'acc'))
        self.assertTrue(await self.matcher.matches(message, rule, self.provider, 'acc'))

    async def test_folder_falls_back_to_default_role(self):
        rule = make_rule('folder:spam')
        message = make_message(folder_id=None)

        self.assertFalse(await self.matcher.matches(message, rule, self.provider, 'acc'))
        self.assertTrue(await self.matcher.matches(message, rule, self.provider, 'acc', default_folder_role='spam'))

    async def test_folder_index_is_cached(self):
        rule = make_rule('folder:inbox')
        for _ in range(3):
            await self.matcher.matches(make_message(), rule, self.provider, 'acc')
        self.assertEqual(len(self.provider.calls_to('get_folders')), 1)

    async def test_folder_index_failure_is_not_fatal(self):
        self.provider.fail_next('get_folders', ProviderError('down'))
        rule = make_rule('-folder:spam from:boss')
        message = make_message(sender='boss@corp.com', folder_id='spam')

        # The message's own folder id still identifies the folder
        self.assertFalse(await self.matcher.matches(message, rule, self.provider, 'acc'))

    async def test_rules_skip_folder_lookup_when_unused(self):
        await self.matcher.matches(make_message(), make_rule('from:amazon'), self.provider, 'acc')
        self.assertEqual(self.provider.calls_to('get_folders'), [])

    async def test_custom_folder_by_name(self):
        self.provider.add_account('acc2', folders=[Folder(id='Label_7', name='Receipts')])
        rule = make_rule('folder:receipts')
        message = make_message(folder_id='Label_7')
        self.assertTrue(await self.matcher.matches(message, rule, self.provider, 'acc2'))


if __name__ == '__main__':
    unittest.main()
