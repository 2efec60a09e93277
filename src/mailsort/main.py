#!/usr/bin/env python3
"""
mailsort - Main entry point
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

import structlog

from mailsort.autosort import BulkRuleApplier, DaemonSupervisor, JobQueue, JobWorker, RuleService
from mailsort.config import Settings
from mailsort.database import RuleStore, create_session_factory
from mailsort.gmail import CredentialStore, GmailProvider
from mailsort.rules import FilterQueryParser, RulesEngine, rules_to_sieve

logger = structlog.get_logger()


def configure_logging(level: str = 'INFO') -> None:
    """Configure stdlib logging and structlog at the same level"""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric)
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(numeric))

    # Disable debug logging for specific modules
    logging.getLogger('googleapiclient.discovery').setLevel(logging.WARNING)
    logging.getLogger('googleapiclient.discovery_cache').setLevel(logging.ERROR)


class App:
    """Components wired together from settings"""

    def __init__(self, settings: Settings):
        self.settings = settings
        session_factory = create_session_factory(settings.database_url)
        self.credentials = CredentialStore(settings.token_dir)
        self.provider = GmailProvider(self.credentials.get_service, poll_interval=settings.gmail_poll_interval)
        self.rule_store = RuleStore(session_factory)
        self.job_queue = JobQueue(session_factory)
        self.engine = RulesEngine(self.provider)
        self.applier = BulkRuleApplier(self.provider, self.rule_store, self.engine, settings)
        self.service = RuleService(self.rule_store, self.job_queue)

    def supervisor(self) -> DaemonSupervisor:
        return DaemonSupervisor(self.provider, self.rule_store, self.engine,
                                self.credentials.list_accounts, self.settings)

    def worker(self) -> JobWorker:
        return JobWorker(self.job_queue, self.applier, self.settings)


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_parse(app: Optional[App], args) -> None:
    result = FilterQueryParser.parse(args.query)
    output = result.model_dump(mode='json')
    output['query'] = FilterQueryParser.build_query(result.filter_group, result.quick_filter)
    print_json(output)


def cmd_save_rule(app: App, args) -> None:
    data = {
        'name': args.name,
        'query': args.query,
        'actions': [json.loads(action) for action in args.action],
        'enabled': not args.disabled,
        'applyToExisting': args.apply_to_existing,
    }
    if args.id:
        data['id'] = args.id
    rule = app.service.save_rule(args.account, data)
    output = rule.to_json()
    if app.service.last_job is not None:
        output['jobId'] = app.service.last_job.id
    print_json(output)


def cmd_rules(app: App, args) -> None:
    print_json([rule.to_json() for rule in app.rule_store.load_rules(args.account)])


def cmd_delete_rule(app: App, args) -> None:
    app.service.delete_rule(args.account, args.rule)
    print_json({'deleted': args.rule})


async def cmd_apply(app: App, args) -> None:
    result = await app.applier.apply(args.rule, args.account, limit=args.limit, folder_id=args.folder)
    print_json(result.to_json())


async def cmd_jobs(app: App, args) -> None:
    jobs = await app.worker().run_pending()
    print_json([job.model_dump(mode='json', by_alias=True) for job in jobs])


async def cmd_sieve(app: App, args) -> None:
    folders = await app.provider.get_folders(args.account)
    rules = app.rule_store.load_enabled_rules(args.account)
    print(rules_to_sieve(rules, {f.id: f.name for f in folders}), end='')


async def cmd_daemon(app: App, args) -> None:
    supervisor = app.supervisor()
    worker = app.worker()
    logger.info("Starting auto-sort daemon", accounts=app.credentials.list_accounts())
    try:
        await asyncio.gather(supervisor.run(), worker.run())
    finally:
        worker.stop()
        await supervisor.shutdown()


def cmd_login(app: App, args) -> None:
    account_id = app.credentials.authorize()
    logger.info("Authenticated with Gmail", user=account_id)
    print_json({'account': account_id})


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(prog='mailsort', description='Auto-sort rule engine for email')
    commands = parser.add_subparsers(dest='command', required=True)

    parse = commands.add_parser('parse', help='Parse a filter query and print the condition tree')
    parse.add_argument('query')
    parse.set_defaults(handler=cmd_parse, needs_app=False)

    save = commands.add_parser('save-rule', help='Create or update a rule from a filter query')
    save.add_argument('--account', required=True)
    save.add_argument('--name', required=True)
    save.add_argument('--query', required=True)
    save.add_argument('--action', action='append', default=[], help='Action as JSON, repeatable')
    save.add_argument('--id', help='Id of the rule to update')
    save.add_argument('--apply-to-existing', action='store_true')
    save.add_argument('--disabled', action='store_true')
    save.set_defaults(handler=cmd_save_rule)

    rules = commands.add_parser('rules', help='List the rules of an account')
    rules.add_argument('--account', required=True)
    rules.set_defaults(handler=cmd_rules)

    delete = commands.add_parser('delete-rule', help='Delete a rule')
    delete.add_argument('--account', required=True)
    delete.add_argument('--rule', required=True)
    delete.set_defaults(handler=cmd_delete_rule)

    apply = commands.add_parser('apply', help='Apply a rule to existing mail')
    apply.add_argument('--account', required=True)
    apply.add_argument('--rule', required=True)
    apply.add_argument('--folder', help='Only scan this folder (id or role)')
    apply.add_argument('--limit', type=int, help='Maximum number of messages to consider')
    apply.set_defaults(handler=cmd_apply)

    jobs = commands.add_parser('jobs', help='Run the queued apply-to-existing jobs once')
    jobs.set_defaults(handler=cmd_jobs)

    sieve = commands.add_parser('sieve', help='Print the rules of an account as a Sieve script')
    sieve.add_argument('--account', required=True)
    sieve.set_defaults(handler=cmd_sieve)

    daemon = commands.add_parser('daemon', help='Watch all accounts and run queued jobs')
    daemon.set_defaults(handler=cmd_daemon)

    login = commands.add_parser('login', help='Authorize a Gmail account')
    login.set_defaults(handler=cmd_login)

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for mailsort"""
    args = parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    try:
        app = App(settings) if getattr(args, 'needs_app', True) else None
        result = args.handler(app, args)
        if asyncio.iscoroutine(result):
            asyncio.run(result)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.error("Command failed", command=args.command, error=str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
