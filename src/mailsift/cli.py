"""Command line interface.

    mailsift run RULE_FILE [--format F] [--enable-write-operations] ...
    mailsift validate RULE_FILE
"""

import argparse
import asyncio
import logging
import sys
from typing import Callable, List, Optional, Sequence

from .compiler import compile_search
from .config import ConnectionSettings
from .exceptions import MailboxConnectionError, MailsiftError, RuleValidationError
from .processor import process_rule
from .rules import OUTPUT_FORMATS, Rule, describe_rule, load_rules
from .session import ImapMailboxSession, MailboxSession

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailsift",
        description="mailsift - run declarative YAML rules against an IMAP mailbox",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run the rules of a rule file against the mailbox")
    run.add_argument("rule_file", help="YAML rule file")
    run.add_argument("--format", choices=OUTPUT_FORMATS, help="Override the output format of every rule")
    run.add_argument("--server", help="IMAP server (default: IMAP_SERVER)")
    run.add_argument("--port", type=int, help="IMAP port (default: IMAP_PORT)")
    run.add_argument("--username", help="IMAP username (default: IMAP_USERNAME)")
    run.add_argument("--password", help="IMAP password (default: IMAP_PASSWORD)")
    run.add_argument("--mailbox", help="Mailbox to search (default: IMAP_MAILBOX)")
    run.add_argument("--no-ssl", action="store_true", help="Connect without TLS")
    run.add_argument(
        "--enable-write-operations",
        action="store_true",
        help="Execute rule actions (flag, copy, move, delete, export). "
             "By default, only read operations are performed for safety.",
    )

    validate = subparsers.add_parser("validate", help="Validate a rule file and show the compiled searches")
    validate.add_argument("rule_file", help="YAML rule file")
    return parser


def settings_from_args(args: argparse.Namespace) -> ConnectionSettings:
    return ConnectionSettings().with_overrides(
        server=args.server,
        port=args.port,
        username=args.username,
        password=args.password,
        mailbox=args.mailbox,
        use_ssl=False if args.no_ssl else None,
    )


async def run_rules(
    rules: Sequence[Rule],
    settings: ConnectionSettings,
    *,
    enable_write_operations: bool = False,
    output_format: Optional[str] = None,
    connect: Optional[Callable[[ConnectionSettings], MailboxSession]] = None,
) -> int:
    """Run rules one after another on a single session.

    A failing rule is logged and skipped.

    Returns:
        Exit code: 0 if every rule succeeded, 1 otherwise
    """
    connect = connect or ImapMailboxSession.connect
    loop = asyncio.get_event_loop()
    try:
        session = await loop.run_in_executor(None, lambda: connect(settings))
    except MailboxConnectionError as e:
        logger.error(str(e))
        return 1

    failed = 0
    try:
        for rule in rules:
            try:
                outcome = await process_rule(
                    session,
                    rule,
                    execute_actions=enable_write_operations,
                    output_format=output_format,
                )
            except MailsiftError as e:
                logger.error(f"Rule {rule.name!r} failed: {e!s}", exc_info=True)
                failed += 1
                continue

            total = outcome.messages[0].total_count if outcome.messages else 0
            print(f"== {rule.name}: {len(outcome.messages)} of {total} matching messages ==")
            print(outcome.rendered)
    finally:
        await loop.run_in_executor(None, session.close)

    if failed:
        logger.error(f"{failed} of {len(rules)} rules failed")
        return 1
    return 0


def validate_rules(rules: Sequence[Rule]) -> int:
    """Compile every rule and print its IMAP search; no network access."""
    failed = 0
    for rule in rules:
        try:
            query, options = compile_search(rule.search, rule.pagination)
        except RuleValidationError as e:
            logger.error(f"Rule {rule.name!r} is invalid: {e!s}")
            failed += 1
            continue
        summary = describe_rule(rule)
        print(f"{rule.name}: OK")
        print(f"  search: {query.to_imap()}")
        if options.is_extended:
            print(f"  return: ({' '.join(options.return_items())})")
        print(f"  output: {summary['format']} [{', '.join(summary['fields'])}]")
        if summary["actions"]:
            print("  actions: yes")
    return 1 if failed else 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT, stream=sys.stderr)

    try:
        rules = load_rules(args.rule_file)
    except RuleValidationError as e:
        logger.error(f"Invalid rule file {args.rule_file}: {e!s}")
        return 1

    if args.command == "validate":
        return validate_rules(rules)

    return asyncio.run(run_rules(
        rules,
        settings_from_args(args),
        enable_write_operations=args.enable_write_operations,
        output_format=args.format,
    ))


def main() -> None:
    """Main entry point for the mailsift command."""
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
