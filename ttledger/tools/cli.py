"""
The `tt` command-line tool.

Commands:
- projects: List fully qualified project names
- status: Show open time blocks and how long they have run
- punchin: Start work on a project
- punchout: Stop work
- blocks: Search time blocks
- history: Show every version of one time block
- setup: Store Teamwork credentials in the ledger
- down: Pull projects and time entries from Teamwork

Usage:
    tt punchin "Acme/Website"
    tt status
    tt punchout
    tt blocks --project "Acme/Website" --closed

Invariants:
    - Output is JSON on stdout
    - Any ledger error prints "error: ..." on stderr and exits 1

How to change safely:
    - Add new commands, don't change the output of existing ones
"""

from __future__ import annotations

import argparse
import dataclasses
import getpass
import json
import logging
import sys
from datetime import datetime
from typing import Any

import json_log_formatter

from ..config import LedgerConfig, ObservabilityConfig
from ..errors import LedgerError
from ..ledger import Ledger
from ..store import Credentials, Project, ProjectRef, TimeblockFilter, TimeblockRef
from ..sync import TeamworkClient, TeamworkSync

logger = logging.getLogger(__name__)


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Observability configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.WARNING)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def parse_time(value: str) -> datetime:
    """argparse type for --as-of; naive times are local time."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO 8601 time: {value!r}") from exc
    return parsed if parsed.tzinfo is not None else parsed.astimezone()


class TrackerCLI:
    """Command implementations for `tt`.

    Each method returns JSON-ready data; main() prints it.

    Example:
        >>> cli = TrackerCLI(ledger)
        >>> cli.punchin("Acme")
        >>> cli.status()
        {'open': [['Acme', '00:00:04']]}
    """

    def __init__(self, ledger: Ledger, config: LedgerConfig | None = None) -> None:
        self.ledger = ledger
        self.config = config or LedgerConfig()

    def _fqn(self, project: Project, as_of: datetime | None = None) -> str:
        return self.ledger.projects.fqn(ProjectRef.of(project), as_of)

    def _project_ref(self, name: str) -> ProjectRef:
        return ProjectRef.of(self.ledger.projects.find_by_fqn(name))

    def projects(self, as_of: datetime | None = None) -> list[str]:
        return sorted(
            self._fqn(p, as_of) for p in self.ledger.projects.list(as_of, alive_only=True)
        )

    def status(self) -> dict[str, Any]:
        return self.ledger.tracker.status().to_dict(self._fqn)

    def punchin(self, project: str) -> dict[str, Any]:
        return self.ledger.tracker.punch_in(self._project_ref(project)).to_dict()

    def punchout(self, project: str | None = None) -> dict[str, Any]:
        ref = self._project_ref(project) if project else None
        return self.ledger.tracker.punch_out(ref).to_dict()

    def blocks(
        self,
        project: str | None = None,
        is_open: bool | None = None,
        tag: str | None = None,
        updated_before: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Current blocks matching the options.

        updated_before bounds when each block was last changed; it does not
        rewind to older versions. Use history() for that.
        """
        query = TimeblockFilter.at_time(updated_before or self.ledger.clock())
        if project:
            query = query & TimeblockFilter.project(self._project_ref(project))
        if is_open is not None:
            query = query & TimeblockFilter.open(is_open)
        if tag:
            query = query & TimeblockFilter.tag(tag)
        return [tb.to_dict() for tb in self.ledger.timeblocks.search(query)]

    def history(self, entity_id: int) -> list[dict[str, Any]]:
        return [tb.to_dict() for tb in self.ledger.timeblocks.history(TimeblockRef.by_entity_id(entity_id))]

    def setup(self) -> dict[str, Any]:
        """Prompt for Teamwork credentials and store them."""
        api_key = getpass.getpass("API Key: ")
        base_url = input("Teamwork Base URL: ").strip()
        user_id = int(input("Teamwork User ID: ").strip())
        self.ledger.db.set_credentials(Credentials(api_key=api_key, base_url=base_url, user_id=user_id))
        return {"base_url": base_url, "user_id": user_id}

    def down(self, transport: Any = None) -> dict[str, int]:
        """Run a Teamwork sync using configured or stored credentials."""
        tw = self.config.teamwork
        stored = self.ledger.db.get_credentials()
        base_url = tw.base_url or (stored.base_url if stored else None)
        api_key = tw.api_key or (stored.api_key if stored else None)
        user_id = tw.user_id if tw.user_id is not None else (stored.user_id if stored else None)
        if not base_url or not api_key:
            raise LedgerError("No Teamwork credentials; run `tt setup` first", code="NO_CREDENTIALS")

        with TeamworkClient(
            base_url,
            api_key,
            timeout=tw.timeout_seconds,
            page_size=tw.page_size,
            transport=transport,
        ) as client:
            sync = TeamworkSync(client, self.ledger.projects, self.ledger.timeblocks, user_id=user_id)
            return sync.down().to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tt", description="Personal time-tracking ledger")
    parser.add_argument("--db", help="Ledger file (default: TT_DB_PATH or ~/.tt.sqlite)")
    parser.add_argument("--log-level", help="Logging level (default: TT_LOG_LEVEL or WARNING)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    projects_parser = subparsers.add_parser("projects", help="List projects")
    projects_parser.add_argument("--as-of", type=parse_time, help="Point in time (ISO 8601)")

    subparsers.add_parser("status", help="Show open time blocks")

    punchin_parser = subparsers.add_parser("punchin", help="Start work on a project")
    punchin_parser.add_argument("project", help="Fully qualified project name")

    punchout_parser = subparsers.add_parser("punchout", help="Stop work")
    punchout_parser.add_argument("project", nargs="?", help="Fully qualified project name")

    blocks_parser = subparsers.add_parser("blocks", help="Search time blocks")
    blocks_parser.add_argument("--project", help="Fully qualified project name")
    state = blocks_parser.add_mutually_exclusive_group()
    state.add_argument("--open", dest="is_open", action="store_const", const=True)
    state.add_argument("--closed", dest="is_open", action="store_const", const=False)
    blocks_parser.add_argument("--tag", help="Only blocks carrying this tag")
    blocks_parser.add_argument(
        "--updated-before",
        type=parse_time,
        help="Only blocks whose latest version was written at or before this time (ISO 8601). "
        "Blocks changed later are left out, not shown as they were.",
    )

    history_parser = subparsers.add_parser("history", help="Show all versions of a time block")
    history_parser.add_argument("entity_id", type=int, help="Time block entity id")

    subparsers.add_parser("setup", help="Store Teamwork credentials")
    subparsers.add_parser("down", help="Pull from Teamwork")

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for `tt`."""
    args = build_parser().parse_args(argv)

    try:
        config = LedgerConfig.from_env()
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    if args.db:
        config.storage = dataclasses.replace(config.storage, db_path=args.db)
    if args.log_level:
        config.observability = dataclasses.replace(config.observability, log_level=args.log_level)

    setup_logging(config.observability)
    config.log_config()

    try:
        with Ledger.open(config.storage) as ledger:
            cli = TrackerCLI(ledger, config)
            if args.command == "projects":
                output: Any = cli.projects(args.as_of)
            elif args.command == "status":
                output = cli.status()
            elif args.command == "punchin":
                output = cli.punchin(args.project)
            elif args.command == "punchout":
                output = cli.punchout(args.project)
            elif args.command == "blocks":
                output = cli.blocks(args.project, args.is_open, args.tag, args.updated_before)
            elif args.command == "history":
                output = cli.history(args.entity_id)
            elif args.command == "setup":
                output = cli.setup()
            elif args.command == "down":
                output = cli.down()
            else:
                raise LedgerError(f"Unknown command: {args.command}")
    except LedgerError as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"error: {exc.message}", file=sys.stderr)
        return 1

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
