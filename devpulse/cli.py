"""
DevPulse Client - Command Line
===============================

    devpulse login --token <token>
    devpulse set-pat ghp_...
    devpulse analyze https://github.com/acme/api
    devpulse fix <analysis_id>
    devpulse watch
    devpulse serve
"""

import argparse
import asyncio
import inspect
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

import structlog

from devpulse import __version__
from devpulse.core.api_client import DevPulseClient
from devpulse.core.config import settings
from devpulse.core.credentials import EncryptedFileCredentialStore, validate_pat, verify_github_token
from devpulse.core.exceptions import DevPulseError, InvalidCredentialError, NotAuthenticatedError
from devpulse.core.log_config import configure_logging
from devpulse.core.schemas import AnalysisRecord
from devpulse.core.session import SessionStore
from devpulse.core.tracking import AnalysisTracker, StoreChange, StoreEvent

logger = structlog.get_logger()


# ==========================================================================
# Output helpers
# ==========================================================================

def _score(record: AnalysisRecord) -> str:
    score = record.quality_score
    return "-" if score is None else f"{score:g}"


def format_row(record: AnalysisRecord) -> str:
    name = record.repo_name or record.repo_url or record.analysis_id
    return (
        f"{record.analysis_id:<26} {name[:30]:<30} {record.status:<13} "
        f"{record.progress:>3}%  score={_score(record):<5} risk={record.risk_level}"
    )


def format_detail(record: AnalysisRecord) -> str:
    lines = [
        f"Analysis:  {record.analysis_id}",
        f"Repo:      {record.repo_owner}/{record.repo_name}" if record.repo_owner else f"Repo:      {record.repo_name}",
        f"URL:       {record.repo_url}",
        f"Status:    {record.status} ({record.progress}%) {record.message}".rstrip(),
        f"Quality:   {_score(record)} grade={record.grade or '-'} risk={record.risk_level}",
    ]
    if record.error:
        lines.append(f"Error:     {record.error}")
    if record.can_raise_pr:
        lines.append("Fix:       high risk, run `devpulse fix` to raise a PR")
    for fix in record.fixes:
        pr = f" {fix.pr_url}" if fix.pr_url else ""
        lines.append(f"  fix {fix.job_id}: {fix.status} {fix.progress}% {fix.message}{pr}".rstrip())
    return "\n".join(lines)


def progress_printer(out=None) -> Callable[[StoreChange], None]:
    """Store listener that prints one line per progress update."""
    out = out or sys.stdout

    def on_change(change: StoreChange) -> None:
        record = change.record
        if record is None or change.event == StoreEvent.RESET:
            return
        name = record.repo_name or record.analysis_id
        if change.job_id:
            fix = record.find_fix(change.job_id)
            if fix is not None:
                pr = f" -> {fix.pr_url}" if fix.pr_url else ""
                line = f"[{name}] fix {fix.job_id}: {fix.status} {fix.progress}% {fix.message}".rstrip()
                print(f"{line}{pr}", file=out)
            return
        print(f"[{name}] {record.status} {record.progress}% {record.message}".rstrip(), file=out)

    return on_change


# ==========================================================================
# Context
# ==========================================================================

@asynccontextmanager
async def open_tracker(args: argparse.Namespace) -> AsyncIterator[AnalysisTracker]:
    session = SessionStore.default()
    async with DevPulseClient(base_url=args.api_url, session=session) as api:
        async with AnalysisTracker(
            api,
            credentials=EncryptedFileCredentialStore.default(),
            session=session,
            poll_interval=getattr(args, "interval", None),
        ) as tracker:
            yield tracker


async def _follow(tracker: AnalysisTracker, timeout: Optional[float]) -> int:
    unsubscribe = tracker.store.subscribe(progress_printer())
    try:
        finished = await tracker.wait_idle(timeout)
    finally:
        unsubscribe()
    if not finished:
        print("Still running; stopped watching.", file=sys.stderr)
    return 0


# ==========================================================================
# Commands
# ==========================================================================

async def cmd_login(args: argparse.Namespace) -> int:
    session = SessionStore.default()
    session.save_token(args.token)
    if not session.is_authenticated():
        session.remove_token()
        raise NotAuthenticatedError("Token is expired. Sign in again to get a new one.")
    print("Signed in.")
    return 0


async def cmd_logout(args: argparse.Namespace) -> int:
    SessionStore.default().remove_token()
    print("Signed out.")
    return 0


async def cmd_set_pat(args: argparse.Namespace) -> int:
    token = args.token.strip()
    if not validate_pat(token):
        raise InvalidCredentialError("Invalid token format. Must start with ghp_ or ghs_")

    if not args.skip_verify:
        login = await verify_github_token(token)
        print(f"Token belongs to GitHub user {login}.")

    EncryptedFileCredentialStore.default().save_credential(token)
    if args.sync:
        async with DevPulseClient(base_url=args.api_url, session=SessionStore.default()) as api:
            await api.save_github_token(token)
    print("GitHub token saved.")
    return 0


async def cmd_remove_pat(args: argparse.Namespace) -> int:
    EncryptedFileCredentialStore.default().remove_credential()
    if args.sync:
        async with DevPulseClient(base_url=args.api_url, session=SessionStore.default()) as api:
            await api.delete_github_token()
    print("GitHub token removed.")
    return 0


async def cmd_repos(args: argparse.Namespace) -> int:
    async with DevPulseClient(base_url=args.api_url, session=SessionStore.default()) as api:
        repos = await api.list_github_repos()
    for repo in repos:
        visibility = "private" if repo.private else "public"
        print(f"{repo.full_name or repo.name:<40} {repo.language or '-':<12} {repo.stars:>6}*  {visibility}")
    return 0


async def cmd_list(args: argparse.Namespace) -> int:
    async with open_tracker(args) as tracker:
        analyses = await tracker.load()
    if args.status:
        analyses = [record for record in analyses if record.status == args.status]
    if not analyses:
        print("No analyses yet.")
    for record in analyses:
        print(format_row(record))
    return 0


async def cmd_show(args: argparse.Namespace) -> int:
    async with open_tracker(args) as tracker:
        if not tracker.session.is_authenticated():
            raise NotAuthenticatedError("Not signed in. Run `devpulse login` first.")
        record = await tracker.open_analysis(args.analysis_id)
        if args.follow and not tracker.is_idle():
            await _follow(tracker, args.timeout)
            record = tracker.get(args.analysis_id) or record
    print(format_detail(record))
    return 0


async def cmd_analyze(args: argparse.Namespace) -> int:
    async with open_tracker(args) as tracker:
        if not tracker.session.is_authenticated():
            raise NotAuthenticatedError("Not signed in. Run `devpulse login` first.")
        record = await tracker.submit_analysis(args.repo_url, args.name or "", args.owner or "")
        print(f"Analysis {record.analysis_id} queued.")
        if args.no_wait:
            return 0
        await _follow(tracker, args.timeout)
        final = tracker.get(record.analysis_id)
    if final is not None:
        print(format_detail(final))
    return 0


async def cmd_fix(args: argparse.Namespace) -> int:
    async with open_tracker(args) as tracker:
        await tracker.load()
        result = await tracker.trigger_fix(args.analysis_id)
        print(f"Fix job {result.job_id} started. {result.message}".rstrip())
        if args.no_wait:
            return 0
        await _follow(tracker, args.timeout)
        record = tracker.get(args.analysis_id)
        if record is None:
            # Unlisted analyses drop out on the post-fix refresh
            record = await tracker.api.get_analysis(args.analysis_id)
    for fix in record.completed_prs:
        print(f"Pull request: {fix.pr_url}")
    return 0


async def cmd_watch(args: argparse.Namespace) -> int:
    async with open_tracker(args) as tracker:
        await tracker.load()
        active = len(tracker.registry)
        if not active:
            print("Nothing in progress.")
            return 0
        print(f"Tracking {active} job(s)...")
        return await _follow(tracker, args.timeout)


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from devpulse.api import create_app

    uvicorn.run(
        create_app(),
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
    )
    return 0


# ==========================================================================
# Entry point
# ==========================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devpulse",
        description="DevPulse - repository analysis and automated fixes",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-url", default=None, help="DevPulse API base URL")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    p = commands.add_parser("login", help="Store the DevPulse session token")
    p.add_argument("--token", required=True)
    p.set_defaults(handler=cmd_login)

    p = commands.add_parser("logout", help="Forget the session token")
    p.set_defaults(handler=cmd_logout)

    p = commands.add_parser("set-pat", help="Store a GitHub personal access token")
    p.add_argument("token")
    p.add_argument("--skip-verify", action="store_true", help="Do not check the token against GitHub")
    p.add_argument("--sync", action="store_true", help="Also store the token on the DevPulse server")
    p.set_defaults(handler=cmd_set_pat)

    p = commands.add_parser("remove-pat", help="Delete the stored GitHub token")
    p.add_argument("--sync", action="store_true", help="Also delete the server-side token")
    p.set_defaults(handler=cmd_remove_pat)

    p = commands.add_parser("repos", help="List GitHub repositories available for analysis")
    p.set_defaults(handler=cmd_repos)

    p = commands.add_parser("list", help="List analyses")
    p.add_argument("--status", default=None)
    p.set_defaults(handler=cmd_list)

    p = commands.add_parser("show", help="Show one analysis")
    p.add_argument("analysis_id")
    p.add_argument("--follow", action="store_true", help="Keep polling until it finishes")
    p.add_argument("--timeout", type=float, default=None)
    p.add_argument("--interval", type=float, default=None, help="Poll interval in seconds")
    p.set_defaults(handler=cmd_show)

    p = commands.add_parser("analyze", help="Submit a repository for analysis")
    p.add_argument("repo_url")
    p.add_argument("--name", default=None)
    p.add_argument("--owner", default=None)
    p.add_argument("--no-wait", action="store_true")
    p.add_argument("--timeout", type=float, default=None)
    p.add_argument("--interval", type=float, default=None, help="Poll interval in seconds")
    p.set_defaults(handler=cmd_analyze)

    p = commands.add_parser("fix", help="Start an automated fix and pull request")
    p.add_argument("analysis_id")
    p.add_argument("--no-wait", action="store_true")
    p.add_argument("--timeout", type=float, default=None)
    p.add_argument("--interval", type=float, default=None, help="Poll interval in seconds")
    p.set_defaults(handler=cmd_fix)

    p = commands.add_parser("watch", help="Track every running job until all finish")
    p.add_argument("--timeout", type=float, default=None)
    p.add_argument("--interval", type=float, default=None, help="Poll interval in seconds")
    p.set_defaults(handler=cmd_watch)

    p = commands.add_parser("serve", help="Run the local read-model API")
    p.add_argument("--host", default=settings.SERVER_HOST)
    p.add_argument("--port", type=int, default=settings.SERVER_PORT)
    p.set_defaults(handler=cmd_serve)

    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        if inspect.iscoroutinefunction(args.handler):
            return asyncio.run(args.handler(args))
        return args.handler(args)
    except DevPulseError as e:
        logger.debug("command_failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
