import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from dotenv import load_dotenv

from reality_indexer.config import DEFAULT_CONFIG_PATH, Settings
from reality_indexer.errors import IndexerError
from reality_indexer.logging_config import setup_logging
from reality_indexer.oracle.claims import estimate_claimable_amount
from reality_indexer.oracle.state import format_answer, format_wei
from reality_indexer.pipeline import SyncResult, SyncSession
from reality_indexer.transformers.frames import answers_frame, proposals_frame

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reality module proposal indexer")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    parser.add_argument("--rpc-url", default=None, help="Override the configured RPC endpoint")
    parser.add_argument("--db", default=None, help="Override the SQLite database path")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file", default=None)

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("sync", help="Connect, backfill or catch up, then exit")

    watch = sub.add_parser("watch", help="Sync, then keep polling for updates")
    watch.add_argument("--interval", type=float, default=None)

    status = sub.add_parser("status", help="List cached proposals with their status")
    status.add_argument("--search", default="")
    status.add_argument("--status", default=None, help="Only show proposals with this status label")

    history = sub.add_parser("history", help="Show the answer history of a question")
    history.add_argument("question_id")

    claims = sub.add_parser("claims", help="List bonds an account can claim")
    claims.add_argument("user")
    claims.add_argument("--refresh", action="store_true", help="Re-fetch answer histories first")

    sub.add_parser("reset", help="Clear all cached data")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_yaml(args.config)
    if args.rpc_url:
        settings.rpc_url = args.rpc_url
    if args.db:
        settings.db_path = args.db
    return settings


def print_results(results: List[SyncResult]) -> bool:
    ok = True
    for result in results:
        if not result.ok:
            ok = False
            kind = "retry later" if result.retryable else "check configuration"
            print(f"❌ {result.phase.value}: {result.error} ({kind})")
            continue
        span = ""
        if result.from_block is not None:
            span = f" blocks {result.from_block}-{result.to_block}"
        print(
            f"✅ {result.phase.value}{span}: {len(result.new_proposals)} new proposals, "
            f"{len(result.updated_states)} states updated, {result.answers_indexed} answers"
        )
    return ok


def cmd_sync(session: SyncSession) -> int:
    return 0 if print_results(session.connect()) else 1


def cmd_watch(session: SyncSession, interval: Optional[float]) -> int:
    if not print_results(session.connect()):
        return 1

    done = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: done.set())
    signal.signal(signal.SIGTERM, lambda *_: done.set())

    session.start_polling(interval, on_update=lambda result: print_results([result]))
    print(f"Polling every {interval or session.settings.poll_interval_sec}s, Ctrl+C to stop")
    done.wait()
    session.stop_polling()
    return 0


def cmd_status(session: SyncSession, search: str, status: Optional[str]) -> int:
    proposals = session.list_proposals(search=search, status=status)
    states = {s.question_id: s for s in session.store.list_question_states()}
    statuses = {p.question_id: session.proposal_status(p.question_id) for p in proposals}
    df = proposals_frame(proposals, states, statuses)
    if df.empty:
        print("No proposals cached. Run `sync` first.")
        return 0
    print(df[["question_id", "proposal_id", "created_block", "status", "reason"]].to_string(index=False))
    return 0


def cmd_history(session: SyncSession, question_id: str) -> int:
    history = session.fetch_answer_history(question_id)
    df = answers_frame(history)
    if df.empty:
        print(f"No answers for {question_id}")
        return 0
    df["answer"] = df["answer"].map(format_answer)
    print(df[["timestamp", "user", "answer", "bond"]].to_string(index=False))
    return 0


def cmd_claims(session: SyncSession, user: str, refresh: bool) -> int:
    found = session.scan_claimable_bonds(user, refresh=refresh)
    if not found:
        print(f"Nothing claimable for {user}")
        return 0
    total = 0
    for claim in found:
        amount = estimate_claimable_amount(claim.entries)
        total += amount
        print(f"{claim.question_id} ({claim.proposal_id or 'unknown proposal'}): {format_wei(amount)}")
        for entry in claim.entries:
            print(f"   #{entry.index} {format_answer(entry.answer)} {format_wei(entry.bond)}: {entry.reason}")
    print(f"Total claimable: {format_wei(total)}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    setup_logging(level=getattr(logging, args.log_level.upper(), logging.INFO), log_file=args.log_file)

    session = SyncSession(build_settings(args))
    try:
        if args.command == "sync":
            return cmd_sync(session)
        if args.command == "watch":
            return cmd_watch(session, args.interval)
        if args.command == "status":
            return cmd_status(session, args.search, args.status)
        if args.command == "history":
            return cmd_history(session, args.question_id)
        if args.command == "claims":
            return cmd_claims(session, args.user, args.refresh)
        if args.command == "reset":
            session.reset_cache()
            print("Cache cleared.")
            return 0
    except IndexerError as exc:
        print(f"❌ {exc.reason}")
        return 1
    finally:
        session.close()
    return 2


if __name__ == "__main__":
    sys.exit(main())
