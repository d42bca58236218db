#!/usr/bin/env python3
# Meridian CLI
# argparse operator tooling: serve the API, reconcile settlement, inspect jobs
# and ledgers, reverse reputation events, finish parked settlements.

import argparse
import asyncio
import json
import sys

from db import setup_logging
from errors import MeridianError
from jobs import AuthContext, DisputeOutcome, Role, get_state_machine


def _operator(args) -> AuthContext:
    return AuthContext(user_id=args.operator, role=Role.OPERATOR.value)


def _print(payload):
    print(json.dumps(payload, indent=2, default=str))


def cmd_serve(args):
    """Start the API server."""
    import uvicorn
    from api import app
    print(f"Starting Meridian API on {args.bind}:{args.port}...")
    uvicorn.run(app, host=args.bind, port=args.port)


def cmd_reconcile(args):
    """One reconciliation pass, or a loop until interrupted."""
    from escrow import run_reconciliation_loop

    sm = get_state_machine()
    if not args.loop:
        report = asyncio.run(sm.reconcile())
        _print(report.to_dict())
        return

    print(f"Reconciling every {args.interval}s (Ctrl-C to stop)...")
    try:
        asyncio.run(run_reconciliation_loop(sm.reconcile, interval=args.interval))
    except KeyboardInterrupt:
        print("\nReconciliation stopped.")


def cmd_job(args):
    """Show a job."""
    _print(get_state_machine().get_job(args.job_id).to_dict())


def cmd_jobs(args):
    """List jobs."""
    jobs = get_state_machine().store.list(status=args.status, sub_status=args.sub_status,
                                          limit=args.limit)
    if not jobs:
        print("No jobs.")
        return
    for j in jobs:
        flag = f" [{j.sub_status}]" if j.sub_status else ""
        provider = j.provider_id or "-"
        print(f"  [{j.status:>9}]{flag} {j.job_id} | {j.title or '-'} | "
              f"{j.budget} | client: {j.client_id} | provider: {provider}")


def cmd_timeline(args):
    """Print a job's audit timeline."""
    for e in get_state_machine().get_job_timeline(args.job_id):
        detail = e["data"].get("new_state") or e["data"].get("escrow_id") or ""
        print(f"  {e['timestamp']:.3f}  {e['event_type']:<22} {e['actor']:<24} {detail}")


def cmd_txs(args):
    """Transaction receipts for a job."""
    sm = get_state_machine()
    _print({
        "transactions": sm.transactions(args.job_id),
        "totals": sm.escrow.ledger.totals_for_job(args.job_id),
    })


def cmd_reverse(args):
    """Reverse a processed reputation event."""
    reversal = get_state_machine().reputation.reverse(
        args.event_id, args.reason, actor=_operator(args).label
    )
    print(f"Reversed {args.event_id} with {reversal.event_id} "
          f"({reversal.score_delta:+.2f} on {reversal.subject_id})")


def cmd_failed_events(args):
    """Reputation events parked as failed."""
    events = get_state_machine().reputation.failed_events(limit=args.limit)
    if not events:
        print("No failed reputation events.")
        return
    for e in events:
        print(f"  {e.event_id} | {e.subject_id} | {e.event_type} | {e.system_notes}")


def cmd_retry_settlement(args):
    """Finish the money movement of a job parked in settlement_failed."""
    job = asyncio.run(get_state_machine().retry_settlement(args.job_id, _operator(args)))
    print(f"Job {job.job_id}: {job.status} (sub-status: {job.sub_status or 'none'})")


def cmd_resolve_dispute(args):
    """Resolve an open dispute."""
    job = asyncio.run(get_state_machine().resolve_dispute(
        args.job_id, _operator(args), DisputeOutcome(args.outcome),
        refund_amount=args.refund, notes=args.notes,
    ))
    print(f"Job {job.job_id}: {job.status} | dispute {job.dispute.status} ({job.dispute.outcome})")


def cmd_verify_chain(args):
    """Replay the audit log hash chain."""
    result = get_state_machine().bus.store.verify_chain(limit=args.limit)
    _print(result)
    if not result["valid"]:
        sys.exit(1)


def cmd_leaderboard(args):
    """Show the reputation leaderboard."""
    lb = get_state_machine().reputation.leaderboard(args.type, limit=args.limit)
    print(f"Reputation Leaderboard (top {args.limit} {args.type}s):")
    for i, entry in enumerate(lb, 1):
        print(f"  {i}. {entry['subject_id']}  {entry['tier']} "
              f"({entry['reliability_score']:.0f} pts, {entry['total_jobs']} jobs)")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="meridian",
        description="Meridian: GPU job escrow and reputation engine",
    )
    parser.add_argument("--operator", default="cli", help="Operator id recorded on actions")
    sub = parser.add_subparsers(dest="command")

    # meridian serve
    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--bind", default="0.0.0.0", help="Bind address")
    p_serve.add_argument("--port", type=int, default=8000, help="Port")
    p_serve.set_defaults(func=cmd_serve)

    # meridian reconcile
    p_rec = sub.add_parser("reconcile", help="Reconcile pending transactions")
    p_rec.add_argument("--loop", action="store_true", help="Keep reconciling")
    p_rec.add_argument("--interval", type=float, default=30, help="Seconds between passes")
    p_rec.set_defaults(func=cmd_reconcile)

    # meridian job <job_id>
    p_job = sub.add_parser("job", help="Show a job")
    p_job.add_argument("job_id", help="Job ID")
    p_job.set_defaults(func=cmd_job)

    # meridian jobs
    p_jobs = sub.add_parser("jobs", help="List jobs")
    p_jobs.add_argument("--status", default=None, help="Filter by status")
    p_jobs.add_argument("--sub-status", dest="sub_status", default=None,
                        help="Filter by sub-status (e.g. settlement_failed)")
    p_jobs.add_argument("--limit", type=int, default=50, help="Max rows")
    p_jobs.set_defaults(func=cmd_jobs)

    # meridian timeline <job_id>
    p_tl = sub.add_parser("timeline", help="Show a job's audit timeline")
    p_tl.add_argument("job_id", help="Job ID")
    p_tl.set_defaults(func=cmd_timeline)

    # meridian txs <job_id>
    p_txs = sub.add_parser("txs", help="Show a job's transactions")
    p_txs.add_argument("job_id", help="Job ID")
    p_txs.set_defaults(func=cmd_txs)

    # meridian reverse <event_id> --reason
    p_rev = sub.add_parser("reverse", help="Reverse a reputation event")
    p_rev.add_argument("event_id", help="Reputation event ID")
    p_rev.add_argument("--reason", required=True, help="Why it is reversed")
    p_rev.set_defaults(func=cmd_reverse)

    # meridian failed-events
    p_fail = sub.add_parser("failed-events", help="List failed reputation events")
    p_fail.add_argument("--limit", type=int, default=100, help="Max rows")
    p_fail.set_defaults(func=cmd_failed_events)

    # meridian retry-settlement <job_id>
    p_retry = sub.add_parser("retry-settlement", help="Retry a parked settlement")
    p_retry.add_argument("job_id", help="Job ID")
    p_retry.set_defaults(func=cmd_retry_settlement)

    # meridian resolve-dispute <job_id> --outcome
    p_res = sub.add_parser("resolve-dispute", help="Resolve an open dispute")
    p_res.add_argument("job_id", help="Job ID")
    p_res.add_argument("--outcome", required=True, choices=[o.value for o in DisputeOutcome])
    p_res.add_argument("--refund", default=None, help="Refund amount for partial-refund")
    p_res.add_argument("--notes", default="", help="Resolution notes")
    p_res.set_defaults(func=cmd_resolve_dispute)

    # meridian verify-chain
    p_vc = sub.add_parser("verify-chain", help="Verify the audit log hash chain")
    p_vc.add_argument("--limit", type=int, default=0, help="Events to check (0 = all)")
    p_vc.set_defaults(func=cmd_verify_chain)

    # meridian leaderboard
    p_lb = sub.add_parser("leaderboard", help="Show reputation leaderboard")
    p_lb.add_argument("--type", default="provider", choices=["provider", "client"])
    p_lb.add_argument("--limit", type=int, default=10, help="Number of entries")
    p_lb.set_defaults(func=cmd_leaderboard)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging()
    try:
        args.func(args)
    except MeridianError as e:
        print(json.dumps({"ok": False, "error": e.to_dict()}, indent=2), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
