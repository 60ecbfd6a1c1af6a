"""
Dialectic Core — Scheduler CLI

Drive projects and sessions from a terminal against the configured
database and storage (dialectic.yaml + DIALECTIC_* overrides).

Usage:
    # Load the catalog (domains, stages, prompts, models)
    python -m scheduler.cli seed

    # Create a project and start a session with two models
    python -m scheduler.cli project --name "Payments" --prompt "Design a ledger" \\
        --domain dom-software
    python -m scheduler.cli start <project_id> --models model-alpha model-beta

    # Queue the current stage and work the queue
    python -m scheduler.cli generate <session_id>
    python -m scheduler.cli work                 # until idle
    python -m scheduler.cli work --forever       # poll

    # Inspect
    python -m scheduler.cli status <session_id>
    python -m scheduler.cli ledger --session <session_id> [-v]
    python -m scheduler.cli stats
"""

import argparse
import json
import sys
import time

from api.dispatch import DialecticService
from dialectic.config import get_config_value, load_config
from dialectic.logging import configure_logging
from fixtures.seed import seed_catalog
from scheduler.runtime import DialecticRuntime
from scheduler.worker import JobWorker

DEFAULT_USER = "cli-user"


def _call(service: DialecticService, action: str, payload: dict, user: str):
    result = service.dispatch(action, payload, user)
    if not result.ok:
        err = result.error
        print(f"  ✗ {action} failed [{result.status}] {err['code']}: {err['message']}",
              file=sys.stderr)
        sys.exit(1)
    return result.data


def cmd_seed(args, rt: DialecticRuntime, service: DialecticService):
    """Load the catalog."""
    ids = seed_catalog(rt.repo)
    print(json.dumps(ids, indent=2))


def cmd_project(args, rt, service):
    """Create a project."""
    project = _call(service, "createProject", {
        "projectName": args.name,
        "initialUserPrompt": args.prompt,
        "selectedDomainId": args.domain,
        "selectedDomainOverlayId": args.overlay,
    }, args.user)
    print(project["id"])


def cmd_start(args, rt, service):
    """Start a session on a project."""
    session = _call(service, "startSession", {
        "projectId": args.project_id,
        "selectedModelIds": args.models,
        "stageSlug": args.stage,
    }, args.user)
    print(f"  session: {session['id']}", file=sys.stderr)
    print(f"  status:  {session['status']}", file=sys.stderr)
    print(session["id"])


def cmd_generate(args, rt, service):
    """Create the root PLAN job for the session's current stage."""
    data = _call(service, "generateContributions", {
        "sessionId": args.session_id,
        "stageSlug": args.stage,
        "promptId": args.prompt_id,
    }, args.user)
    print(f"  root job: {data['job_id']}  ({data['status']})", file=sys.stderr)
    if args.work:
        _work_until_idle(rt, args)


def _work_until_idle(rt, args):
    start = time.time()
    handled = JobWorker(rt, worker_id=args.worker_id).run_until_idle()
    print(f"  handled {handled} job(s) in {time.time() - start:.1f}s", file=sys.stderr)


def cmd_work(args, rt, service):
    """Run a worker."""
    worker = JobWorker(rt, worker_id=args.worker_id)
    if args.reap:
        reaped = worker.reap_stuck(float(get_config_value("worker.stuck_after_seconds", rt.config, 900)))
        if reaped:
            print(f"  reaped {len(reaped)} stuck job(s)", file=sys.stderr)
    if not args.forever:
        _work_until_idle(rt, args)
        return
    try:
        worker.run_forever(float(get_config_value("worker.poll_interval_seconds", rt.config, 1.0)))
    except KeyboardInterrupt:
        worker.stop()


def cmd_next_iteration(args, rt, service):
    """Start the next iteration of a completed session."""
    session = _call(service, "startNextIteration", {"sessionId": args.session_id}, args.user)
    print(f"  iteration {session['iteration_count']}: {session['status']}", file=sys.stderr)


def cmd_status(args, rt, service):
    """Show a session, its contributions and its jobs."""
    details = _call(service, "getSessionDetails", {"sessionId": args.session_id}, args.user)
    stage = details.get("current_stage") or {}
    print(f"\n{'═' * 70}")
    print(f"  {details['session_description']}")
    print(f"{'─' * 70}")
    print(f"  session:    {details['id']}")
    print(f"  stage:      {stage.get('display_name', '?')} ({stage.get('slug', '?')})")
    print(f"  iteration:  {details['iteration_count']}")
    print(f"  status:     {details['status']}")
    print(f"  jobs:       {json.dumps(details['job_counts'])}")

    if details["contributions"]:
        print(f"\n  CONTRIBUTIONS ({len(details['contributions'])}):")
        for c in details["contributions"]:
            print(f"    {c['id'][:8]}  it{c['iteration_number']} {c['stage']:12s} "
                  f"{(c['model_name'] or 'user'):14s} {c['document_key']:28s} v{c['edit_version']}")

    if args.verbose:
        jobs = _call(service, "listSessionJobs", {"sessionId": args.session_id}, args.user)
        print(f"\n  JOBS ({len(jobs)}):")
        for j in jobs:
            marker = "●" if j["parent_job_id"] is None else " "
            print(f"    {marker} {j['id'][:8]} {j['job_type']:8s} {j['stage_slug']:12s} "
                  f"{j['status']:22s} {(j['error_details'] or {}).get('code', '')}")
    print(f"{'═' * 70}\n")


def cmd_ledger(args, rt, service):
    """Show the job ledger."""
    entries = rt.store.get_ledger(job_id=args.job, session_id=args.session)
    if not entries:
        print("No ledger entries found.")
        return
    print(f"\nJob Ledger ({len(entries)} entries)")
    print(f"{'─' * 70}")
    for e in entries:
        ts = time.strftime("%H:%M:%S", time.localtime(e["created_at"]))
        print(f"  [{ts}] {e['event_type']:24s} {e['job_id'][:20]}")
        if args.verbose:
            for k, v in e["details"].items():
                print(f"           {k}: {str(v)[:60]}")


def cmd_stats(args, rt, service):
    """Show job statistics."""
    print(json.dumps(rt.store.stats(), indent=2))


def main():
    parser = argparse.ArgumentParser(
        description="Dialectic Core — Scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--user", "-u", default=DEFAULT_USER, help="Acting user id")
    parser.add_argument("--worker-id", default="cli-worker")
    parser.add_argument("--log-level", default=None, help="Override logging.level")

    subs = parser.add_subparsers(dest="command", help="Command")

    subs.add_parser("seed", help="Load the catalog")

    project_p = subs.add_parser("project", help="Create a project")
    project_p.add_argument("--name", "-n", required=True)
    project_p.add_argument("--prompt", "-p", required=True, help="Initial user prompt")
    project_p.add_argument("--domain", "-d", default="dom-general", help="Domain id")
    project_p.add_argument("--overlay", "-o", default=None, help="Domain overlay id")

    start_p = subs.add_parser("start", help="Start a session")
    start_p.add_argument("project_id")
    start_p.add_argument("--models", "-m", nargs="+", required=True)
    start_p.add_argument("--stage", "-s", default=None)

    gen_p = subs.add_parser("generate", help="Queue the current stage")
    gen_p.add_argument("session_id")
    gen_p.add_argument("--stage", "-s", default=None)
    gen_p.add_argument("--prompt-id", default=None)
    gen_p.add_argument("--work", "-w", action="store_true", help="Work the queue afterwards")

    work_p = subs.add_parser("work", help="Run a worker")
    work_p.add_argument("--forever", "-f", action="store_true")
    work_p.add_argument("--reap", action="store_true", help="Fail stuck jobs first")

    next_p = subs.add_parser("next-iteration", help="Start the next iteration")
    next_p.add_argument("session_id")

    status_p = subs.add_parser("status", help="Show a session")
    status_p.add_argument("session_id")
    status_p.add_argument("--verbose", "-v", action="store_true")

    ledger_p = subs.add_parser("ledger", help="Show the job ledger")
    ledger_p.add_argument("--job", help="Filter by job id")
    ledger_p.add_argument("--session", help="Filter by session id")
    ledger_p.add_argument("--verbose", "-v", action="store_true")

    subs.add_parser("stats", help="Show job statistics")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = load_config()
    configure_logging(level=args.log_level or get_config_value("logging.level", config, "INFO"))
    rt = DialecticRuntime.from_config(config)
    service = DialecticService(rt)

    commands = {
        "seed": cmd_seed,
        "project": cmd_project,
        "start": cmd_start,
        "generate": cmd_generate,
        "work": cmd_work,
        "next-iteration": cmd_next_iteration,
        "status": cmd_status,
        "ledger": cmd_ledger,
        "stats": cmd_stats,
    }
    try:
        commands[args.command](args, rt, service)
    finally:
        rt.close()


if __name__ == "__main__":
    main()
