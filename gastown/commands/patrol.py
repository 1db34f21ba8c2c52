"""
gt patrol - Run the orchestration loop.

Only one patrol may drive a town at a time; a second one exits with
EXIT_LOCK_TIMEOUT. `--once` runs a single dispatch cycle without launching
agents; the long-running patrol launches a polecat for every slung step.
"""

import logging

from gastown.lib.constants import EXIT_ERROR, EXIT_LOCK_TIMEOUT, EXIT_OK
from gastown.lib.locking import LockTimeout, patrol_lock
from gastown.town import Town

logger = logging.getLogger(__name__)


def cmd_patrol(args, town: Town) -> int:
    try:
        with patrol_lock(town.town_dir):
            return _patrol(args, town)
    except LockTimeout as e:
        print(f"ERROR: {e}")
        print("  Another patrol is already running for this town")
        return EXIT_LOCK_TIMEOUT


def _patrol(args, town: Town) -> int:
    loaded = town.load_formulas()
    logger.info(f"[PATROL] {len(loaded)} formulas loaded from {town.formulas_dir}")

    orchestrator = town.orchestrator
    interval = args.interval if args.interval is not None else town.config.poll_interval
    max_cycles = 1 if args.once else args.max_cycles

    try:
        if args.prefect:
            from gastown.workflow.flows import patrol_flow
            reports = patrol_flow(orchestrator, interval, max_cycles)
        else:
            reports = orchestrator.run_forever(interval=interval, max_cycles=max_cycles)
    except KeyboardInterrupt:
        print("\nStopping patrol (agents keep running; their hooks resume next patrol)")
        orchestrator.shutdown(stop_agents=False)
        return EXIT_OK

    orchestrator.shutdown(stop_agents=False)

    for report in reports:
        print(report.summary())
        for error in report.errors:
            print(f"  ERROR: {error}")
        for hook_id in report.needs_repair:
            print(f"  {hook_id} needs repair: gt hook repair {hook_id}")
    return EXIT_ERROR if any(r.errors for r in reports) else EXIT_OK
