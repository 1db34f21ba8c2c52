"""
gt hook - Inspect and drive hook lifecycles by hand.

The patrol loop does all of this automatically; these commands exist for
operators recovering from infrastructure failures.
"""

from gastown.lib.types import Hook, HookState
from gastown.town import Town


def _print_hook(hook: Hook) -> None:
    binding = hook.agent_binding or "-"
    print(f"{hook.id:<16} {hook.rig_id:<16} {hook.state.value:<10} {binding:<24} {hook.worktree_ref or '-'}")


def cmd_hook_acquire(args, town: Town) -> int:
    hook = town.hooks.acquire(args.rig, args.agent)
    print(f"{hook.id} ({hook.state.value}) bound to {hook.agent_binding}")
    if hook.worktree_ref:
        print(f"  worktree: {hook.worktree_ref}")
    return 0


def cmd_hook_release(args, town: Town) -> int:
    hook = town.hooks.release(args.id)
    print(f"{hook.id}: {hook.state.value}")
    return 0


def cmd_hook_complete(args, town: Town) -> int:
    hook = town.hooks.complete(args.id)
    print(f"{hook.id}: {hook.state.value}")
    return 0


def cmd_hook_archive(args, town: Town) -> int:
    assigned = town.dispatcher.assignments_for_hook(args.id)
    if assigned and not args.force:
        print(f"ERROR: Hook '{args.id}' still holds records: {', '.join(a.record_id for a in assigned)}")
        print("  Use --force to archive anyway")
        return 1
    hook = town.hooks.archive(args.id)
    for assignment in assigned:
        town.dispatcher.unsling(assignment.record_id)
    print(f"{hook.id}: {hook.state.value}")
    return 0


def cmd_hook_repair(args, town: Town) -> int:
    if town.hooks.repair(args.id):
        print(f"{args.id}: repaired")
        return 0
    hook = town.hooks.get(args.id)
    print(f"ERROR: Repair of '{args.id}' failed: {hook.last_error}")
    return 1


def cmd_hook_list(args, town: Town) -> int:
    states = {HookState(s) for s in args.state} if args.state else None
    hooks = town.hooks.list_hooks(rig_id=args.rig, states=states)
    if not args.all and states is None:
        hooks = [h for h in hooks if h.state is not HookState.ARCHIVED]

    if not hooks:
        print("No hooks")
        return 0

    print(f"{'HOOK':<16} {'RIG':<16} {'STATE':<10} {'AGENT':<24} WORKTREE")
    print("-" * 90)
    for hook in hooks:
        _print_hook(hook)
    return 0
