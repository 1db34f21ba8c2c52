"""
gt rig - Register and list rigs.
"""

from gastown.lib.types import HookState
from gastown.town import Town


def cmd_rig_add(args, town: Town) -> int:
    """Register a rig pointing at a repository."""
    rig = town.hooks.add_rig(args.id, args.repository)
    print(f"Added rig '{rig.id}' -> {rig.repository_ref}")
    return 0


def cmd_rig_list(args, town: Town) -> int:
    rigs = town.hooks.list_rigs()
    if not rigs:
        print("No rigs configured. Add one with: gt rig add <id> <repository>")
        return 0

    print(f"{'RIG':<20} {'HOOKS':<8} {'ACTIVE':<8} REPOSITORY")
    print("-" * 70)
    for rig in rigs:
        hooks = [h for h in town.hooks.list_hooks(rig_id=rig.id) if h.state is not HookState.ARCHIVED]
        active = sum(1 for h in hooks if h.state is HookState.ACTIVE)
        print(f"{rig.id:<20} {len(hooks):<8} {active:<8} {rig.repository_ref}")
    return 0
