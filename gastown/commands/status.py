"""
gt status - Show hooks, convoys, molecules and rigs.
"""

from gastown.status import format_status
from gastown.town import Town


def cmd_status(args, town: Town) -> int:
    status = town.status(include_archived=args.all)
    if args.json:
        print(status.model_dump_json(indent=2))
    else:
        print(format_status(status), end="")
    return 0
