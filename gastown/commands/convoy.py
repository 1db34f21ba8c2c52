"""
gt convoy - Bundle records and track their progress.
"""

from gastown.status import progress_bar
from gastown.town import Town


def cmd_convoy_create(args, town: Town) -> int:
    convoy = town.convoys.create(args.name, args.records)
    print(f"Created convoy {convoy.id} '{convoy.name}' ({len(convoy.record_ids)} records)")
    return 0


def cmd_convoy_add(args, town: Town) -> int:
    before = len(town.convoys.get(args.id).record_ids)
    convoy = town.convoys.add_records(args.id, args.records, expected_revision=args.expected_revision)
    print(f"{convoy.id}: added {len(convoy.record_ids) - before} records (revision {convoy.revision})")
    return 0


def cmd_convoy_show(args, town: Town) -> int:
    convoy, progress = town.convoys.show(args.id)
    blocked = set(progress.blocked_ids)

    print(f"Convoy: {convoy.id}")
    print(f"Name: {convoy.name}")
    print(f"Progress: {progress_bar(progress.fraction)} {progress.done}/{progress.total}")
    print()
    for record_id in convoy.record_ids:
        record = town.records.get(record_id)
        status = record.status.value if record else "missing"
        title = record.title if record else ""
        marker = " (blocked)" if record_id in blocked else ""
        print(f"  {record_id:<16} {status:<12} {title}{marker}")
    return 0


def cmd_convoy_list(args, town: Town) -> int:
    convoys = town.convoys.list_convoys()
    if not convoys:
        print("No convoys")
        return 0

    for convoy in convoys:
        progress = town.convoys.progress(convoy.id)
        line = f"{convoy.id:<14} {progress_bar(progress.fraction)} {progress.done}/{progress.total}  {convoy.name}"
        if progress.blocked_ids:
            line += f"  [{len(progress.blocked_ids)} blocked]"
        print(line)
    return 0
