"""
gt molecule - Pour formulas and manage running molecules.
"""

from gastown.town import Town


def parse_bindings(pairs: list[str] | None) -> dict[str, str]:
    """Parse ["key=value", ...] into a dict. Raises ValueError on malformed pairs."""
    bindings = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected KEY=VALUE, got '{pair}'")
        bindings[key.strip()] = value
    return bindings


def cmd_molecule_pour(args, town: Town) -> int:
    try:
        bindings = parse_bindings(args.var)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1

    if args.rig:
        town.hooks.get_rig(args.rig)

    molecule = town.engine.instantiate(args.formula, bindings, rig_id=args.rig)
    print(f"Poured {molecule.id} from {molecule.formula_name} (convoy {molecule.convoy_id})")
    for step, record_id in molecule.step_records.items():
        print(f"  {step:<20} {record_id}")
    return 0


def cmd_molecule_list(args, town: Town) -> int:
    molecules = town.engine.list_molecules(live_only=args.live)
    if not molecules:
        print("No molecules")
        return 0

    for molecule in molecules:
        states = molecule.step_states.values()
        done = sum(1 for s in states if s.is_terminal)
        print(f"{molecule.id:<14} {molecule.formula_name:<20} {molecule.status.value:<10} "
              f"{done}/{len(molecule.step_states)} steps  rig={molecule.rig_id or '-'}")
        if args.steps:
            for step, state in molecule.step_states.items():
                print(f"    {step:<20} {state.value}")
    return 0


def cmd_molecule_cancel(args, town: Town) -> int:
    skipped = town.orchestrator.cancel_molecule(args.id)
    print(f"Cancelled {args.id}" + (f" (skipped {', '.join(skipped)})" if skipped else ""))
    return 0


def cmd_molecule_retry(args, town: Town) -> int:
    molecule = town.engine.retry_step(args.id, args.step)
    print(f"{molecule.id}: {args.step} is {molecule.step_states[args.step].value}, molecule {molecule.status.value}")
    return 0
