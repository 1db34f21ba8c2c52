#!/usr/bin/env python3
"""Gas Town CLI entrypoint."""

import argparse
import logging
import os
import sys
from pathlib import Path

from gastown.commands import convoy as cmd_convoy_module
from gastown.commands import formula as cmd_formula_module
from gastown.commands import hook as cmd_hook_module
from gastown.commands import molecule as cmd_molecule_module
from gastown.commands import patrol as cmd_patrol_module
from gastown.commands import rig as cmd_rig_module
from gastown.commands import status as cmd_status_module
from gastown.lib.config import load_town_config
from gastown.lib.constants import EXIT_ERROR, EXIT_USAGE
from gastown.lib.errors import GastownError
from gastown.lib.types import HookState
from gastown.town import Town


def get_town_dir(args) -> Path:
    """Town root from --town, then $GT_TOWN, then the current directory."""
    town = args.town or os.environ.get("GT_TOWN")
    return Path(town).expanduser().resolve() if town else Path.cwd()


def setup_logging(level: str, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def run_command(func, args, with_agents: bool = False) -> int:
    """Build the town and run a command, turning orchestration errors into exit codes."""
    town_dir = get_town_dir(args)
    try:
        config = load_town_config(town_dir)
    except ValueError as e:
        print(f"ERROR: Invalid town.env: {e}")
        return EXIT_USAGE

    setup_logging(config.log_level, args.verbose)

    try:
        town = Town.with_agents(town_dir, config=config) if with_agents else Town(town_dir, config=config)
        return func(args, town)
    except GastownError as e:
        print(f"ERROR: {e}")
        return EXIT_ERROR


def cmd_patrol(args):
    with_agents = not (args.once or args.no_agents)
    return run_command(cmd_patrol_module.cmd_patrol, args, with_agents=with_agents)


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(prog='gt', description='Gas Town orchestration CLI')
    parser.add_argument('--town', '-t', help='Town directory (default: $GT_TOWN or current directory)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # gt rig
    p_rig = subparsers.add_parser('rig', help='Manage rigs')
    rig_sub = p_rig.add_subparsers(dest='rig_cmd', required=True)

    p_rig_add = rig_sub.add_parser('add', help='Register a rig')
    p_rig_add.add_argument('id', help='Rig ID')
    p_rig_add.add_argument('repository', help='Path to the rig repository')
    p_rig_add.set_defaults(func=cmd_rig_module.cmd_rig_add)

    p_rig_list = rig_sub.add_parser('list', help='List rigs')
    p_rig_list.set_defaults(func=cmd_rig_module.cmd_rig_list)

    # gt hook
    p_hook = subparsers.add_parser('hook', help='Manage hooks')
    hook_sub = p_hook.add_subparsers(dest='hook_cmd', required=True)

    p_hook_acquire = hook_sub.add_parser('acquire', help='Get an active hook for an agent')
    p_hook_acquire.add_argument('rig', help='Rig ID')
    p_hook_acquire.add_argument('agent', help='Agent ID')
    p_hook_acquire.set_defaults(func=cmd_hook_module.cmd_hook_acquire)

    for name, func, help_text in [
        ('release', cmd_hook_module.cmd_hook_release, 'Suspend a hook and drop its agent'),
        ('complete', cmd_hook_module.cmd_hook_complete, 'Mark a hook completed'),
        ('repair', cmd_hook_module.cmd_hook_repair, 'Repair an errored hook'),
    ]:
        p = hook_sub.add_parser(name, help=help_text)
        p.add_argument('id', help='Hook ID')
        p.set_defaults(func=func)

    p_hook_archive = hook_sub.add_parser('archive', help='Archive a hook and remove its worktree')
    p_hook_archive.add_argument('id', help='Hook ID')
    p_hook_archive.add_argument('--force', action='store_true', help='Archive even if records are slung to it')
    p_hook_archive.set_defaults(func=cmd_hook_module.cmd_hook_archive)

    p_hook_list = hook_sub.add_parser('list', help='List hooks')
    p_hook_list.add_argument('--rig', '-r', help='Only hooks in this rig')
    p_hook_list.add_argument('--state', '-s', action='append', choices=[s.value for s in HookState],
                             help='Only hooks in this state (repeatable)')
    p_hook_list.add_argument('--all', '-a', action='store_true', help='Include archived hooks')
    p_hook_list.set_defaults(func=cmd_hook_module.cmd_hook_list)

    # gt convoy
    p_convoy = subparsers.add_parser('convoy', help='Manage convoys')
    convoy_sub = p_convoy.add_subparsers(dest='convoy_cmd', required=True)

    p_convoy_create = convoy_sub.add_parser('create', help='Create a convoy')
    p_convoy_create.add_argument('name', help='Convoy name')
    p_convoy_create.add_argument('records', nargs='*', help='Record IDs')
    p_convoy_create.set_defaults(func=cmd_convoy_module.cmd_convoy_create)

    p_convoy_add = convoy_sub.add_parser('add', help='Add records to a convoy')
    p_convoy_add.add_argument('id', help='Convoy ID')
    p_convoy_add.add_argument('records', nargs='+', help='Record IDs')
    p_convoy_add.add_argument('--expected-revision', type=int, help='Fail if the convoy changed since this revision')
    p_convoy_add.set_defaults(func=cmd_convoy_module.cmd_convoy_add)

    p_convoy_show = convoy_sub.add_parser('show', help='Show convoy progress')
    p_convoy_show.add_argument('id', help='Convoy ID')
    p_convoy_show.set_defaults(func=cmd_convoy_module.cmd_convoy_show)

    p_convoy_list = convoy_sub.add_parser('list', help='List convoys')
    p_convoy_list.set_defaults(func=cmd_convoy_module.cmd_convoy_list)

    # gt formula
    p_formula = subparsers.add_parser('formula', help='Manage formulas')
    formula_sub = p_formula.add_subparsers(dest='formula_cmd', required=True)

    p_formula_load = formula_sub.add_parser('load', help='Load formula files')
    p_formula_load.add_argument('paths', nargs='*', help='Formula files (default: <town>/formulas/*.formula.yaml)')
    p_formula_load.set_defaults(func=cmd_formula_module.cmd_formula_load)

    p_formula_validate = formula_sub.add_parser('validate', help='Validate formula files')
    p_formula_validate.add_argument('paths', nargs='*', help='Formula files (default: <town>/formulas/*.formula.yaml)')
    p_formula_validate.set_defaults(func=cmd_formula_module.cmd_formula_validate)

    p_formula_list = formula_sub.add_parser('list', help='List loaded formulas')
    p_formula_list.set_defaults(func=cmd_formula_module.cmd_formula_list)

    # gt molecule
    p_molecule = subparsers.add_parser('molecule', help='Manage molecules')
    molecule_sub = p_molecule.add_subparsers(dest='molecule_cmd', required=True)

    p_pour = molecule_sub.add_parser('pour', help='Instantiate a formula')
    p_pour.add_argument('formula', help='Formula name')
    p_pour.add_argument('--var', action='append', metavar='KEY=VALUE', help='Variable binding (repeatable)')
    p_pour.add_argument('--rig', '-r', help='Rig that runs the steps')
    p_pour.set_defaults(func=cmd_molecule_module.cmd_molecule_pour)

    p_molecule_list = molecule_sub.add_parser('list', help='List molecules')
    p_molecule_list.add_argument('--live', action='store_true', help='Only running molecules')
    p_molecule_list.add_argument('--steps', action='store_true', help='Show step states')
    p_molecule_list.set_defaults(func=cmd_molecule_module.cmd_molecule_list)

    p_molecule_cancel = molecule_sub.add_parser('cancel', help='Cancel a molecule')
    p_molecule_cancel.add_argument('id', help='Molecule ID')
    p_molecule_cancel.set_defaults(func=cmd_molecule_module.cmd_molecule_cancel)

    p_molecule_retry = molecule_sub.add_parser('retry', help='Retry a failed or skipped step')
    p_molecule_retry.add_argument('id', help='Molecule ID')
    p_molecule_retry.add_argument('step', help='Step name')
    p_molecule_retry.set_defaults(func=cmd_molecule_module.cmd_molecule_retry)

    # gt status
    p_status = subparsers.add_parser('status', help='Show town status')
    p_status.add_argument('--json', action='store_true', help='Machine-readable output')
    p_status.add_argument('--all', '-a', action='store_true', help='Include archived hooks')
    p_status.set_defaults(func=cmd_status_module.cmd_status)

    # gt patrol
    p_patrol = subparsers.add_parser('patrol', help='Run the orchestration loop')
    p_patrol.add_argument('--once', action='store_true', help='Run a single cycle without launching agents')
    p_patrol.add_argument('--prefect', action='store_true', help='Run as a Prefect flow')
    p_patrol.add_argument('--no-agents', action='store_true', help='Dispatch without launching agents')
    p_patrol.add_argument('--interval', type=float, help='Seconds between cycles (default: POLL_INTERVAL)')
    p_patrol.add_argument('--max-cycles', type=int, help='Stop after this many cycles')
    p_patrol.set_defaults(func=cmd_patrol_module.cmd_patrol, entry=cmd_patrol)

    args = parser.parse_args(argv)
    entry = getattr(args, 'entry', None)
    if entry is not None:
        return entry(args)
    return run_command(args.func, args)


if __name__ == '__main__':
    sys.exit(main())
