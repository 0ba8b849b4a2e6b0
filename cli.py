#!/usr/bin/env python3
"""
paperdesk CLI.

Commands:
- init-db: create the SQLite schema
- create-agent / start / stop / pause / trigger / status / reset / delete
- create-manager / start-manager / stop-manager / pause-manager / delete-manager
- run: resume every running schedule and serve ticks until interrupted
- models: list free OpenRouter models
- snapshot: save a performance snapshot for every agent

Lifecycle commands only write durable state; a ``run`` process picks up
newly started schedules on its next rescan.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Optional

from config_env import get_param, load_config
from desk_db import DeskDB
from desk_service import DeskService
from env_utils import PAPERDESK_DB_PATH
from llm_router import DEFAULT_BASE_URL, list_free_models
from logging_utils import setup_logging
from tick_scheduler import TickConflict

DEFAULT_RESCAN_SEC = 30.0


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_params(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError('--params must be a JSON object')
    return parsed


def build_service(args) -> DeskService:
    config = load_config(getattr(args, 'config', None))
    return DeskService.from_config(config)


def cmd_init_db(args) -> int:
    config = load_config(args.config)
    db_path = get_param(config, 'db_path') or PAPERDESK_DB_PATH
    DeskDB(db_path)
    print(f"Initialized database at {db_path}")
    return 0


def cmd_create_agent(args) -> int:
    service = build_service(args)
    params = _parse_params(args.params)
    if args.pairs:
        params['pairs'] = [p.strip() for p in args.pairs.split(',') if p.strip()]
    if args.model:
        params['llm_model'] = args.model
    record = service.create_agent(name=args.name, params=params, owner=args.owner or '', start=args.start)
    print(f"Created agent {record.id} ({record.name}) model={record.llm_model} status={record.status}")
    return 0


def cmd_agent_lifecycle(args) -> int:
    service = build_service(args)
    actions = {
        'start': service.start_agent,
        'stop': service.stop_agent,
        'pause': service.pause_agent,
        'reset': service.reset_agent,
        'delete': service.delete_agent,
    }
    actions[args.command](args.agent_id)
    print(f"Agent {args.agent_id}: {args.command} ok")
    return 0


async def cmd_trigger(args) -> int:
    setup_logging('paperdesk', verbose=args.verbose)
    service = build_service(args)
    try:
        outcome = await service.trigger_agent(args.agent_id)
    except TickConflict as e:
        print(f"Trigger refused: {e}")
        return 2
    print(f"Agent {args.agent_id}: cycle outcome={outcome}")
    return 0


def cmd_status(args) -> int:
    service = build_service(args)
    if args.agent_id:
        _print_json(service.agent_status(args.agent_id))
        return 0
    rows = []
    for agent in service.db.list_agents():
        sched = service.db.get_schedule('agent', agent.id)
        rows.append({
            'id': agent.id,
            'name': agent.name,
            'status': agent.status,
            'model': agent.llm_model,
            'manager_id': agent.manager_id,
            'next_wake_at': sched.next_wake_at if sched else None,
        })
    for manager in service.db.list_managers():
        rows.append({'id': manager.id, 'name': manager.name, 'status': manager.status, 'kind': 'manager'})
    _print_json(rows)
    return 0


def cmd_create_manager(args) -> int:
    service = build_service(args)
    params = _parse_params(args.params)
    record = service.create_manager(name=args.name, params=params, owner=args.owner or '')
    print(f"Created manager {record.id} ({record.name})")
    if args.start:
        service.start_manager(record.id)
        print(f"Manager {record.id} started")
    return 0


def cmd_manager_lifecycle(args) -> int:
    service = build_service(args)
    if args.command == 'delete-manager':
        unlinked = service.delete_manager(args.manager_id)
        print(f"Manager {args.manager_id} deleted ({unlinked} agents unlinked)")
        return 0
    actions = {
        'start-manager': service.start_manager,
        'stop-manager': service.stop_manager,
        'pause-manager': service.pause_manager,
    }
    actions[args.command](args.manager_id)
    print(f"Manager {args.manager_id}: {args.command} ok")
    return 0


async def cmd_run(args) -> int:
    """Serve ticks until interrupted."""
    log = setup_logging('paperdesk', log_file=args.log_file, verbose=args.verbose)
    service = build_service(args)
    service.resume_all()
    log.info("paperdesk running (rescan every %.0fs)", args.rescan_sec)
    try:
        while True:
            await asyncio.sleep(args.rescan_sec)
            service.resume_all()
    except asyncio.CancelledError:
        log.info("paperdesk cancelled")
    finally:
        service.registry.cancel_all()
        service.db.close()
    return 0


def cmd_models(args) -> int:
    config = load_config(args.config)
    api_key = get_param(config, 'llm.api_key') or ''
    base_url = get_param(config, 'llm.base_url') or DEFAULT_BASE_URL
    try:
        models = list_free_models(api_key, base_url)
    except Exception as e:
        print(f"Failed to list models: {e}")
        return 1
    for m in models:
        print(f"{m['id']}\t{m.get('context') or ''}\t{m.get('name') or ''}")
    return 0


def cmd_snapshot(args) -> int:
    service = build_service(args)
    saved = service.snapshot_all()
    print(f"Saved {saved} performance snapshots")
    return 0


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description='paperdesk: scheduled paper-trading agents',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--config', default=None, help='Path to paperdesk.yaml')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('init-db', help='Create the database schema')

    create_parser = subparsers.add_parser('create-agent', help='Create a paper-trading agent')
    create_parser.add_argument('name', help='Agent name')
    create_parser.add_argument('--pairs', help='Comma-separated pairs (e.g. WETH/USDC,cbBTC/USDC)')
    create_parser.add_argument('--model', help='OpenRouter model id (free models only)')
    create_parser.add_argument('--params', help='JSON object of config overrides')
    create_parser.add_argument('--owner', help='Owner label')
    create_parser.add_argument('--start', action='store_true', help='Start immediately')

    for name, help_text in (
        ('start', 'Start an agent'),
        ('stop', 'Stop an agent'),
        ('pause', 'Pause an agent'),
        ('reset', 'Stop an agent and reset its ledger'),
        ('delete', 'Delete an agent and its history'),
        ('trigger', 'Run one agent cycle now'),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument('agent_id', help='Agent id')

    status_parser = subparsers.add_parser('status', help='Show agent status')
    status_parser.add_argument('agent_id', nargs='?', help='Agent id (omit to list all)')

    mgr_parser = subparsers.add_parser('create-manager', help='Create an agent manager')
    mgr_parser.add_argument('name', help='Manager name')
    mgr_parser.add_argument('--params', help='JSON object of config overrides')
    mgr_parser.add_argument('--owner', help='Owner label')
    mgr_parser.add_argument('--start', action='store_true', help='Start immediately')

    for name, help_text in (
        ('start-manager', 'Start a manager'),
        ('stop-manager', 'Stop a manager'),
        ('pause-manager', 'Pause a manager'),
        ('delete-manager', 'Delete a manager (its agents are unlinked)'),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument('manager_id', help='Manager id')

    run_parser = subparsers.add_parser('run', help='Serve scheduled ticks until interrupted')
    run_parser.add_argument('--log-file', default=None, help='Also log to this file')
    run_parser.add_argument('--rescan-sec', type=float, default=DEFAULT_RESCAN_SEC,
                            help=f'Pick up newly started schedules every N seconds (default: {DEFAULT_RESCAN_SEC:.0f})')

    subparsers.add_parser('models', help='List free OpenRouter models')
    subparsers.add_parser('snapshot', help='Save performance snapshots for all agents')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == 'init-db':
            return cmd_init_db(args)
        elif args.command == 'create-agent':
            return cmd_create_agent(args)
        elif args.command in ('start', 'stop', 'pause', 'reset', 'delete'):
            return cmd_agent_lifecycle(args)
        elif args.command == 'trigger':
            return asyncio.run(cmd_trigger(args))
        elif args.command == 'status':
            return cmd_status(args)
        elif args.command == 'create-manager':
            return cmd_create_manager(args)
        elif args.command in ('start-manager', 'stop-manager', 'pause-manager', 'delete-manager'):
            return cmd_manager_lifecycle(args)
        elif args.command == 'run':
            try:
                return asyncio.run(cmd_run(args))
            except KeyboardInterrupt:
                return 0
        elif args.command == 'models':
            return cmd_models(args)
        elif args.command == 'snapshot':
            return cmd_snapshot(args)
    except KeyError as e:
        print(f"Not found: {e.args[0] if e.args else e}")
        return 1
    except ValueError as e:
        print(f"Invalid input: {e}")
        return 1

    parser.print_help()
    return 1


if __name__ == '__main__':
    sys.exit(main())
