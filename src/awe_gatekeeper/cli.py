from __future__ import annotations

import argparse
import json
import sys

import httpx


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='awe-gatekeeper', description='Drive the verification pipeline and War Room')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='Gatekeeper API base URL')

    sub = parser.add_subparsers(dest='command', required=True)

    tasks = sub.add_parser('tasks', help='List tasks')
    tasks.add_argument('--project', default='', help='Only tasks of this project id')
    tasks.add_argument('--status', default='', help='Only tasks in this status')
    tasks.add_argument('--limit', type=int, default=20)

    status = sub.add_parser('status', help='Get task status')
    status.add_argument('task_id', help='Task id')

    start = sub.add_parser('start-pipeline', help='Send a board task into build_check')
    start.add_argument('task_id', help='Task id')

    events = sub.add_parser('events', help='List task events')
    events.add_argument('task_id', help='Task id')

    verifications = sub.add_parser('verifications', help='List verification records of a task')
    verifications.add_argument('task_id', help='Task id')
    verifications.add_argument('--gate', default='', help='Only records of this gate')

    gate = sub.add_parser('gate', help='Run one gate attempt')
    gate.add_argument('task_id', help='Task id')
    gate.add_argument('--gate', required=True, choices=['build_check', 'deploy_check', 'perception_check'])
    gate.add_argument('--attempt', type=int, required=True, help='Attempt number (1-3)')
    gate.add_argument('--project', default='', help='Project id override')

    auto_fix = sub.add_parser('auto-fix-done', help='Signal that an auto-fix was pushed and re-run the gate')
    auto_fix.add_argument('task_id', help='Task id')
    auto_fix.add_argument('--gate', default='', help='Gate the fix was for')

    approve = sub.add_parser('approve', help='Approve a task at the human checkpoint')
    approve.add_argument('task_id', help='Task id')
    approve.add_argument('--notes', default='')

    reject = sub.add_parser('reject', help='Reject a task at the human checkpoint')
    reject.add_argument('task_id', help='Task id')
    reject.add_argument('--notes', required=True)

    retry = sub.add_parser('retry', help='Reset an escalated gate with instructions for the fixer')
    retry.add_argument('task_id', help='Task id')
    retry.add_argument('--instructions', required=True)

    reassign = sub.add_parser('reassign', help='Reset an escalated gate and hand it to another agent')
    reassign.add_argument('task_id', help='Task id')
    reassign.add_argument('--agent', required=True)

    recover = sub.add_parser('recover-gate', help='Close a gate attempt left running by a crashed worker')
    recover.add_argument('task_id', help='Task id')
    recover.add_argument(
        '--stale-after', type=int, default=None, help='Seconds a run must be stuck (server default when omitted)'
    )

    deploy = sub.add_parser('deploy', help='Report a finished deploy')
    deploy.add_argument('project_id', help='Project id')
    deploy.add_argument('--commit', required=True)
    deploy.add_argument('--url', default='', help='Deploy URL')
    deploy.add_argument('--status', default='success', choices=['success', 'failure'])

    discuss = sub.add_parser('discuss', help='Run a team discussion in a room')
    discuss.add_argument('room_id', help='Room id')
    discuss.add_argument('--topic', required=True)
    discuss.add_argument('--deliverable', default='')
    discuss.add_argument('--agent', action='append', default=[], help='Participating agent (repeatable)')
    discuss.add_argument('--discussion-id', default='')

    stop = sub.add_parser('stop-discussion', help='Stop a running discussion')
    stop.add_argument('discussion_id', help='Discussion id')

    notifications = sub.add_parser('notifications', help='List notifications')
    notifications.add_argument('--project', default='')
    notifications.add_argument('--limit', type=int, default=20)

    health = sub.add_parser('health', help='Check production health')
    health.add_argument('project_id', nargs='?', default='', help='Project id (all projects when omitted)')

    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _params(**values) -> dict:
    return {k: v for k, v in values.items() if v not in (None, '')}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')

    # Discussions and gate runs block until the agents or browsers finish.
    with httpx.Client(timeout=300) as client:
        if args.command == 'tasks':
            response = client.get(
                f'{base}/api/tasks',
                params=_params(project_id=args.project, status=args.status, limit=int(args.limit)),
            )
        elif args.command == 'status':
            response = client.get(f'{base}/api/tasks/{args.task_id}')
        elif args.command == 'start-pipeline':
            response = client.post(f'{base}/api/tasks/{args.task_id}/pipeline')
        elif args.command == 'events':
            response = client.get(f'{base}/api/tasks/{args.task_id}/events')
        elif args.command == 'verifications':
            response = client.get(
                f'{base}/api/tasks/{args.task_id}/verifications',
                params=_params(gate=args.gate),
            )
        elif args.command == 'gate':
            response = client.post(
                f'{base}/api/gates/run',
                json={
                    'task_id': args.task_id,
                    'gate': args.gate,
                    'attempt': int(args.attempt),
                    'project_id': (args.project.strip() or None),
                },
            )
        elif args.command == 'auto-fix-done':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/auto-fix-complete',
                json={'gate': (args.gate.strip() or None)},
            )
        elif args.command in {'approve', 'reject'}:
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/decision',
                json={'decision': args.command, 'notes': (args.notes.strip() or None)},
            )
        elif args.command == 'retry':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/retry',
                json={'instructions': args.instructions},
            )
        elif args.command == 'reassign':
            response = client.post(f'{base}/api/tasks/{args.task_id}/reassign', json={'agent': args.agent})
        elif args.command == 'recover-gate':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/recover-gate',
                json={'stale_after_seconds': args.stale_after},
            )
        elif args.command == 'deploy':
            response = client.post(
                f'{base}/api/deploy-events',
                json={
                    'project_id': args.project_id,
                    'commit': args.commit,
                    'deploy_url': (args.url.strip() or None),
                    'status': args.status,
                },
            )
        elif args.command == 'discuss':
            response = client.post(
                f'{base}/api/discussions',
                json={
                    'room_id': args.room_id,
                    'topic': args.topic,
                    'deliverable': args.deliverable,
                    'agents': list(args.agent),
                    'discussion_id': (args.discussion_id.strip() or None),
                },
            )
        elif args.command == 'stop-discussion':
            response = client.post(f'{base}/api/discussions/stop', json={'discussion_id': args.discussion_id})
        elif args.command == 'notifications':
            response = client.get(
                f'{base}/api/notifications',
                params=_params(project_id=args.project, limit=int(args.limit)),
            )
        elif args.command == 'health':
            if args.project_id:
                response = client.get(f'{base}/api/health/{args.project_id}')
            else:
                response = client.get(f'{base}/api/health')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
