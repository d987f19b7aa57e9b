"""
Worker Bootstrap Module

Writes the protocol overlay each worker reads on startup and builds the task
instructions delivered through its inbox. Paths in the text are relative to
the team cwd, which is where every worker pane starts.
"""

from typing import Any, Dict, List

from ..core.team_state import TeamPaths


def generate_worker_overlay(paths: TeamPaths, worker_name: str, agent_type: str,
                            tasks: List[Dict[str, Any]]) -> str:
    """
    Generate the AGENTS.md protocol overlay for one worker.

    Args:
        paths: Team state layout
        worker_name: Worker the overlay is for
        agent_type: Worker CLI kind
        tasks: [{'id', 'subject'}] visible to the team

    Returns:
        str: Markdown overlay
    """
    team = paths.team_name
    heartbeat = paths.relative(paths.heartbeat_path(worker_name))
    inbox = paths.relative(paths.inbox_path(worker_name))
    outbox = paths.relative(paths.worker_dir(worker_name) / 'outbox.jsonl')
    tasks_dir = paths.relative(paths.tasks_dir)
    done = paths.relative(paths.done_path(worker_name))
    shutdown = paths.relative(paths.shutdown_path)
    ack = paths.relative(paths.shutdown_ack_path(worker_name))

    if tasks:
        task_list = '\n'.join(f"- **Task {t['id']}**: {t['subject']}" for t in tasks)
    else:
        task_list = '- No tasks assigned yet. Check your inbox for assignments.'

    return f"""# Team Worker Protocol

## Identity
- **Team**: {team}
- **Worker**: {worker_name}
- **Agent Type**: {agent_type}
- **Environment**: TMUX_TEAM_WORKER={team}/{worker_name}

## Team Tasks
{task_list}

## Task Claiming Protocol
1. Read the task from {tasks_dir}/<taskId>.json
2. Only claim a task whose owner is null, whose status is "pending" and whose
   blockedBy tasks are all "completed"
3. Set status to "in_progress" and owner to "{worker_name}"; keep every other field
4. Do the work
5. Set status to "completed" (or "failed") and write your result into "result"

## Communication Protocol
- **Inbox**: {inbox} holds one JSON message per line; read new lines for instructions
- **Outbox**: append one JSON line to {outbox} to report progress to the leader
- **Heartbeat**: update {heartbeat} every few minutes:
  {{"workerName":"{worker_name}","status":"working","updatedAt":"<ISO timestamp>","currentTaskId":"<id or null>"}}

## Task Completion Protocol
When you finish a task, write the done signal {done} as one JSON line:
{{"taskId":"<id>","status":"completed","summary":"<1-2 sentence summary>","completedAt":"<ISO timestamp>"}}
Use "failed" as the status on failure and put the error in the summary.

## Shutdown Protocol
When {shutdown} exists:
1. Finish your current task if close to completion
2. Write {ack}
3. Exit
"""


def write_worker_overlay(paths: TeamPaths, worker_name: str, agent_type: str,
                         tasks: List[Dict[str, Any]]) -> None:
    path = paths.overlay_path(worker_name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_worker_overlay(paths, worker_name, agent_type, tasks), encoding='utf-8')


def welcome_message(paths: TeamPaths, worker_name: str) -> Dict[str, Any]:
    overlay = paths.relative(paths.overlay_path(worker_name))
    return {
        'type': 'welcome',
        'content': (f"Welcome, {worker_name}. Read your protocol overlay at {overlay}, "
                    f"then claim tasks from {paths.relative(paths.tasks_dir)}/"),
    }


def initial_task_message(paths: TeamPaths, worker_name: str, task_id: str,
                         subject: str, description: str) -> Dict[str, Any]:
    """Inbox message carrying the first task for a worker."""
    done = paths.relative(paths.done_path(worker_name))
    content = '\n'.join([
        '## Initial Task Assignment',
        f'Task ID: {task_id}',
        f'Worker: {worker_name}',
        f'Subject: {subject}',
        '',
        description,
        '',
        f'When complete, write done signal to {done}:',
        f'{{"taskId":"{task_id}","status":"completed","summary":"<brief summary>","completedAt":"<ISO timestamp>"}}',
    ])
    return {'type': 'task_assignment', 'taskId': task_id, 'content': content}


def task_assignment_message(paths: TeamPaths, task_id: str) -> Dict[str, Any]:
    task_file = paths.relative(paths.task_path(task_id))
    return {
        'type': 'task_assignment',
        'taskId': task_id,
        'content': f"## New Task Assignment\nTask ID: {task_id}\nClaim and execute task from: {task_file}",
    }
