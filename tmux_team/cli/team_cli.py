"""
Team CLI Module

Command-line interface for background team jobs: start a team from a config
file, then check, wait for, clean up and list jobs.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from .. import __version__
from ..core.job_manager import JobManager, JOB_COMPLETED, DEFAULT_WAIT_TIMEOUT_MS
from ..utils.config_loader import load_settings, load_team_config_file

console = Console()

STATUS_STYLES = {
    'running': 'cyan',
    'completed': 'green',
    'failed': 'red',
    'timeout': 'yellow',
}


class TeamCLI:
    """
    Command-line interface for tmux teams.

    Features:
    - Rich console output with colors and formatting
    - Tabular job listings
    - Raw JSON output for scripting (--json)
    """

    def __init__(self, manager: Optional[JobManager] = None):
        """
        Initialize CLI.

        Args:
            manager: Job manager, built from the loaded settings when omitted
        """
        self._manager = manager
        self.parser = self._create_argument_parser()

    @property
    def manager(self) -> JobManager:
        if self._manager is None:
            self._manager = JobManager(load_settings())
        return self._manager

    def error(self, message: str) -> None:
        console.print(f"[red]❌ {message}[/red]")

    def success(self, message: str) -> None:
        console.print(f"[green]✅ {message}[/green]")

    def warning(self, message: str) -> None:
        console.print(f"[yellow]⚠️  {message}[/yellow]")

    def info(self, message: str) -> None:
        console.print(f"[blue]ℹ️  {message}[/blue]")

    def run(self, args: Optional[List[str]] = None) -> int:
        """
        Run CLI with provided arguments.

        Args:
            args: Command-line arguments (defaults to sys.argv)

        Returns:
            Exit code (0 for success)
        """
        try:
            parsed_args = self.parser.parse_args(args)
            self._configure_logging(parsed_args.verbose)

            if hasattr(parsed_args, 'func'):
                return parsed_args.func(parsed_args)
            self.parser.print_help()
            return 1

        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            return 130
        except Exception as e:
            self.error(f"Error: {e}")
            return 1

    def _create_argument_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="tmux-team",
            description="Run teams of coding agents in tmux panes as background jobs",
            epilog="Use 'tmux-team <command> --help' for command-specific help"
        )
        parser.add_argument("--version", action="version", version=f"tmux-team v{__version__}")
        parser.add_argument("--verbose", "-v", action="count", default=0,
                            help="Increase log verbosity (use -v or -vv)")

        subparsers = parser.add_subparsers(title="commands", dest="command")

        start_parser = subparsers.add_parser("start", help="Start a team in the background")
        start_parser.add_argument("--config", "-c", required=True, type=Path,
                                  help="Team config file (YAML or JSON)")
        start_parser.add_argument("--json", action="store_true", help="Print raw JSON")
        start_parser.set_defaults(func=self._cmd_start)

        status_parser = subparsers.add_parser("status", help="Show job status without blocking")
        status_parser.add_argument("job_id", help="Job id (team-...)")
        status_parser.add_argument("--json", action="store_true", help="Print raw JSON")
        status_parser.set_defaults(func=self._cmd_status)

        wait_parser = subparsers.add_parser("wait", help="Wait for a job to finish")
        wait_parser.add_argument("job_id", help="Job id (team-...)")
        wait_parser.add_argument("--timeout-ms", type=int, default=DEFAULT_WAIT_TIMEOUT_MS,
                                 help="Maximum wait in milliseconds (capped at one hour)")
        wait_parser.add_argument("--json", action="store_true", help="Print raw JSON")
        wait_parser.set_defaults(func=self._cmd_wait)

        cleanup_parser = subparsers.add_parser("cleanup", help="Kill a job's worker panes")
        cleanup_parser.add_argument("job_id", help="Job id (team-...)")
        cleanup_parser.add_argument("--grace-ms", type=int, default=None,
                                    help="Grace period before panes are killed")
        cleanup_parser.set_defaults(func=self._cmd_cleanup)

        jobs_parser = subparsers.add_parser("jobs", help="List known jobs")
        jobs_parser.add_argument("--json", action="store_true", help="Print raw JSON")
        jobs_parser.set_defaults(func=self._cmd_jobs)

        return parser

    @staticmethod
    def _configure_logging(verbose: int) -> None:
        level = logging.WARNING
        if verbose == 1:
            level = logging.INFO
        elif verbose >= 2:
            level = logging.DEBUG
        logging.basicConfig(level=level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                            stream=sys.stderr)

    def _cmd_start(self, args) -> int:
        config = load_team_config_file(args.config)
        config.setdefault('cwd', str(Path.cwd()))
        config['cwd'] = str(Path(config['cwd']).expanduser().resolve())

        response = self.manager.start(config)
        if args.json:
            console.print_json(json.dumps(response))
        elif response.get('pid') is None:
            self.error(f"{response['jobId']}: {response['message']}")
        else:
            self.success(f"Started job [bold]{response['jobId']}[/bold] (pid {response['pid']})")
            self.info(f"Check progress with: tmux-team status {response['jobId']}")
        return 0 if response.get('pid') is not None else 1

    def _cmd_status(self, args) -> int:
        payload = self.manager.status(args.job_id)
        return self._show_payload(payload, args.json)

    def _cmd_wait(self, args) -> int:
        if not args.json:
            console.print(f"[cyan]Waiting for {args.job_id}...[/cyan]")
        payload = self.manager.wait(args.job_id, timeout_ms=args.timeout_ms)
        code = self._show_payload(payload, args.json)
        return 0 if payload.get('status') == JOB_COMPLETED else max(code, 1)

    def _cmd_cleanup(self, args) -> int:
        response = self.manager.cleanup(args.job_id, grace_ms=args.grace_ms)
        if 'error' in response:
            self.error(response['error'])
            return 1
        self.success(response['message'])
        return 0

    def _cmd_jobs(self, args) -> int:
        jobs = self.manager.list_jobs()
        if args.json:
            console.print_json(json.dumps(jobs))
            return 0
        if not jobs:
            console.print("[yellow]No jobs found[/yellow]")
            return 0

        table = Table(title="Team Jobs")
        table.add_column("Job", style="bold")
        table.add_column("Status", justify="center")
        table.add_column("Elapsed (s)", justify="right")
        table.add_column("Tasks")

        for job in jobs:
            table.add_row(
                job['jobId'],
                self._styled_status(job['status']),
                f"{job['elapsedSeconds']:.1f}",
                self._task_summary(job.get('result')),
            )
        console.print(table)
        return 0

    def _show_payload(self, payload: Dict[str, Any], as_json: bool) -> int:
        if as_json:
            console.print_json(json.dumps(payload))
            return 0 if 'jobId' in payload else 1
        if 'jobId' not in payload:
            self.error(payload.get('error', 'Unknown error'))
            return 1

        console.print(f"[bold]{payload['jobId']}[/bold]  {self._styled_status(payload['status'])}  "
                      f"({payload['elapsedSeconds']:.1f}s)")
        if payload.get('error'):
            self.warning(payload['error'])

        result = payload.get('result')
        if isinstance(result, dict) and result.get('taskResults'):
            table = Table(title=f"Tasks of {result.get('teamName', payload['jobId'])}")
            table.add_column("Task", style="bold")
            table.add_column("Status", justify="center")
            table.add_column("Summary")
            for task in result['taskResults']:
                table.add_row(str(task.get('taskId')), self._styled_status(task.get('status', 'unknown')),
                              task.get('summary', ''))
            console.print(table)

        if payload.get('stderr') and payload['status'] != JOB_COMPLETED:
            tail = '\n'.join(payload['stderr'].strip().split('\n')[-10:])
            console.print(tail, style="dim", markup=False)
        return 0

    @staticmethod
    def _styled_status(status: str) -> str:
        color = STATUS_STYLES.get(status, 'white')
        return f"[{color}]{status}[/{color}]"

    @staticmethod
    def _task_summary(result: Any) -> str:
        if not isinstance(result, dict):
            return ''
        tasks = result.get('taskResults') or []
        done = sum(1 for t in tasks if t.get('status') == 'completed')
        return f"{done}/{len(tasks)} completed"


def main() -> int:
    """Entry point for the tmux-team console script."""
    return TeamCLI().run()


if __name__ == '__main__':
    sys.exit(main())
