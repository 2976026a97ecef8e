"""Console output, verbosity and secret redaction"""

import json
import os
import sys
from contextlib import contextmanager
from typing import Any, Iterator, List, Set

from rich.console import Console  # type: ignore[import]
from rich.markup import escape  # type: ignore[import]

console = Console(soft_wrap=True)

# Global verbosity settings
VERBOSE: bool = False
QUIET: bool = False
DEBUG: bool = False

# Every value registered here is replaced with *** in echoed output
_SECRETS: Set[str] = set()


# Status icons
class Icons:
    SUCCESS = "[green]✓[/green]"
    WARNING = "[yellow]⚠[/yellow]"
    ERROR = "[red]✗[/red]"
    INFO = "[blue]ℹ[/blue]"
    PROGRESS = "[cyan]➤[/cyan]"


def set_verbosity(verbose: bool = False, quiet: bool = False, debug: bool = False) -> None:
    """Set the global verbosity flags"""
    global VERBOSE, QUIET, DEBUG

    VERBOSE = verbose
    QUIET = quiet
    DEBUG = debug or os.environ.get("RUNNER_DEBUG") == "1"


def in_github_actions() -> bool:
    return os.environ.get("GITHUB_ACTIONS") == "true"


def workflow_command(command: str, value: str = "") -> None:
    """Emit a raw GitHub Actions workflow command"""
    sys.stdout.write(f"::{command}::{value}\n")
    sys.stdout.flush()


def register_secret(value: Any) -> None:
    """Register a value for redaction before it is logged or passed to a tool"""
    if value is None:
        return
    text = str(value)
    if not text.strip():
        return
    _SECRETS.add(text)
    if in_github_actions():
        # Multi-line secrets must be masked line by line
        for line in text.splitlines():
            if line.strip():
                workflow_command("add-mask", line)


def redact(text: str) -> str:
    """Replace registered secrets in text"""
    if not text:
        return text
    # Longest first so a secret containing another is masked whole
    for secret in sorted(_SECRETS, key=len, reverse=True):
        text = text.replace(secret, "***")
    return text


def clear_secrets() -> None:
    _SECRETS.clear()


def info(message: str) -> None:
    if not QUIET:
        console.print(message)


def success(message: str) -> None:
    if not QUIET:
        console.print(f"{Icons.SUCCESS} {message}")


def warning(message: str) -> None:
    console.print(f"{Icons.WARNING} [yellow]{escape(redact(message))}[/yellow]")
    if in_github_actions():
        workflow_command("warning", redact(message).replace("\n", "%0A"))


def error(message: str) -> None:
    console.print(f"{Icons.ERROR} [red]{escape(redact(message))}[/red]")
    if in_github_actions():
        workflow_command("error", redact(message).replace("\n", "%0A"))


def debug_log(message: str) -> None:
    """Print non-empty, de-duplicated lines in verbose or debug mode"""
    if not (VERBOSE or DEBUG) or QUIET:
        return
    seen: List[str] = []
    for line in message.split("\n"):
        if not line.strip() or line in seen:
            continue
        seen.append(line)
    for line in seen:
        console.print(f"[dim]{escape(redact(line))}[/dim]")


def print_json(label: str, payload: Any) -> None:
    """Pretty-print a JSON payload in debug mode"""
    debug_log(f"{label}\n{json.dumps(payload, indent=2, default=str)}")


@contextmanager
def group(title: str) -> Iterator[None]:
    """Print a stage header and fold its output in GitHub Actions logs"""
    folded = in_github_actions()
    if folded:
        workflow_command("group", title)
    elif not QUIET:
        console.print()
        console.rule(f"[bold blue]{title}[/bold blue]")
    try:
        yield
    finally:
        if folded:
            workflow_command("endgroup")
