"""Notarization through notarytool and stapler"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.markup import escape  # type: ignore[import]
from rich.progress import Progress, SpinnerColumn, TextColumn  # type: ignore[import]

from . import console as log
from .console import console
from .errors import ReleaseError
from .models import BuildArtifact, NotarizationStatus, SigningCredential
from .plists import loads_plist
from .process import Runner, run_command

NOTARYTOOL = ["xcrun", "notarytool"]
STAPLER = ["xcrun", "stapler"]
NOTARIZATION_TIMEOUT = "2h"


class Notarizer:
    def __init__(self, credential: SigningCredential, runner: Runner = run_command):
        self.credential = credential
        self.runner = runner

    def _auth_args(self) -> List[str]:
        return [
            "--key", str(self.credential.api_key_path),
            "--key-id", self.credential.api_key_id,
            "--issuer", self.credential.api_issuer_id,
        ]

    def is_notarized(self, path: Path) -> bool:
        """True if path already carries a valid stapled ticket"""
        result = self.runner([*STAPLER, "validate", str(path)], check=False, show_output=False)
        return result.returncode == 0

    def notarize(
        self,
        artifact: BuildArtifact,
        submit_path: Optional[Path] = None,
        staple_path: Optional[Path] = None,
    ) -> BuildArtifact:
        """Submit for notarization, wait for the verdict and staple the ticket

        submit_path is what gets uploaded (a zip for app bundles);
        staple_path receives the ticket and defaults to the artifact.
        """
        staple_path = staple_path or artifact.path
        submit_path = submit_path or artifact.path

        if self.is_notarized(staple_path):
            log.success(f"{staple_path.name} is already notarized")
            artifact.notarization = NotarizationStatus.STAPLED
            return artifact

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            disable=log.QUIET,
        ) as progress:
            progress.add_task(f"Notarizing {submit_path.name}...", total=None)
            artifact.notarization = NotarizationStatus.SUBMITTED
            result = self.runner(
                [
                    *NOTARYTOOL,
                    "submit",
                    str(submit_path),
                    *self._auth_args(),
                    "--wait",
                    "--timeout",
                    NOTARIZATION_TIMEOUT,
                    "--output-format",
                    "plist",
                ]
            )

        response = loads_plist(result.stdout or "")
        response_path = submit_path.parent / "NotarizationResponse.plist"
        response_path.write_text(result.stdout or "")
        log.debug_log(f"Notarization response saved to: {response_path}")

        status = response.get("status", "Unknown")
        message = response.get("message", "No message provided")
        if status != "Accepted":
            self.handle_failure(response, submit_path.parent)
            raise ReleaseError(f"Notarization failed with status '{status}': {message}")
        artifact.notarization = NotarizationStatus.ACCEPTED

        self.runner([*STAPLER, "staple", str(staple_path)])
        if not self.is_notarized(staple_path):
            raise ReleaseError(f"Stapled ticket for {staple_path.name} failed validation")
        artifact.notarization = NotarizationStatus.STAPLED
        log.success(f"Notarized and stapled {staple_path.name}")
        return artifact

    def handle_failure(self, response: Dict[str, Any], work_dir: Path) -> None:
        """Fetch and display the detailed notarization log"""
        submission_id = response.get("id")
        if not submission_id:
            return

        console.print(
            f"[yellow]Fetching detailed notarization log for submission {escape(submission_id)}...[/yellow]"
        )
        log_result = self.runner([*NOTARYTOOL, "log", submission_id, *self._auth_args()])
        log_path = work_dir / "notarization_log.json"
        log_path.write_text(log_result.stdout or "")
        log.debug_log(f"Notarization log saved to: {log_path}")

        try:
            log_data = json.loads(log_result.stdout or "")
        except json.JSONDecodeError:
            console.print("[yellow]Could not parse notarization log as JSON[/yellow]")
            console.print(log_result.stdout, markup=False)
            return

        if log_data.get("issues"):
            console.print("\n[red]Notarization issues found:[/red]")
            for issue in log_data["issues"]:
                severity = str(issue.get("severity", "unknown")).upper()
                path = issue.get("path", "Unknown path")
                message = issue.get("message", "No message")
                console.print(f"  {escape(f'[{severity}]')} {escape(str(path))}: {escape(str(message))}")

        if log_data.get("productErrors"):
            console.print("\n[red]Product errors:[/red]")
            for error in log_data["productErrors"]:
                code = error.get("code", "unknown")
                description = error.get("userInfo", {}).get(
                    "NSLocalizedDescription", "No description"
                )
                console.print(f"  {escape(f'[{code}]')} {escape(str(description))}")
