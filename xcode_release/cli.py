"""Run controller for the main and post phases

`xcode-release` establishes credentials, builds and uploads.
`xcode-release-post` removes the credentials again; CI runs it
unconditionally after the main phase, however that phase ended.
"""

import sys
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from rich.markup import escape  # type: ignore[import]
from rich.panel import Panel  # type: ignore[import]

from . import console as log
from .appstore import DistributionClient
from .ci import StateStore, set_output, workspace_root
from .config import Inputs, build_parser, load_config, resolve_inputs
from .console import Icons, console, set_verbosity
from .credentials import CredentialManager
from .errors import BestEffortCleanupError, ReleaseError, ToolInvocationError
from .models import BuildArtifact, ProjectDescriptor, SigningCredential
from .pipeline import BuildPipeline, XcodebuildRunner
from .process import Runner, run_command, run_xcodebuild
from .project import ProjectResolver
from .release_notes import ReleaseNotesPublisher, whats_new_from_git
from .toolchain import prepare_toolchain
from .versioning import VersionReconciler


@dataclass
class ReleaseResult:
    project: ProjectDescriptor
    artifact: BuildArtifact
    uploaded: bool = False
    skipped: List[str] = field(default_factory=list)


def run_release(
    inputs: Inputs,
    state: StateStore,
    runner: Runner = run_command,
    xcodebuild: XcodebuildRunner = run_xcodebuild,
    client_factory: Callable[[SigningCredential], DistributionClient] = DistributionClient.from_credential,
    credentials: Optional[CredentialManager] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ReleaseResult:
    """Phase one: everything up to and including release notes"""
    credentials = credentials or CredentialManager(state, runner=runner)
    credential = credentials.establish_signing_context(inputs)
    client = client_factory(credential)

    xcode = prepare_toolchain(inputs.xcode_version or None, runner)
    resolver = ProjectResolver(
        runner, workspace=inputs.working_directory or workspace_root(), sleep=sleep
    )
    project = resolver.resolve(inputs, credential, xcode)

    skipped: List[str] = []
    if project.auto_increment_build_number:
        with log.group("Reconciling build number"):
            VersionReconciler(client).reconcile(project)
            resolver.write_build_number(project)
    else:
        skipped.append("Build number auto-increment")

    pipeline = BuildPipeline(project, inputs, credentials, client, runner, xcodebuild)
    artifact = pipeline.run()
    skipped.extend(pipeline.skipped)
    uploaded = pipeline.should_upload

    if uploaded:
        whats_new = inputs.whats_new
        if not whats_new:
            try:
                whats_new = whats_new_from_git(runner, cwd=project.project_directory)
            except ToolInvocationError as e:
                log.warning(f"Could not read release notes from git: {e}")
        whats_new = whats_new or f"{project.version_string} ({project.build_number})"
        publisher = ReleaseNotesPublisher(client, project, inputs.locale, sleep)
        publisher.publish(
            whats_new,
            inputs.test_groups,
            inputs.submit_for_review,
            inputs.poll_attempts,
            inputs.poll_interval,
        )

    set_output("output-directory", str(project.export_path))
    set_output("executable", str(artifact.path))
    return ReleaseResult(project, artifact, uploaded, skipped)


def run_teardown(state: StateStore, runner: Runner = run_command, **kwargs) -> List[BestEffortCleanupError]:
    """Phase two: best-effort removal of everything phase one recorded"""
    return CredentialManager(state, runner=runner, **kwargs).teardown_signing_context()


def show_release_summary(result: ReleaseResult, start_time: float) -> None:
    """Show a release summary dashboard"""
    project = result.project
    artifact_path = result.artifact.path
    if log.QUIET:
        console.print(
            f"\n{Icons.SUCCESS} {escape(project.scheme)} {project.version_string} ({project.build_number}): {escape(str(artifact_path))}"
        )
        return

    duration = time.time() - start_time
    minutes = int(duration // 60)
    seconds = int(duration % 60)

    if artifact_path.is_dir():
        size = sum(p.stat().st_size for p in artifact_path.rglob("*") if p.is_file())
    else:
        size = artifact_path.stat().st_size if artifact_path.exists() else 0

    summary_content = f"""
[bold green]{escape(project.scheme)} {project.version_string} Built Successfully![/bold green]

[bold]Version:[/bold] {project.version_string} (Build {escape(project.build_number)})
[bold]Platform:[/bold] {project.platform.value} ({escape(project.export_method)})
[bold]Artifact:[/bold] {escape(str(artifact_path))}
[bold]Size:[/bold] {size / (1024 * 1024):.1f} MB
[bold]Notarization:[/bold] {result.artifact.notarization.value}
[bold]Uploaded:[/bold] {"yes" if result.uploaded else "no"}
[bold]Duration:[/bold] {minutes}m {seconds}s
"""

    if result.skipped:
        summary_content += "\n[bold yellow]Skipped:[/bold yellow]\n"
        for item in result.skipped:
            summary_content += f"  • {item}\n"

    panel = Panel(
        summary_content.strip(),
        title="[bold]Release Summary[/bold]",
        border_style="green",
        padding=(1, 2),
        expand=False,
    )

    console.print()
    console.print(panel)
    console.print()


def _fail(message: str) -> None:
    if log.QUIET:
        log.error(f"Error: {message}")
        return
    if log.in_github_actions():
        log.workflow_command("error", log.redact(message).replace("\n", "%0A"))
    error_panel = Panel(
        f"[bold red]Release Failed[/bold red]\n\n{escape(log.redact(message))}",
        border_style="red",
        padding=(1, 2),
    )
    console.print()
    console.print(error_panel)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point"""
    start_time = time.time()
    args = build_parser().parse_args(argv)
    if args.post:
        post(argv)
        return

    set_verbosity(args.verbose, args.quiet, args.debug)
    try:
        config = load_config(args.config)
        inputs = resolve_inputs(args, config)
        state = StateStore(inputs.state_file)

        if not log.QUIET:
            console.print(
                Panel.fit(
                    "[bold cyan]Xcode Release[/bold cyan]\n"
                    "Archiving, signing and distributing",
                    border_style="cyan",
                )
            )

        result = run_release(inputs, state)
        show_release_summary(result, start_time)

    except ReleaseError as e:
        _fail(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        if not log.QUIET:
            console.print(f"\n{Icons.WARNING} Release cancelled by user")
        sys.exit(1)
    except Exception as e:
        _fail(f"Unexpected error: {e}")
        if log.DEBUG:
            console.print_exception()
        else:
            console.print("[dim]Run with --debug to see full stack trace[/dim]")
        sys.exit(1)


def post(argv: Optional[Sequence[str]] = None) -> None:
    """Cleanup entry point; never fails the job"""
    args = build_parser().parse_args(argv)
    set_verbosity(args.verbose, args.quiet, args.debug)

    state_file = None
    try:
        inputs = resolve_inputs(args, load_config(args.config), require_credentials=False)
        state_file = inputs.state_file
    except ReleaseError as e:
        log.warning(f"Using the default state file: {e}")

    try:
        failures = run_teardown(StateStore(state_file))
    except Exception as e:  # teardown must not fail the job
        log.warning(f"Cleanup failed: {e}")
        if log.DEBUG:
            console.print_exception()
        return

    if failures:
        log.warning(f"{len(failures)} cleanup step(s) failed")
