"""External command execution"""

import shutil
import subprocess
import sys
from pathlib import Path
from typing import IO, Any, Callable, List, Optional, Sequence

from rich.markup import escape  # type: ignore[import]

from . import console as log
from .console import Icons, console, redact
from .errors import ToolInvocationError
from .parsing import find_diagnostic_bundles

XCODEBUILD = "/usr/bin/xcodebuild"
SECURITY = "/usr/bin/security"

# Signature shared by run_command and the fakes used in tests
Runner = Callable[..., "subprocess.CompletedProcess[str]"]


def echo_command(cmd: Sequence[str]) -> None:
    """Echo a command before it runs, with secrets masked"""
    if log.QUIET:
        return
    console.print(
        f"{Icons.PROGRESS} [dim]Running: {escape(redact(' '.join(str(c) for c in cmd)))}[/dim]"
    )


def run_command(
    cmd: List[str],
    check: bool = True,
    capture_output: bool = True,
    show_output: Optional[bool] = None,
    echo: bool = True,
    **kwargs: Any,
) -> subprocess.CompletedProcess[str]:
    """Run a command with error handling"""
    # Determine if we should show output based on verbosity settings
    if show_output is None:
        show_output = log.VERBOSE or log.DEBUG

    if echo:
        echo_command(cmd)

    try:
        result = subprocess.run(
            cmd, check=check, capture_output=capture_output, text=True, **kwargs
        )
    except FileNotFoundError as e:
        raise ToolInvocationError(
            f"Command not found: {cmd[0]}", cmd=cmd, returncode=127
        ) from e
    except subprocess.CalledProcessError as e:
        if capture_output:
            if not log.QUIET:
                console.print(
                    f"{Icons.ERROR} Command failed: {escape(redact(' '.join(cmd)))}"
                )
            if e.stdout and (log.VERBOSE or log.DEBUG):
                console.print(f"[yellow]stdout:[/yellow] {escape(redact(e.stdout))}")
            if e.stderr:
                console.print(f"[red]stderr:[/red] {escape(redact(e.stderr))}")
        raise ToolInvocationError(
            redact(f"Command failed with exit code {e.returncode}: {' '.join(cmd)}"),
            cmd=cmd,
            returncode=e.returncode,
            stdout=e.stdout or "",
            stderr=e.stderr or "",
        ) from e

    if show_output and capture_output and result.stdout:
        log.debug_log(result.stdout)
    return result


def run_xcodebuild(args: List[str], cwd: Optional[Path] = None) -> str:
    """Run xcodebuild piped through xcbeautify and return its raw output"""
    xcodebuild_cmd = [XCODEBUILD, *args]
    echo_command(xcodebuild_cmd)

    xcbeautify = shutil.which("xcbeautify")
    try:
        xcodebuild_proc = subprocess.Popen(
            xcodebuild_cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            cwd=cwd,
        )
    except FileNotFoundError as e:
        raise ToolInvocationError(
            "xcodebuild not found", cmd=xcodebuild_cmd, returncode=127
        ) from e

    xcbeautify_proc = None
    if xcbeautify:
        xcbeautify_proc = subprocess.Popen(
            [xcbeautify, "--quiet", "--is-ci", "--disable-logging"],
            stdin=subprocess.PIPE,
            text=True,
        )

    # Keep a copy of everything; diagnostics paths are only printed here
    captured: List[str] = []
    forward = xcbeautify_proc.stdin if xcbeautify_proc else None
    finished = False
    assert xcodebuild_proc.stdout is not None
    try:
        for line in xcodebuild_proc.stdout:
            captured.append(line)
            if forward:
                try:
                    forward.write(line)
                    continue
                except BrokenPipeError:
                    log.warning("xcbeautify exited early; showing raw xcodebuild output")
                    forward = None
            sys.stdout.write(redact(line))
        xcodebuild_proc.wait()
        finished = True
    finally:
        xcodebuild_proc.stdout.close()
        if not finished:
            _terminate(xcodebuild_proc)
        if xcbeautify_proc:
            if xcbeautify_proc.stdin:
                _close_pipe(xcbeautify_proc.stdin)
            if not finished:
                _terminate(xcbeautify_proc)
            xcbeautify_proc.wait()

    output = "".join(captured)
    if xcodebuild_proc.returncode != 0:
        surface_diagnostics(output)
        raise ToolInvocationError(
            f"xcodebuild exited with code {xcodebuild_proc.returncode}",
            cmd=xcodebuild_cmd,
            returncode=xcodebuild_proc.returncode,
            stdout=output,
        )
    if xcbeautify_proc and forward and xcbeautify_proc.returncode != 0:
        raise ToolInvocationError(
            f"xcbeautify exited with code {xcbeautify_proc.returncode}",
            cmd=[xcbeautify or "xcbeautify"],
            returncode=xcbeautify_proc.returncode,
        )
    return output


def surface_diagnostics(output: str) -> List[Path]:
    """Print the contents of any diagnostic bundles mentioned in tool output"""
    bundles = [path for path in find_diagnostic_bundles(output) if path.exists()]
    for bundle in bundles:
        with log.group(f"Diagnostics: {bundle.name}"):
            files = sorted(p for p in bundle.rglob("*") if p.is_file())
            for file in files:
                if file.suffix not in (".log", ".txt", ".plist", ".json"):
                    continue
                try:
                    content = file.read_text(encoding="utf-8", errors="replace")
                except OSError as e:
                    log.warning(f"Could not read {file}: {e}")
                    continue
                console.print(f"[bold]----- {escape(str(file.relative_to(bundle)))} -----[/bold]")
                console.print(redact(content), markup=False, highlight=False)
    return bundles


def _terminate(proc: "subprocess.Popen[str]") -> None:
    if proc.poll() is None:
        proc.terminate()
    proc.wait()


def _close_pipe(stream: IO[str]) -> None:
    try:
        stream.close()
    except BrokenPipeError:
        # reader already exited
        pass
