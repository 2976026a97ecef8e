"""Xcode selection through xcodes"""

from typing import List, Optional, Tuple

from . import console as log
from .errors import FatalConfigurationError, ReleaseError
from .parsing import XcodeRelease, parse_xcode_version, parse_xcodes_list, version_tuple
from .process import XCODEBUILD, Runner, run_command


def _matches(parts: Tuple[int, ...], wanted: Tuple[int, ...]) -> bool:
    return parts[: len(wanted)] == wanted


def _same_version(left: Tuple[int, ...], right: Tuple[int, ...]) -> bool:
    """Compare ignoring trailing zero components (16.0 == 16.0.0)"""
    width = max(len(left), len(right))
    return left + (0,) * (width - len(left)) == right + (0,) * (width - len(right))


def resolve_requested_version(requested: str, available: List[XcodeRelease]) -> Tuple[int, ...]:
    """Turn "latest", "16.x" or "16.1" into a concrete version"""
    requested = requested.strip()
    if requested == "latest":
        if not available:
            raise FatalConfigurationError("No Xcode releases available")
        return max(release.parts for release in available)

    components = [part for part in requested.split(".") if part not in ("x", "X", "*")]
    if not components:
        raise FatalConfigurationError(f"Failed to parse requested Xcode version: {requested}")
    try:
        wanted = version_tuple(".".join(components))
    except ReleaseError as e:
        raise FatalConfigurationError(f"Failed to parse requested Xcode version: {requested}") from e

    if len(components) < len(requested.split(".")):
        candidates = [release.parts for release in available if _matches(release.parts, wanted)]
        if not candidates:
            raise FatalConfigurationError(f"No Xcode release matches {requested}")
        return max(candidates)
    return wanted


def format_version(parts: Tuple[int, ...]) -> str:
    """xcodes names releases without a trailing .0 patch"""
    if len(parts) > 2 and parts[2] == 0:
        parts = parts[:2]
    return ".".join(str(part) for part in parts)


def select_xcode(requested: str, runner: Runner = run_command) -> str:
    """Install the requested Xcode if needed and make it active"""
    with log.group("Selecting Xcode"):
        log.info(f"Setting Xcode version to {requested}...")
        installed = parse_xcodes_list(runner(["xcodes", "installed"]).stdout or "")
        available = parse_xcodes_list(runner(["xcodes", "list"]).stdout or "")

        wanted = resolve_requested_version(requested, available)
        version = format_version(wanted)
        log.info(f"Requested Xcode version: {version}")

        if not any(_same_version(release.parts, wanted) for release in installed):
            log.info(f"Xcode {version} is not installed!")
            if not any(_same_version(release.parts, wanted) for release in available):
                raise FatalConfigurationError(f"Xcode version {version} is not available!")
            runner(["xcodes", "install", version], show_output=True)

        runner(["xcodes", "select", version])
        log.success(f"Selected Xcode {version}")
        return version


def xcode_version(runner: Runner = run_command) -> Tuple[int, ...]:
    """Version of the active Xcode"""
    return parse_xcode_version(runner([XCODEBUILD, "-version"]).stdout or "")


def prepare_toolchain(requested: Optional[str], runner: Runner = run_command) -> Tuple[int, ...]:
    if requested:
        select_xcode(requested, runner)
    version = xcode_version(runner)
    log.info(f"Xcode {'.'.join(str(part) for part in version)}")
    return version
