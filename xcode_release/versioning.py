"""Build number reconciliation against App Store Connect

Auto-increment only moves the build number when the backend already has
a build at or beyond it, so re-running a job against an unchanged backend
produces the same number instead of bumping it again.
"""

from typing import Optional

from rich.table import Table  # type: ignore[import]

from . import console as log
from .appstore import DistributionClient
from .console import console
from .errors import (
    DistributionApiError,
    FatalConfigurationError,
    ReleaseError,
    UnauthorizedError,
)
from .models import BUILD_NUMBER_PATTERN, BuildNumber, ProjectDescriptor, VersionState


def decompose(build_number: Optional[str]) -> BuildNumber:
    """Split "2.1.7" into ("2.1.", 7); None or "" is the absent build number"""
    if build_number is None or not str(build_number).strip():
        return BuildNumber.absent()
    match = BUILD_NUMBER_PATTERN.match(str(build_number).strip())
    if not match:
        raise ReleaseError(
            f"Invalid build number {build_number!r}: expected a trailing integer"
        )
    return BuildNumber(match.group("prefix") or "", int(match.group("suffix")))


def reconcile_next(local: BuildNumber, remote: BuildNumber) -> BuildNumber:
    """Compute the next build number given the latest one on the backend"""
    if remote.is_absent:
        return local

    prefix = local.prefix
    # The remote's dotted lineage is ahead; stay consistent with it
    if local.prefix and local.prefix != remote.prefix and remote.suffix > local.suffix:
        prefix = remote.prefix

    suffix = remote.suffix + 1 if local.suffix <= remote.suffix else local.suffix
    return BuildNumber(prefix, suffix)


class VersionReconciler:
    def __init__(self, client: DistributionClient):
        self.client = client

    def latest_remote_build_number(self, project: ProjectDescriptor) -> Optional[str]:
        """Latest build number uploaded for this app, platform and version

        Lookup failures mean "nothing uploaded yet", except for rejected
        credentials, which always propagate.
        """
        try:
            if not project.app_id:
                project.app_id = self.client.get_app_id(project.bundle_id)
            pre_release_version, build = self.client.get_latest_pre_release_version(
                project.app_id, project.platform, project.version_string
            )
            if pre_release_version is None:
                return None
            if build is None:
                builds = self.client.get_builds(pre_release_version["id"])
                build = builds[0] if builds else None
            if build is None:
                return None
            return build.get("attributes", {}).get("version")
        except UnauthorizedError:
            raise
        except DistributionApiError as e:
            log.debug_log(f"No remote build found: {e}")
            return None

    def reconcile(self, project: ProjectDescriptor) -> VersionState:
        """Resolve the next build number and apply it to the project"""
        local = decompose(project.build_number)
        if local.is_absent:
            raise FatalConfigurationError("Project has no build number to reconcile")
        remote = decompose(self.latest_remote_build_number(project))
        state = VersionState(local=local, remote=remote, next=reconcile_next(local, remote))
        project.assign_build_number(str(state.next))
        show_version_table(project, state)
        return state


def show_version_table(project: ProjectDescriptor, state: VersionState) -> None:
    """Display version information in a nice table"""
    if log.QUIET:
        return

    table = Table(title="Version Information", show_header=True, header_style="bold cyan")
    table.add_column("Type", style="dim")
    table.add_column("Project", justify="center")
    table.add_column("App Store Connect", justify="center")
    table.add_column("→", justify="center", style="dim")
    table.add_column("New", justify="center", style="bold green" if state.changed else "yellow")

    table.add_row("Marketing Version", project.version_string, project.version_string, "→", project.version_string)
    table.add_row(
        "Build Number",
        str(state.local),
        "none" if state.remote.is_absent else str(state.remote),
        "→",
        str(state.next),
    )

    console.print()
    console.print(table)
    console.print()
