"""TestFlight release notes, tester groups and beta review"""

import time
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from . import console as log
from .appstore import DistributionClient, Resource
from .errors import (
    DistributionApiError,
    FatalConfigurationError,
    PollTimeoutError,
    RemoteRejectedError,
)
from .models import ProjectDescriptor
from .process import Runner, run_command

WHATS_NEW_LIMIT = 4000
TERMINAL_FAILURE_STATES = ("FAILED", "INVALID")


def poll_attempts(
    max_attempts: int, interval: float, sleep: Callable[[float], None] = time.sleep
) -> Iterator[int]:
    """Yield attempt numbers 1..max_attempts, sleeping between them"""
    for attempt in range(1, max_attempts + 1):
        if attempt > 1:
            sleep(interval)
        yield attempt


def versions_match(expected: str, actual: str) -> bool:
    """Compare dotted versions numerically ("1.02" == "1.2")"""
    try:
        return [int(part) for part in str(expected).split(".")] == [
            int(part) for part in str(actual).split(".")
        ]
    except ValueError:
        return str(expected) == str(actual)


def whats_new_from_git(runner: Runner = run_command, cwd: Optional[Path] = None) -> str:
    """Release notes from the latest commit: short sha, subject and body"""
    result = runner(["git", "log", "-1", "--format=%h %s%n%n%b"], cwd=cwd, show_output=False)
    return truncate_whats_new((result.stdout or "").strip())


def truncate_whats_new(text: str) -> str:
    if len(text) <= WHATS_NEW_LIMIT:
        return text
    return text[: WHATS_NEW_LIMIT - 3].rstrip() + "..."


class ReleaseNotesPublisher:
    def __init__(
        self,
        client: DistributionClient,
        project: ProjectDescriptor,
        locale: str = "en-US",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.project = project
        self.locale = locale
        self.sleep = sleep

    def _latest_build(self) -> Optional[Resource]:
        project = self.project
        if not project.app_id:
            project.app_id = self.client.get_app_id(project.bundle_id)
        pre_release_version, build = self.client.get_latest_pre_release_version(
            project.app_id, project.platform, project.version_string
        )
        if pre_release_version is None:
            log.info(f"Waiting for pre-release version {project.version_string}...")
            return None
        if build is None:
            builds = self.client.get_builds(pre_release_version["id"])
            build = builds[0] if builds else None
        if build is None:
            log.info(f"Waiting for build {project.build_number}...")
        return build

    def poll_for_processed_build(self, max_attempts: int = 180, interval: float = 30.0) -> Resource:
        """Wait until App Store Connect finishes processing the uploaded build"""
        expected = self.project.build_number
        for attempt in poll_attempts(max_attempts, interval, self.sleep):
            log.info(f"Polling for build... Attempt {attempt}/{max_attempts}")
            build = self._latest_build()
            if build is None:
                continue

            attributes = build.get("attributes", {})
            version = str(attributes.get("version", ""))
            state = attributes.get("processingState")
            if not versions_match(expected, version):
                log.info(f"Waiting for {expected} (latest is {version}, {state})...")
            elif state in TERMINAL_FAILURE_STATES:
                raise RemoteRejectedError(f"Build {version} is {state}!")
            elif state == "VALID":
                log.success(f"Build {version} is VALID")
                return build
            else:
                log.info(f"Build {version} is {state}...")

        raise PollTimeoutError(
            f"Timed out waiting for build {expected} after {max_attempts} attempts"
        )

    def publish_notes(self, build: Resource, whats_new: str) -> Resource:
        """Create the localized what's new text, or update it if it exists"""
        whats_new = truncate_whats_new(whats_new)
        existing = self.client.get_beta_build_localization(build["id"], self.locale)
        if existing is None:
            log.info("Creating beta build localization...")
            return self.client.create_beta_build_localization(build["id"], self.locale, whats_new)
        if existing.get("attributes", {}).get("whatsNew") == whats_new:
            log.info("Release notes are already up to date")
            return existing
        log.info("Updating beta build localization...")
        return self.client.update_beta_build_localization(existing["id"], whats_new)

    def add_to_test_groups(self, build: Resource, group_names: List[str]) -> List[str]:
        project = self.project
        if not project.app_id:
            project.app_id = self.client.get_app_id(project.bundle_id)
        groups = self.client.get_beta_groups(project.app_id, group_names)
        ids_by_name = {group.get("attributes", {}).get("name"): group["id"] for group in groups}
        missing = [name for name in group_names if name not in ids_by_name]
        if missing:
            raise FatalConfigurationError(f"Unknown test groups: {', '.join(missing)}")

        group_ids = [ids_by_name[name] for name in group_names]
        log.info(f"Adding build to test groups: {', '.join(group_names)}")
        self.client.add_build_to_beta_groups(build["id"], group_ids)
        return group_ids

    def submit_for_review(self, build: Resource) -> None:
        log.info("Submitting for beta review...")
        try:
            submission = self.client.create_beta_app_review_submission(build["id"])
        except DistributionApiError as e:
            if e.status == 409:
                log.info("Build has already been submitted for review")
                return
            raise
        state = submission.get("attributes", {}).get("betaReviewState", "UNKNOWN")
        log.info(f"Beta build is {state}")

    def enable_auto_notify(self, build: Resource) -> None:
        detail = self.client.get_build_beta_detail(build["id"])
        if detail.get("attributes", {}).get("autoNotifyEnabled"):
            log.debug_log("Auto-notify is already enabled")
            return
        self.client.update_build_beta_detail(detail["id"], True)
        log.info("Enabled tester auto-notify")

    def publish(
        self,
        whats_new: str,
        test_groups: Optional[List[str]] = None,
        submit_for_review: bool = False,
        max_attempts: int = 180,
        interval: float = 30.0,
    ) -> Resource:
        with log.group("Updating TestFlight details"):
            build = self.poll_for_processed_build(max_attempts, interval)
            try:
                self.publish_notes(build, whats_new)
            except DistributionApiError as e:
                # The binary is already delivered; missing notes do not fail the job
                log.warning(f"Failed to update release notes: {e}")
            if test_groups:
                self.add_to_test_groups(build, test_groups)
            if submit_for_review:
                self.submit_for_review(build)
                self.enable_auto_notify(build)
        log.success("TestFlight details updated")
        return build
