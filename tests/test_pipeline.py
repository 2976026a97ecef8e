"""Tests for the archive/export/sign/upload pipeline."""

import plistlib

import pytest

from conftest import FakeXcodebuild, make_project
from xcode_release.config import Inputs
from xcode_release.errors import FatalConfigurationError, ReleaseError, ToolInvocationError
from xcode_release.models import ArchiveKind, ArtifactKind, Platform
from xcode_release.pipeline import (
    APP_STORE_ENTITLEMENTS,
    DIRECT_DISTRIBUTION_ENTITLEMENTS,
    BuildPipeline,
    export_method,
    find_artifact,
)
from xcode_release.plists import dump_plist, load_plist
from xcode_release.process import SECURITY

DEVELOPER_ID_LISTING = (
    '  1) AAAA0000AAAA0000AAAA0000AAAA0000AAAA0000 "Developer ID Application: Example Corp (ABCDE12345)"\n'
    "     1 valid identities found\n"
)


def _entitlements_xml(values):
    return plistlib.dumps(values).decode("utf-8")


# ---------------------------------------------------------------------------
# export_method
# ---------------------------------------------------------------------------

class TestExportMethod:
    @pytest.mark.parametrize(
        "option, platform, expected",
        [
            ("app-store", Platform.IOS, "app-store"),
            ("development", Platform.IOS, "development"),
            ("steam", Platform.MACOS, "developer-id"),
            ("ad-hoc", Platform.MACOS, "development"),
            ("developer-id", Platform.MACOS, "developer-id"),
        ],
    )
    def test_before_rename(self, option, platform, expected):
        assert export_method(option, platform, (15, 3)) == expected

    @pytest.mark.parametrize(
        "option, expected",
        [("app-store", "app-store-connect"), ("ad-hoc", "release-testing"), ("development", "debugging")],
    )
    def test_renamed_on_newer_xcode(self, option, expected):
        assert export_method(option, Platform.IOS, (15, 4)) == expected
        assert export_method(option, Platform.IOS, (16, 1)) == expected

    def test_direct_distribution_is_macos_only(self):
        with pytest.raises(FatalConfigurationError):
            export_method("steam", Platform.IOS)

    def test_unknown_option(self):
        with pytest.raises(FatalConfigurationError):
            export_method("sideload", Platform.IOS)


class TestFindArtifact:
    def test_missing_artifact(self, tmp_path):
        with pytest.raises(ReleaseError):
            find_artifact(tmp_path, Platform.IOS, app_store=True)

    def test_macos_kinds(self, tmp_path):
        (tmp_path / "MyApp.pkg").write_bytes(b"pkg")
        (tmp_path / "MyApp.app").mkdir()
        assert find_artifact(tmp_path, Platform.MACOS, app_store=True).kind == ArtifactKind.INSTALLER_PACKAGE
        assert find_artifact(tmp_path, Platform.MACOS, app_store=False).kind == ArtifactKind.APP_BUNDLE


# ---------------------------------------------------------------------------
# prepare / archive
# ---------------------------------------------------------------------------

class TestPrepare:
    def test_writes_export_options(self, tmp_path, runner):
        project = make_project(tmp_path, xcode_version=(15, 2))
        BuildPipeline(project, Inputs(export_option="app-store"), runner=runner).prepare()

        options = load_plist(project.project_path / "exportOptions.plist")
        assert options["method"] == "app-store"
        assert options["teamID"] == "ABCDE12345"
        assert options["signingStyle"] == "manual"
        assert project.export_method == "app-store"
        assert project.entitlements_path is None

    def test_explicit_export_options_are_used_verbatim(self, tmp_path, runner):
        project = make_project(tmp_path)
        custom = dump_plist({"method": "enterprise"}, tmp_path / "custom.plist")

        BuildPipeline(project, Inputs(export_option_plist=str(custom)), runner=runner).prepare()

        assert project.export_options_path == custom
        assert project.export_method == "enterprise"

    def test_missing_export_options_file(self, tmp_path, runner):
        project = make_project(tmp_path)
        with pytest.raises(FatalConfigurationError):
            BuildPipeline(project, Inputs(export_option_plist=str(tmp_path / "nope.plist")), runner=runner).prepare()

    def test_macos_default_entitlements(self, tmp_path, runner):
        project = make_project(tmp_path, platform=Platform.MACOS)
        BuildPipeline(project, Inputs(export_option="steam", archive_type="dmg"), runner=runner).prepare()

        assert load_plist(project.entitlements_path) == DIRECT_DISTRIBUTION_ENTITLEMENTS
        assert project.archive_kind == ArchiveKind.DMG
        assert project.notarize

    def test_app_store_entitlements(self, tmp_path, runner):
        project = make_project(tmp_path, platform=Platform.MACOS)
        BuildPipeline(project, Inputs(export_option="app-store"), runner=runner).prepare()

        assert load_plist(project.entitlements_path) == APP_STORE_ENTITLEMENTS
        assert not project.notarize


class TestArchive:
    def test_arguments(self, tmp_path, runner):
        project = make_project(tmp_path)
        xcodebuild = FakeXcodebuild()
        pipeline = BuildPipeline(project, Inputs(), runner=runner, xcodebuild=xcodebuild)
        pipeline.prepare()

        archive_path = pipeline.archive()

        args = xcodebuild.calls[0]
        assert args[0] == "archive"
        assert args[args.index("-scheme") + 1] == "MyApp"
        assert args[args.index("-archivePath") + 1] == str(archive_path)
        assert "DEVELOPMENT_TEAM=ABCDE12345" in args
        assert "CODE_SIGN_IDENTITY=Apple Distribution: Example Corp (ABCDE12345)" in args
        assert "-authenticationKeyID" in args
        assert "-quiet" in args
        assert not any(arg.startswith("CURRENT_PROJECT_VERSION=") for arg in args)
        assert project.archive_path == archive_path

    def test_reconciled_build_number_is_passed(self, tmp_path, runner):
        project = make_project(tmp_path)
        project.assign_build_number("12")
        xcodebuild = FakeXcodebuild()
        pipeline = BuildPipeline(project, Inputs(), runner=runner, xcodebuild=xcodebuild)
        pipeline.prepare()

        pipeline.archive()

        assert "CURRENT_PROJECT_VERSION=12" in xcodebuild.calls[0]

    def test_normalized_marketing_version_is_passed(self, tmp_path, runner):
        project = make_project(tmp_path, version_string="1.4.0", override_marketing_version=True)
        xcodebuild = FakeXcodebuild()
        pipeline = BuildPipeline(project, Inputs(), runner=runner, xcodebuild=xcodebuild)
        pipeline.prepare()

        pipeline.archive()

        assert "MARKETING_VERSION=1.4.0" in xcodebuild.calls[0]

    def test_unsigned_build(self, tmp_path, runner):
        project = make_project(tmp_path, credential=None)
        xcodebuild = FakeXcodebuild()
        pipeline = BuildPipeline(project, Inputs(), runner=runner, xcodebuild=xcodebuild)
        pipeline.prepare()

        pipeline.archive()

        args = xcodebuild.calls[0]
        assert "CODE_SIGN_IDENTITY=-" in args
        assert "CODE_SIGN_STYLE=Automatic" in args
        assert "-authenticationKeyID" not in args

    def test_export_requires_archive(self, tmp_path, runner):
        with pytest.raises(ReleaseError):
            BuildPipeline(make_project(tmp_path), Inputs(), runner=runner).export()


# ---------------------------------------------------------------------------
# Entitlements verification
# ---------------------------------------------------------------------------

class TestVerifyEntitlements:
    def _expected(self, tmp_path):
        return dump_plist(DIRECT_DISTRIBUTION_ENTITLEMENTS, tmp_path / "Entitlements.plist")

    def test_identical_entitlements(self, tmp_path, runner):
        runner.on("codesign", "-d", stdout=_entitlements_xml(DIRECT_DISTRIBUTION_ENTITLEMENTS))
        pipeline = BuildPipeline(make_project(tmp_path), Inputs(), runner=runner)

        pipeline.verify_entitlements(tmp_path / "MyApp.app", self._expected(tmp_path))

    def test_single_flipped_key(self, tmp_path, runner):
        signed = dict(DIRECT_DISTRIBUTION_ENTITLEMENTS)
        signed["com.apple.security.cs.disable-library-validation"] = False
        runner.on("codesign", "-d", stdout=_entitlements_xml(signed))
        pipeline = BuildPipeline(make_project(tmp_path), Inputs(), runner=runner)

        with pytest.raises(ReleaseError, match="disable-library-validation"):
            pipeline.verify_entitlements(tmp_path / "MyApp.app", self._expected(tmp_path))

    def test_no_signed_entitlements(self, tmp_path, runner):
        pipeline = BuildPipeline(make_project(tmp_path), Inputs(), runner=runner)
        with pytest.raises(ReleaseError):
            pipeline.verify_entitlements(tmp_path / "MyApp.app", self._expected(tmp_path))


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------

class TestRun:
    def test_app_store_build_is_validated_and_uploaded(self, tmp_path, runner, client):
        client.get_app_id.return_value = "1234567890"
        project = make_project(tmp_path)
        xcodebuild = FakeXcodebuild()
        pipeline = BuildPipeline(project, Inputs(export_option="app-store"), client=client, runner=runner, xcodebuild=xcodebuild)

        artifact = pipeline.run()

        assert xcodebuild.verbs() == ["archive", "-exportArchive"]
        assert artifact.path == tmp_path / "MyApp" / "MyApp.ipa"
        assert runner.called("xcrun", "altool", "--validate-app")
        upload = runner.called("xcrun", "altool", "--upload-package")[0]
        assert upload[upload.index("--apple-id") + 1] == "1234567890"
        assert upload[upload.index("--bundle-version") + 1] == "3"
        assert pipeline.skipped == []
        assert project.executable_path == artifact.path

    def test_upload_can_be_disabled(self, tmp_path, runner, client):
        pipeline = BuildPipeline(
            make_project(tmp_path),
            Inputs(export_option="app-store", upload=False),
            client=client,
            runner=runner,
            xcodebuild=FakeXcodebuild(),
        )
        pipeline.run()

        assert not runner.called("xcrun", "altool")
        assert pipeline.skipped == ["App Store Connect upload"]

    def test_development_build_is_not_uploaded(self, tmp_path, runner):
        pipeline = BuildPipeline(make_project(tmp_path), Inputs(), runner=runner, xcodebuild=FakeXcodebuild())
        pipeline.run()

        assert not runner.called("xcrun", "altool")
        assert "App Store Connect upload" in pipeline.skipped

    def test_archive_failure_stops_the_run(self, tmp_path, runner):
        xcodebuild = FakeXcodebuild(fail_on="archive")
        pipeline = BuildPipeline(make_project(tmp_path), Inputs(), runner=runner, xcodebuild=xcodebuild)

        with pytest.raises(ToolInvocationError):
            pipeline.run()
        assert xcodebuild.verbs() == ["archive"]

    def test_macos_direct_distribution_is_signed(self, tmp_path, runner):
        runner.on(SECURITY, "find-identity", stdout=DEVELOPER_ID_LISTING)
        runner.on("codesign", "-d", stdout=_entitlements_xml(DIRECT_DISTRIBUTION_ENTITLEMENTS))
        project = make_project(tmp_path, platform=Platform.MACOS)
        pipeline = BuildPipeline(
            project,
            Inputs(export_option="steam", notarize=False),
            runner=runner,
            xcodebuild=FakeXcodebuild(exported=("MyApp.app",)),
        )

        artifact = pipeline.run()

        app = tmp_path / "MyApp" / "MyApp.app"
        signed = [call[-1] for call in runner.called("codesign", "--force")]
        assert signed[-1] == str(app)
        assert signed.index(str(app / "Contents" / "Frameworks" / "libfoo.dylib")) < len(signed) - 1
        assert "--keychain" in runner.called("codesign", "--force")[0]
        assert runner.called("codesign", "--verify", "--deep", "--strict", str(app))
        assert runner.called("ditto")
        assert artifact.kind == ArtifactKind.APP_BUNDLE
        assert pipeline.skipped == ["Notarization", "App Store Connect upload"]

    def test_missing_developer_id_certificate(self, tmp_path, runner):
        runner.on(SECURITY, "find-identity", stdout="     0 valid identities found\n")
        pipeline = BuildPipeline(
            make_project(tmp_path, platform=Platform.MACOS),
            Inputs(export_option="developer-id", notarize=False),
            runner=runner,
            xcodebuild=FakeXcodebuild(exported=("MyApp.app",)),
        )

        with pytest.raises(FatalConfigurationError):
            pipeline.run()
