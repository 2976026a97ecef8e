"""Tests for running xcodebuild and surfacing its diagnostics."""

import sys

import pytest

from xcode_release import console as log
from xcode_release import process
from xcode_release.errors import ToolInvocationError
from xcode_release.process import run_xcodebuild, surface_diagnostics

needs_posix_shell = pytest.mark.skipif(sys.platform == "win32", reason="stub tools are shell scripts")


def _diagnostics_bundle(tmp_path):
    bundle = tmp_path / "MyApp_2024-05-01.xcdistributionlogs"
    bundle.mkdir()
    (bundle / "IDEDistribution.standard.log").write_text("exportArchive: token=s3cret rejected\n")
    (bundle / "IDEDistribution.critical.log").write_text("No signing certificate found\n")
    (bundle / "archive.bin").write_bytes(b"\x00\x01")
    return bundle


def _stub_tool(path, body):
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return path


# ---------------------------------------------------------------------------
# surface_diagnostics
# ---------------------------------------------------------------------------

class TestSurfaceDiagnostics:
    def test_prints_bundle_contents_redacted(self, tmp_path, capsys):
        bundle = _diagnostics_bundle(tmp_path)
        log.register_secret("s3cret")

        found = surface_diagnostics(f'error: exportArchive failed\nCreated bundle at path "{bundle}".\n')

        out = capsys.readouterr().out
        assert found == [bundle]
        assert "token=*** rejected" in out
        assert "s3cret" not in out
        assert "No signing certificate found" in out
        assert "archive.bin" not in out

    def test_missing_bundle_is_skipped(self, tmp_path, capsys):
        missing = tmp_path / "Gone.xcdistributionlogs"
        assert surface_diagnostics(f"Created bundle at path '{missing}'") == []
        assert capsys.readouterr().out == ""


# ---------------------------------------------------------------------------
# run_xcodebuild
# ---------------------------------------------------------------------------

@needs_posix_shell
class TestRunXcodebuild:
    def test_failure_surfaces_diagnostics(self, tmp_path, monkeypatch, capsys):
        bundle = _diagnostics_bundle(tmp_path)
        stub = _stub_tool(
            tmp_path / "xcodebuild",
            'echo "** EXPORT FAILED **"\n'
            f'echo "Created bundle at path \\"{bundle}\\"."\n'
            "exit 65\n",
        )
        monkeypatch.setattr(process, "XCODEBUILD", str(stub))
        monkeypatch.setattr(process.shutil, "which", lambda name: None)

        with pytest.raises(ToolInvocationError) as info:
            run_xcodebuild(["-exportArchive"])

        assert info.value.returncode == 65
        assert "** EXPORT FAILED **" in info.value.stdout
        assert "No signing certificate found" in capsys.readouterr().out

    def test_success_returns_output(self, tmp_path, monkeypatch):
        stub = _stub_tool(tmp_path / "xcodebuild", 'echo "** ARCHIVE SUCCEEDED **"\n')
        monkeypatch.setattr(process, "XCODEBUILD", str(stub))
        monkeypatch.setattr(process.shutil, "which", lambda name: None)

        assert run_xcodebuild(["archive"]) == "** ARCHIVE SUCCEEDED **\n"

    def test_formatter_exiting_early_does_not_fail_the_build(self, tmp_path, monkeypatch):
        stub = _stub_tool(
            tmp_path / "xcodebuild",
            "sleep 1\n"
            "i=0\n"
            'while [ $i -lt 5000 ]; do echo "CompileSwift normal arm64 File$i.swift"; i=$((i+1)); done\n',
        )
        formatter = _stub_tool(tmp_path / "xcbeautify", "exit 0\n")
        monkeypatch.setattr(process, "XCODEBUILD", str(stub))
        monkeypatch.setattr(process.shutil, "which", lambda name: str(formatter))

        output = run_xcodebuild(["archive"])

        assert output.count("CompileSwift") == 5000
