"""Tests for the release manifest generator."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Dict

import pytest

from lighttrack_browser.manifest import (
    DEFAULT_SUMMARY,
    ManifestError,
    ManifestUpdater,
    detect_architecture,
    detect_platform,
    is_release_file,
    main,
    new_manifest,
    parse_changelog,
)

CHANGELOG = """# Changelog

## [1.2.0] - 2024-05-01

### Summary

Faster startup and calendar sync.

### Added
- Calendar sync
- Focus sessions

### Fixed
- Tray icon flicker

## [1.1.0] - 2024-04-01

### Added
- Old feature
"""


@pytest.fixture
def dist(temp_dir: Path) -> Path:
    d = temp_dir / "dist"
    d.mkdir()
    (d / "LightTrack-Setup-1.2.0-x64.exe").write_bytes(b"windows build")
    (d / "LightTrack-1.2.0-arm64.dmg").write_bytes(b"mac build")
    (d / "lighttrack_1.2.0_amd64.deb").write_bytes(b"linux build")
    (d / "latest.yml").write_text("not a release", encoding="utf-8")
    (d / "unpacked.zip").mkdir()
    return d


def updater(temp_dir: Path, **kwargs: Any) -> ManifestUpdater:
    options: Dict[str, Any] = {
        "version": "1.2.0",
        "manifest_path": str(temp_dir / "update-manifest.json"),
        "dist_path": str(temp_dir / "dist"),
        "changelog_path": str(temp_dir / "CHANGELOG.md"),
    }
    options.update(kwargs)
    return ManifestUpdater(**options)


@pytest.mark.parametrize("name,expected", [
    ("a.exe", True), ("a.msi", True), ("a.dmg", True), ("a.zip", True),
    ("a.AppImage", True), ("a.deb", True), ("a.rpm", True), ("a.tar.gz", True),
    ("a.yml", False), ("a.blockmap", False), ("a.appimage", False),
])
def test_is_release_file(name: str, expected: bool) -> None:
    assert is_release_file(name) is expected


@pytest.mark.parametrize("name,expected", [
    ("LightTrack-Setup.exe", "windows"),
    ("LightTrack.msi", "windows"),
    ("LightTrack-win.zip", "windows"),
    ("LightTrack.dmg", "darwin"),
    ("LightTrack-mac.zip", "darwin"),
    ("LightTrack.AppImage", "linux"),
    ("lighttrack.rpm", "linux"),
    ("lighttrack-linux.tar.gz", "linux"),
    ("LightTrack.zip", "unknown"),
])
def test_detect_platform(name: str, expected: str) -> None:
    assert detect_platform(name) == expected


@pytest.mark.parametrize("name,expected", [
    ("a-x64.exe", "x64"), ("a_amd64.deb", "x64"), ("a-arm64.dmg", "arm64"),
    ("a_aarch64.rpm", "arm64"), ("a-x86.exe", "ia32"), ("a_i386.deb", "ia32"), ("a.exe", "x64"),
])
def test_detect_architecture(name: str, expected: str) -> None:
    assert detect_architecture(name) == expected


def test_parse_changelog() -> None:
    notes = parse_changelog(CHANGELOG, "1.2.0")
    assert notes == {
        "summary": "Faster startup and calendar sync.",
        "features": ["Calendar sync", "Focus sessions"],
        "fixes": ["Tray icon flicker"],
        "breaking": [],
    }


def test_parse_changelog_without_summary() -> None:
    notes = parse_changelog(CHANGELOG, "1.1.0")
    assert notes["summary"] == DEFAULT_SUMMARY
    assert notes["features"] == ["Old feature"]


def test_parse_changelog_missing_version() -> None:
    assert parse_changelog(CHANGELOG, "9.9.9") == {
        "summary": DEFAULT_SUMMARY, "features": [], "fixes": [], "breaking": [],
    }


def test_new_manifest_skeleton() -> None:
    manifest = new_manifest()
    assert manifest["name"] == "LightTrack"
    assert manifest["homepage"] == "https://lighttrack.app"
    assert set(manifest["channels"]) == {"stable", "beta", "alpha"}
    assert manifest["channels"]["beta"] == {"current": None, "releases": []}


def test_update_creates_manifest(temp_dir: Path, dist: Path) -> None:
    (temp_dir / "CHANGELOG.md").write_text(CHANGELOG, encoding="utf-8")
    release = updater(temp_dir).update()

    manifest = json.loads((temp_dir / "update-manifest.json").read_text(encoding="utf-8"))
    stable = manifest["channels"]["stable"]
    assert stable["current"] == "1.2.0"
    assert stable["releases"][0] == release
    assert release["changelog"]["features"] == ["Calendar sync", "Focus sessions"]
    assert release["minimumVersion"] == "1.0.0"
    assert release["critical"] is False
    assert release["rollout"]["percentage"] == 10
    assert release["rollout"]["regions"] == ["*"]
    assert release["rollout"]["startDate"] == release["releaseDate"]

    files = {f["name"]: f for f in release["files"]}
    assert set(files) == {"LightTrack-Setup-1.2.0-x64.exe", "LightTrack-1.2.0-arm64.dmg", "lighttrack_1.2.0_amd64.deb"}
    exe = files["LightTrack-Setup-1.2.0-x64.exe"]
    assert exe["url"] == "https://releases.lighttrack.app/stable/1.2.0/LightTrack-Setup-1.2.0-x64.exe"
    assert exe["size"] == len(b"windows build")
    assert exe["sha256"] == hashlib.sha256(b"windows build").hexdigest()
    assert exe["platform"] == "windows"
    assert files["LightTrack-1.2.0-arm64.dmg"]["architecture"] == "arm64"
    assert files["lighttrack_1.2.0_amd64.deb"]["platform"] == "linux"


def test_update_written_with_two_space_indent(temp_dir: Path, dist: Path) -> None:
    updater(temp_dir).update()
    text = (temp_dir / "update-manifest.json").read_text(encoding="utf-8")
    assert text.startswith('{\n  "name": "LightTrack"')


def test_non_stable_channel_full_rollout(temp_dir: Path, dist: Path) -> None:
    release = updater(temp_dir, channel="beta", base_url="https://cdn.example/").update()
    assert release["rollout"]["percentage"] == 100
    assert release["files"][0]["url"].startswith("https://cdn.example/beta/1.2.0/")


def test_keeps_ten_newest_releases(temp_dir: Path, dist: Path) -> None:
    for n in range(12):
        updater(temp_dir, version=f"1.0.{n}").update()
    manifest = json.loads((temp_dir / "update-manifest.json").read_text(encoding="utf-8"))
    releases = manifest["channels"]["stable"]["releases"]
    assert len(releases) == 10
    assert [r["version"] for r in releases[:2]] == ["1.0.11", "1.0.10"]
    assert releases[-1]["version"] == "1.0.2"
    assert manifest["channels"]["stable"]["current"] == "1.0.11"
    assert manifest["channels"]["alpha"]["releases"] == []


def test_missing_dist_directory(temp_dir: Path) -> None:
    with pytest.raises(ManifestError, match="Distribution directory not found"):
        updater(temp_dir).update()
    assert not (temp_dir / "update-manifest.json").exists()


def test_corrupt_manifest(temp_dir: Path, dist: Path) -> None:
    (temp_dir / "update-manifest.json").write_text("{", encoding="utf-8")
    with pytest.raises(ManifestError):
        updater(temp_dir).update()


def test_invalid_arguments(temp_dir: Path) -> None:
    with pytest.raises(ManifestError):
        updater(temp_dir, version="")
    with pytest.raises(ManifestError):
        updater(temp_dir, channel="nightly")


def test_main_cli(temp_dir: Path, dist: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CRITICAL_UPDATE", "true")
    main([
        "--version", "2.0.0", "--channel", "alpha",
        "--manifest", str(temp_dir / "out" / "manifest.json"),
        "--dist", str(dist), "--minimum-version", "1.5.0",
    ])
    manifest = json.loads((temp_dir / "out" / "manifest.json").read_text(encoding="utf-8"))
    release = manifest["channels"]["alpha"]["releases"][0]
    assert release["critical"] is True
    assert release["minimumVersion"] == "1.5.0"
    assert release["changelog"]["summary"] == DEFAULT_SUMMARY


def test_main_requires_version(temp_dir: Path) -> None:
    with pytest.raises(SystemExit) as exc:
        main(["--dist", str(temp_dir)])
    assert exc.value.code == 1


def test_main_missing_dist_exits(temp_dir: Path) -> None:
    with pytest.raises(SystemExit) as exc:
        main(["--version", "1.0.0", "--dist", str(temp_dir / "nope")])
    assert exc.value.code == 1
