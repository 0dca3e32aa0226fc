"""Release manifest generator for LightTrack builds.

Inventories the built artifacts of a release, hashes them, and records a new
release entry at the top of a channel in the JSON update manifest consumed by the
desktop auto-updater::

    lighttrack-manifest --channel beta --version 1.4.0 --dist dist/

Each channel keeps its newest ten releases and a ``current`` pointer.
"""

from __future__ import annotations

import argparse
import hashlib
import json
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from lighttrack_browser.models import utc_timestamp

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

CHANNELS = ("stable", "beta", "alpha")
DEFAULT_BASE_URL = "https://releases.lighttrack.app"
DEFAULT_MINIMUM_VERSION = "1.0.0"
DEFAULT_SUMMARY = "Bug fixes and improvements"
MAX_RELEASES = 10

RELEASE_EXTENSIONS = (
    ".exe", ".msi",  # Windows
    ".dmg", ".zip",  # macOS
    ".AppImage", ".deb", ".rpm", ".tar.gz",  # Linux
)

_HASH_CHUNK_SIZE = 64 * 1024


class ManifestError(Exception):
    """The manifest could not be updated."""


def is_release_file(filename: str) -> bool:
    return filename.endswith(RELEASE_EXTENSIONS)


def detect_platform(filename: str) -> str:
    if "win" in filename or filename.endswith((".exe", ".msi")):
        return "windows"
    if "mac" in filename or filename.endswith(".dmg"):
        return "darwin"
    if "linux" in filename or filename.endswith((".AppImage", ".deb", ".rpm")):
        return "linux"
    return "unknown"


def detect_architecture(filename: str) -> str:
    if "x64" in filename or "amd64" in filename:
        return "x64"
    if "arm64" in filename or "aarch64" in filename:
        return "arm64"
    if "x86" in filename or "i386" in filename:
        return "ia32"
    return "x64"


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def empty_changelog() -> Dict[str, Any]:
    return {"summary": DEFAULT_SUMMARY, "features": [], "fixes": [], "breaking": []}


def _list_items(text: str) -> List[str]:
    items = []
    for line in text.split("\n"):
        line = line.strip()
        if line.startswith("- ") and line[2:]:
            items.append(line[2:])
    return items


def _section_items(text: str, heading: str) -> List[str]:
    match = re.search(rf"### {heading}\n(.*?)(?=### |\Z)", text, re.DOTALL)
    return _list_items(match.group(1)) if match else []


def parse_changelog(changelog: str, version: str) -> Dict[str, Any]:
    """Extract the notes of ``version`` from a Keep a Changelog style document.

    The version section runs from ``## [<version>]`` to the next ``## [``
    heading. Within it, ``### Summary`` gives the summary paragraph and the
    ``- `` items under ``### Added``, ``### Fixed`` and ``### Breaking`` give
    features, fixes and breaking changes. A missing section yields the default
    notes.
    """
    match = re.search(rf"## \[{re.escape(version)}\].*?(?=## \[|\Z)", changelog, re.DOTALL)
    if not match:
        return empty_changelog()
    text = match.group(0)
    summary = re.search(r"### Summary\n\n(.+?)\n", text, re.DOTALL)
    return {
        "summary": summary.group(1).strip() if summary else DEFAULT_SUMMARY,
        "features": _section_items(text, "Added"),
        "fixes": _section_items(text, "Fixed"),
        "breaking": _section_items(text, "Breaking"),
    }


def new_manifest() -> Dict[str, Any]:
    return {
        "name": "LightTrack",
        "description": "Lightweight time tracking application",
        "homepage": "https://lighttrack.app",
        "channels": {name: {"current": None, "releases": []} for name in CHANNELS},
        "updatedAt": utc_timestamp(),
    }


class ManifestUpdater:
    """Append a release for one channel and version to the update manifest.

    Attributes:
        channel (str): Release channel (stable, beta or alpha).
        version (str): Version being released.
        manifest_path (Path): Manifest JSON file, created if missing.
        dist_path (Path): Directory holding the built artifacts.
        base_url (str): Download root; files live under ``<base>/<channel>/<version>/``.
        changelog_path (Path): Changelog consulted for the release notes.
        critical (bool): Whether clients must install this update.
        minimum_version (str): Oldest version allowed to update directly.
    """

    def __init__(
        self,
        version: str,
        channel: str = "stable",
        manifest_path: str = "update-manifest.json",
        dist_path: str = "dist",
        base_url: str = DEFAULT_BASE_URL,
        changelog_path: str = "CHANGELOG.md",
        critical: bool = False,
        minimum_version: str = DEFAULT_MINIMUM_VERSION,
    ) -> None:
        if not version:
            raise ManifestError("Version is required")
        if channel not in CHANNELS:
            raise ManifestError(f"Unknown channel: {channel} (expected one of {', '.join(CHANNELS)})")
        self.version = version
        self.channel = channel
        self.manifest_path = Path(manifest_path)
        self.dist_path = Path(dist_path)
        self.base_url = base_url.rstrip("/")
        self.changelog_path = Path(changelog_path)
        self.critical = critical
        self.minimum_version = minimum_version

    def load_manifest(self) -> Dict[str, Any]:
        if not self.manifest_path.exists():
            logger.info(f"Creating new manifest at {self.manifest_path}")
            return new_manifest()
        try:
            with self.manifest_path.open("r", encoding="utf-8") as f:
                manifest = json.load(f)
        except (OSError, ValueError) as e:
            raise ManifestError(f"Cannot read manifest {self.manifest_path}: {e}") from e
        if not isinstance(manifest, dict):
            raise ManifestError(f"Manifest {self.manifest_path} is not a JSON object")
        return manifest

    def release_files(self) -> List[Dict[str, Any]]:
        if not self.dist_path.is_dir():
            raise ManifestError(f"Distribution directory not found: {self.dist_path}")
        files = []
        for path in sorted(self.dist_path.iterdir()):
            if not path.is_file() or not is_release_file(path.name):
                continue
            files.append({
                "name": path.name,
                "url": f"{self.base_url}/{self.channel}/{self.version}/{path.name}",
                "size": path.stat().st_size,
                "sha256": sha256_file(path),
                "platform": detect_platform(path.name),
                "architecture": detect_architecture(path.name),
            })
            logger.debug(f"Added release file {path.name}")
        if not files:
            logger.warning(f"No release files found in {self.dist_path}")
        return files

    def changelog(self) -> Dict[str, Any]:
        if not self.changelog_path.is_file():
            return empty_changelog()
        return parse_changelog(self.changelog_path.read_text(encoding="utf-8"), self.version)

    def rollout(self, now: str) -> Dict[str, Any]:
        # Stable releases start as a gradual rollout.
        return {
            "percentage": 10 if self.channel == "stable" else 100,
            "startDate": now,
            "regions": ["*"],
        }

    def create_release(self, files: List[Dict[str, Any]], now: Optional[str] = None) -> Dict[str, Any]:
        now = now or utc_timestamp()
        return {
            "version": self.version,
            "releaseDate": now,
            "channel": self.channel,
            "changelog": self.changelog(),
            "files": files,
            "minimumVersion": self.minimum_version,
            "critical": self.critical,
            "rollout": self.rollout(now),
        }

    def apply(self, manifest: Dict[str, Any], release: Dict[str, Any]) -> Dict[str, Any]:
        channels = manifest.setdefault("channels", {})
        channel = channels.setdefault(self.channel, {"current": None, "releases": []})
        releases = [release] + list(channel.get("releases") or [])
        channel["releases"] = releases[:MAX_RELEASES]
        channel["current"] = release["version"]
        manifest["updatedAt"] = utc_timestamp()
        return manifest

    def save_manifest(self, manifest: Dict[str, Any]) -> None:
        if self.manifest_path.parent != Path(""):
            self.manifest_path.parent.mkdir(parents=True, exist_ok=True)
        with self.manifest_path.open("w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2)

    def update(self) -> Dict[str, Any]:
        """Load, extend and save the manifest. Returns the new release entry."""
        logger.info(f"Updating release manifest (channel: {self.channel}, version: {self.version})")
        manifest = self.load_manifest()
        release = self.create_release(self.release_files())
        self.apply(manifest, release)
        self.save_manifest(manifest)
        logger.info(f"Manifest updated: {len(release['files'])} file(s) for {self.channel} {self.version}")
        return release


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Update the LightTrack release manifest.")
    parser.add_argument("-c", "--channel", choices=CHANNELS, default="stable", help="Release channel.")
    parser.add_argument("-v", "--version", type=str, default=None, help="Version number (required).")
    parser.add_argument("-m", "--manifest", type=str, default="update-manifest.json", help="Manifest file path.")
    parser.add_argument("-d", "--dist", type=str, default="dist", help="Distribution directory.")
    parser.add_argument("-u", "--base-url", type=str, default=DEFAULT_BASE_URL, help="Base URL for downloads.")
    parser.add_argument("--changelog", type=str, default="CHANGELOG.md", help="Changelog file path.")
    parser.add_argument(
        "--critical", action="store_true",
        help="Mark the release as critical (also enabled by CRITICAL_UPDATE=true).",
    )
    parser.add_argument(
        "--minimum-version", type=str, default=DEFAULT_MINIMUM_VERSION,
        help="Oldest version that may update directly.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    if not args.version:
        logger.error("Version is required")
        sys.exit(1)

    try:
        updater = ManifestUpdater(
            version=args.version,
            channel=args.channel,
            manifest_path=args.manifest,
            dist_path=args.dist,
            base_url=args.base_url,
            changelog_path=args.changelog,
            critical=args.critical or os.environ.get("CRITICAL_UPDATE") == "true",
            minimum_version=args.minimum_version,
        )
        updater.update()
    except (ManifestError, OSError) as e:
        logger.error(f"Failed to update manifest: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
