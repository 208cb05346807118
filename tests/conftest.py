"""
Pytest configuration and fixtures for openjdk_setup tests.
"""

from __future__ import annotations

import shutil
import tarfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

import openjdk_setup
from openjdk_setup import InstallTarget, SetupContext, VERSION_INFO_FILE


TEST_URL = "https://downloads.example.invalid/download_file?file_path=jbrsdk-11_0_4-linux-x64-b546.1.tar.gz"


# ============================================================================
# Synthetic JDK trees and archives
# ============================================================================


def write_jdk_tree(
    root: Path,
    java_version: str = "11.0.4",
    release: Optional[str] = None,
    exe_suffix: str = "",
    skip: Tuple[str, ...] = (),
) -> Path:
    (root / "bin").mkdir(parents=True, exist_ok=True)
    (root / "include").mkdir(parents=True, exist_ok=True)
    (root / "release").write_text(
        'IMPLEMENTOR="JetBrains s.r.o"\n'
        f'JAVA_VERSION="{java_version}"\n'
        'OS_NAME="Linux"\n',
        encoding="utf-8",
    )
    files = {
        "java": root / "bin" / f"java{exe_suffix}",
        "javac": root / "bin" / f"javac{exe_suffix}",
        "jni.h": root / "include" / "jni.h",
    }
    for name, path in files.items():
        if name not in skip:
            path.write_text(name, encoding="utf-8")
    if release is not None:
        (root / VERSION_INFO_FILE).write_text(f"{release}\n", encoding="utf-8")
    return root


def build_archive(archive_path: Path, root_dir_name: str, java_version: str = "11.0.4") -> Path:
    src = archive_path.parent / f"{archive_path.name}.src"
    write_jdk_tree(src / root_dir_name, java_version)
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive_path, "w:gz") as tar:
        tar.add(src / root_dir_name, arcname=root_dir_name)
    shutil.rmtree(src)
    return archive_path


@pytest.fixture
def jdk_tree() -> Callable[..., Path]:
    """Factory writing a JDK-like directory tree."""
    return write_jdk_tree


@pytest.fixture
def archive_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory producing tar.gz archives with a single top-level folder."""

    def _build(name: str = "jbrsdk.tar.gz", root_dir_name: str = "jbrsdk", java_version: str = "11.0.4") -> Path:
        return build_archive(tmp_path / "archives" / name, root_dir_name, java_version)

    return _build


# ============================================================================
# Targets and context
# ============================================================================


@pytest.fixture(autouse=True)
def quiet_setup(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(openjdk_setup, "VERBOSE", False)
    monkeypatch.delenv("TF_BUILD", raising=False)
    monkeypatch.delenv("AGENT_NAME", raising=False)


@pytest.fixture
def target(tmp_path: Path) -> InstallTarget:
    return InstallTarget(
        name="jdk-11",
        version=(11, 0, 4),
        release=(546, 1),
        url=TEST_URL,
        cache_dir=tmp_path / "cache" / "jdk-11",
        install_dir=tmp_path / "jdk-11",
        root_dir_name="jbrsdk",
    )


@pytest.fixture
def ctx(tmp_path: Path) -> SetupContext:
    return SetupContext(
        hosted_agent=False,
        interactive=False,
        os_name="linux",
        legacy_install_dir=tmp_path / "openjdk",
    )


# ============================================================================
# Transport fakes
# ============================================================================


class FakeTransport:
    """Stands in for the HTTP size probe and the downloader."""

    def __init__(self) -> None:
        self.archives: Dict[str, Path] = {}
        self.size_calls: List[str] = []
        self.download_calls: List[Tuple[str, Path]] = []
        self.size_ok = True
        self.status: Optional[int] = 200
        self.create_file = True

    def fetch_remote_size(self, url: str, timeout: float = 60) -> Tuple[bool, int, Optional[int]]:
        self.size_calls.append(url)
        if not self.size_ok:
            return False, 0, self.status
        archive = self.archives.get(url)
        return True, archive.stat().st_size if archive else 0, self.status

    def download(self, url: str, dest: Path, progress=None, attempts: int = 3, backoff: float = 1.5) -> bool:
        self.download_calls.append((url, dest))
        if not self.create_file:
            return True
        shutil.copyfile(self.archives[url], dest)
        if progress is not None:
            progress(dest.stat().st_size)
        return True


@pytest.fixture
def transport(monkeypatch: pytest.MonkeyPatch) -> FakeTransport:
    fake = FakeTransport()
    monkeypatch.setattr(openjdk_setup, "fetch_remote_size", fake.fetch_remote_size)
    monkeypatch.setattr(openjdk_setup, "download_with_retries", fake.download)
    return fake


@pytest.fixture
def no_network(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(*args, **kwargs):
        raise AssertionError("network must not be touched")

    monkeypatch.setattr(openjdk_setup, "fetch_remote_size", _fail)
    monkeypatch.setattr(openjdk_setup, "download_with_retries", _fail)
