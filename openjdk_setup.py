from __future__ import annotations

import http.client
import json
import os
import platform
import re
import shutil
import sys
import tarfile
import time
import urllib.error
import urllib.parse
import urllib.request
import zipfile
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from http import HTTPStatus
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import click
from tqdm import tqdm


"""OpenJDK Setup - Provision pinned JetBrains OpenJDK builds for the build bootstrap."""

SCRIPT_DIR = Path(__file__).resolve().parent
CONFIG_DIR = SCRIPT_DIR / "config"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "openjdk_targets.json"
HOME = Path.home()
SETUP_HOME = Path(os.environ.get("OPENJDK_SETUP_HOME", HOME / ".openjdk-setup"))
LEGACY_INSTALL_DIR_NAME = "openjdk"

PRODUCT_NAME = "JetBrains OpenJDK"
VERSION_INFO_FILE = "openjdk_setup_version.txt"
CORRETTO_VERSION_FILE = "version.txt"
VENDOR_RELEASE_FILE = "release"
URL_QUERY_FILE_PATH_FIELD = "file_path"
QUERY_SEPARATORS = re.compile(r"[;&]")
STAGING_SUFFIX = ".temp"
PARTIAL_DOWNLOAD_SUFFIX = ".download"
DOWNLOAD_CHUNK_SIZE = 64 * 1024
DEFAULT_PATHEXT = ".COM;.EXE;.BAT;.CMD"

# Cursory sanity check of a JDK tree; executable suffixes are resolved per platform.
JDK_FILES: Tuple[Path, ...] = (
    Path("bin") / "java",
    Path("bin") / "javac",
    Path("include") / "jni.h",
)

Version = Tuple[int, ...]
ProgressSink = Callable[[int], None]

VERBOSE = False


class SetupError(Exception):
    """Base class for failures of the provisioning step."""


class ConfigurationError(SetupError):
    pass


class PackageNameError(SetupError):
    """The archive file name cannot be derived from the source URL."""


class TransportError(SetupError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ArchiveError(SetupError):
    pass


class ArchiveLayoutError(ArchiveError):
    """The unpacked archive lacks its expected top-level folder."""


@dataclass(frozen=True)
class InstallTarget:
    name: str
    version: Version
    release: Version
    url: Optional[str]
    cache_dir: Path
    install_dir: Path
    root_dir_name: str
    product_label: str = PRODUCT_NAME

    @property
    def display_version(self) -> str:
        return f"{format_version(self.version)} r{format_version(self.release)}"


@dataclass(frozen=True)
class InstallationProbe:
    is_valid: bool
    installed_version: Optional[str] = None


@dataclass(frozen=True)
class SetupContext:
    hosted_agent: bool = False
    interactive: bool = False
    os_name: str = field(default_factory=lambda: detect_os())
    legacy_install_dir: Optional[Path] = None

    @classmethod
    def from_environment(cls, home: Optional[Path] = None) -> "SetupContext":
        base = home if home is not None else SETUP_HOME
        return cls(
            hosted_agent=is_hosted_agent(),
            interactive=is_interactive_session(),
            os_name=detect_os(),
            legacy_install_dir=base / LEGACY_INSTALL_DIR_NAME,
        )


def log(msg: str) -> None:
    print(msg, flush=True)


def log_debug(msg: str) -> None:
    if VERBOSE:
        log(f"[DEBUG] {msg}")


def set_verbose(enabled: bool) -> None:
    global VERBOSE
    VERBOSE = enabled


def detect_os() -> str:
    sys_os = platform.system().lower()
    if sys_os.startswith("win"):
        return "windows"
    if sys_os.startswith("darwin") or sys_os.startswith("mac"):
        return "macos"
    if sys_os.startswith("linux"):
        return "linux"
    return sys_os


def is_hosted_agent() -> bool:
    if not os.environ.get("TF_BUILD"):
        return False
    agent_name = os.environ.get("AGENT_NAME", "")
    return agent_name.startswith("Azure Pipelines") or agent_name.startswith("Hosted Agent")


def is_interactive_session() -> bool:
    stream = sys.stdout
    return bool(stream is not None and hasattr(stream, "isatty") and stream.isatty())


def parse_version(text: Optional[str]) -> Optional[Version]:
    if not text:
        return None
    value = text.strip()
    if not re.fullmatch(r"\d+(\.\d+){1,3}", value, re.ASCII):
        return None
    return tuple(int(part) for part in value.split("."))


def format_version(version: Version) -> str:
    return ".".join(str(part) for part in version)


def load_install_targets(
    config_path: Path,
    os_name: str,
    home: Optional[Path] = None,
) -> Dict[str, InstallTarget]:
    if not config_path.exists():
        raise FileNotFoundError(f"Missing OpenJDK target configuration: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)

    base = home if home is not None else SETUP_HOME
    targets: Dict[str, InstallTarget] = {}
    for name, entry in data.items():
        version = parse_version(entry.get("version"))
        release = parse_version(entry.get("release"))
        if version is None or release is None:
            raise ConfigurationError(
                f"Invalid version or release for {name}: {entry.get('version')!r} r{entry.get('release')!r}"
            )
        root_dir_name = entry.get("root_dir_name")
        if not root_dir_name:
            raise ConfigurationError(f"Missing archive root directory name for {name}")
        url = entry.get("urls", {}).get(os_name)
        if not url:
            log(f"[WARN] No {name} download URL configured for OS {os_name}")
        targets[name] = InstallTarget(
            name=name,
            version=version,
            release=release,
            url=url,
            cache_dir=base / "cache" / entry.get("cache_dir_name", name),
            install_dir=base / entry.get("install_dir_name", name),
            root_dir_name=root_dir_name,
            product_label=entry.get("product_label", PRODUCT_NAME),
        )
    return targets


def staging_dir_for(install_dir: Path) -> Path:
    return install_dir.with_name(install_dir.name + STAGING_SUFFIX)


def is_corretto_installation(install_dir: Path) -> bool:
    # Directories provisioned by the earlier Corretto-based tool must be replaced.
    return (install_dir / CORRETTO_VERSION_FILE).exists()


def read_release_java_version(release_file: Path) -> Optional[str]:
    for raw in release_file.read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw.strip()
        if not line.startswith("JAVA_VERSION="):
            continue
        value = line.split("=", 1)[1].strip().strip('"')
        return value.replace("_", ".") or None
    return None


def read_version_info(version_file: Path) -> Optional[str]:
    for raw in version_file.read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw.strip()
        if line:
            return line
    return None


def write_version_info(install_dir: Path, release: Version) -> Path:
    version_file = install_dir / VERSION_INFO_FILE
    version_file.write_text(f"{format_version(release)}\n", encoding="utf-8")
    return version_file


def executable_candidates(relative: Path, os_name: str) -> List[Path]:
    if os_name != "windows":
        return []
    extensions = os.environ.get("PATHEXT") or DEFAULT_PATHEXT
    candidates: List[Path] = []
    for ext in extensions.split(";"):
        ext = ext.strip().lower()
        if ext:
            candidates.append(relative.with_name(relative.name + ext))
    return candidates


def find_jdk_file(install_dir: Path, relative: Path, os_name: str) -> Optional[Path]:
    path = install_dir / relative
    if path.is_file():
        return path
    for candidate in executable_candidates(relative, os_name):
        path = install_dir / candidate
        if path.is_file():
            return path
    return None


def probe_installation(
    install_dir: Path,
    target: InstallTarget,
    os_name: Optional[str] = None,
) -> InstallationProbe:
    label = target.product_label
    os_name = os_name or detect_os()

    if not install_dir.is_dir():
        log_debug(f"{label} directory {install_dir} does not exist")
        return InstallationProbe(False)

    if is_corretto_installation(install_dir):
        log_debug(
            f"Corretto version file {install_dir / CORRETTO_VERSION_FILE} found, "
            f"will replace Corretto with {label}"
        )
        return InstallationProbe(False)

    release_file = install_dir / VENDOR_RELEASE_FILE
    if not release_file.is_file():
        log_debug(f"{label} release file {release_file} does not exist, cannot determine version")
        return InstallationProbe(False)

    cv = read_release_java_version(release_file)
    if not cv:
        log_debug(f"Unable to find version of {label} in release file {release_file}")
        return InstallationProbe(False)

    version_file = install_dir / VERSION_INFO_FILE
    if not version_file.is_file():
        log_debug(f"Unable to find setup version file {version_file}")
        return InstallationProbe(False, cv)

    rv = read_version_info(version_file)
    if not rv:
        log_debug(f"Setup version file {version_file} does not contain release version information")
        return InstallationProbe(False)

    installed_version = f"{cv} r{rv}"

    current = parse_version(cv)
    if current is None:
        log_debug(f"Unable to parse {label} version from: {cv}")
        return InstallationProbe(False, installed_version)

    if current != target.version:
        log_debug(f"Invalid {label} version. Need {format_version(target.version)}, found {cv}")
        return InstallationProbe(False, installed_version)

    current = parse_version(rv)
    if current is None:
        log_debug(f"Unable to parse {label} release version from: {rv}")
        return InstallationProbe(False, installed_version)

    if current != target.release:
        log_debug(f"Invalid {label} release. Need {format_version(target.release)}, found {rv}")
        return InstallationProbe(False, installed_version)

    for relative in JDK_FILES:
        if find_jdk_file(install_dir, relative, os_name) is None:
            log_debug(f"JDK file {install_dir / relative} missing from {label}")
            return InstallationProbe(False, installed_version)

    return InstallationProbe(True, installed_version)


def resolve_package_name(url: str) -> str:
    query = urllib.parse.urlsplit(url).query
    params = [p for p in QUERY_SEPARATORS.split(query) if p]
    if not params:
        raise PackageNameError(f"Unable to extract file name from URL {url} as it contains no query component")

    for param in params:
        key, sep, value = param.partition("=")
        if key.strip() != URL_QUERY_FILE_PATH_FIELD:
            continue
        value = urllib.parse.unquote(value).strip()
        if not sep or not value:
            raise PackageNameError(
                f"URL query field '{URL_QUERY_FILE_PATH_FIELD}' has no value, unable to detect file name"
            )
        name = value.replace("\\", "/").rsplit("/", 1)[-1]
        if not name:
            raise PackageNameError(f"URL query field '{URL_QUERY_FILE_PATH_FIELD}' does not name a file: {value}")
        return name

    raise PackageNameError(f"Unable to extract file name from URL {url}: no '{URL_QUERY_FILE_PATH_FIELD}' field")


def fetch_remote_size(url: str, timeout: float = 60) -> Tuple[bool, int, Optional[int]]:
    try:
        request = urllib.request.Request(url, method="HEAD")
        with urllib.request.urlopen(request, timeout=timeout) as response:
            length = response.headers.get("Content-Length", "")
            size = int(length) if length.isdigit() else 0
            return True, size, response.status
    except urllib.error.HTTPError as exc:
        return False, 0, exc.code
    except (OSError, http.client.HTTPException, ValueError) as exc:
        log(f"[WARN] Unable to query size of {url}: {exc}")
        return False, 0, None


def make_progress(total: int, label: str, enabled: bool, position: int = 0) -> tqdm:
    return tqdm(
        total=total or None,
        unit="iB",
        unit_scale=True,
        unit_divisor=1024,
        desc=label,
        disable=not enabled,
        position=position,
        miniters=1,
    )


def download_with_retries(
    url: str,
    dest: Path,
    progress: Optional[ProgressSink] = None,
    attempts: int = 3,
    backoff: float = 1.5,
) -> bool:
    partial = dest.with_name(dest.name + PARTIAL_DOWNLOAD_SUFFIX)
    last_err: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            log(f"[DOWN] Downloading (attempt {attempt}/{attempts}): {url}")
            with urllib.request.urlopen(url, timeout=60) as response, open(partial, "wb") as handle:
                while True:
                    chunk = response.read(DOWNLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    handle.write(chunk)
                    if progress is not None:
                        progress(len(chunk))
            partial.replace(dest)
            log(f"[OK] Download completed: {dest}")
            return True
        except (OSError, http.client.HTTPException) as exc:
            last_err = exc
            if attempt < attempts:
                wait = backoff ** attempt
                log(f"[WARN] Download failed: {exc}. Retrying in {wait:.1f}s...")
                time.sleep(wait)
    delete_file_silent(partial)
    log(f"[ERROR] Download failed after {attempts} attempts for {url}: {last_err}")
    return False


def extract_archive(archive_path: Path, dest_dir: Path, clean_destination: bool = False) -> bool:
    try:
        if clean_destination and dest_dir.exists():
            shutil.rmtree(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        name = archive_path.name.lower()
        if name.endswith(".zip"):
            with zipfile.ZipFile(archive_path, "r") as archive:
                archive.extractall(dest_dir)
        elif name.endswith(".tar.gz") or name.endswith(".tgz"):
            with tarfile.open(archive_path, "r:gz") as archive:
                archive.extractall(dest_dir, filter="data")
        else:
            log(f"[ERROR] Unsupported archive format: {archive_path}")
            return False
        return True
    except (OSError, tarfile.TarError, zipfile.BadZipFile) as exc:
        log(f"[ERROR] Failed to extract {archive_path}: {exc}")
        return False


def move_contents(src_dir: Path, dest_dir: Path) -> None:
    dest_dir.mkdir(parents=True, exist_ok=True)
    for child in sorted(src_dir.iterdir()):
        destination = dest_dir / child.name
        if destination.is_dir() and not destination.is_symlink():
            shutil.rmtree(destination)
        elif destination.exists() or destination.is_symlink():
            destination.unlink()
        shutil.move(str(child), str(destination))


def delete_directory_silent(path: Path) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        log(f"[WARN] Failed to remove directory {path}: {exc}")


def delete_file_silent(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        log(f"[WARN] Failed to remove file {path}: {exc}")


def remove_legacy_installation(legacy_dir: Optional[Path]) -> None:
    # Left behind by the superseded OpenJDK step; never reused.
    if legacy_dir is None or not legacy_dir.is_dir():
        return
    log_debug(f"Found old OpenJDK directory at {legacy_dir}, removing")
    delete_directory_silent(legacy_dir)


def _cleanup_old_jdk_content(install_dir: Path) -> None:
    if not install_dir.exists():
        return
    for child in install_dir.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def promote_staged_contents(root_dir: Path, install_dir: Path) -> None:
    _cleanup_old_jdk_content(install_dir)
    move_contents(root_dir, install_dir)


def download_package(
    target: InstallTarget,
    ctx: SetupContext,
    local_package_path: Path,
    progress_position: int = 0,
) -> None:
    label = target.product_label
    if local_package_path.exists():
        log(f"[INFO] {label} archive already downloaded: {local_package_path}")
        return

    url = target.url or ""
    log(f"[INFO] Downloading {label} from {url}")
    success, size, status = fetch_remote_size(url)
    if not success:
        if status == HTTPStatus.NOT_FOUND:
            raise TransportError(f"{label} archive URL not found: {url}", status)
        if status is None:
            raise TransportError(f"Failed to obtain {label} size from {url}")
        try:
            phrase = HTTPStatus(status).phrase
        except ValueError:
            phrase = "Unknown"
        raise TransportError(f"Failed to obtain {label} size. HTTP status code: {phrase} ({status})", status)

    local_package_path.parent.mkdir(parents=True, exist_ok=True)
    with make_progress(size, local_package_path.name, ctx.interactive, progress_position) as bar:
        download_with_retries(url, local_package_path, progress=bar.update)

    if not local_package_path.exists():
        raise TransportError(f"Download of {label} from {url} failed.")


def stage_and_commit(target: InstallTarget, local_package_path: Path, temp_dir: Path) -> None:
    label = target.product_label
    if not extract_archive(local_package_path, temp_dir, clean_destination=True):
        raise ArchiveError(f"Failed to unpack {label} archive {local_package_path}")

    root_dir = temp_dir / target.root_dir_name
    if not root_dir.is_dir():
        raise ArchiveLayoutError(f"{label} root directory not found after unpacking: {target.root_dir_name}")

    promote_staged_contents(root_dir, target.install_dir)
    write_version_info(target.install_dir, target.release)


def install_openjdk(
    target: InstallTarget,
    ctx: SetupContext,
    remove_legacy: bool = True,
    progress_position: int = 0,
) -> bool:
    label = target.product_label
    if remove_legacy:
        remove_legacy_installation(ctx.legacy_install_dir)

    probe = probe_installation(target.install_dir, target, ctx.os_name)
    if probe.is_valid:
        log(f"[OK] {label} version {probe.installed_version} already installed in: {target.install_dir}")
        return True
    if probe.installed_version:
        log(f"[INFO] Found {label} {probe.installed_version} in {target.install_dir}, replacing")

    log(f"[INFO] {label} {target.display_version} will be installed")
    if not target.url:
        raise ConfigurationError(f"{label} URL must not be empty ({target.name})")

    try:
        package_name = resolve_package_name(target.url)
        local_package_path = target.cache_dir / package_name
        download_package(target, ctx, local_package_path, progress_position)
    except SetupError as exc:
        log(f"[ERROR] {exc}")
        return False

    temp_dir = staging_dir_for(target.install_dir)
    installed = False
    try:
        stage_and_commit(target, local_package_path, temp_dir)
        installed = True
    except ArchiveError as exc:
        log(f"[ERROR] {exc}")
    except OSError as exc:
        log(f"[ERROR] Failed to install {label} into {target.install_dir}: {exc}")
    finally:
        delete_directory_silent(temp_dir)
        # Hosted agents are discarded after the run; keep the cache everywhere else.
        if installed and ctx.hosted_agent:
            delete_file_silent(local_package_path)

    if installed:
        log(f"[OK] {label} {target.display_version} installed at: {target.install_dir}")
    return installed


def provision_targets(
    targets: Sequence[InstallTarget],
    ctx: SetupContext,
    parallel: bool = True,
) -> Dict[str, bool]:
    results: Dict[str, bool] = {}
    remove_legacy_installation(ctx.legacy_install_dir)
    if not parallel or len(targets) < 2:
        for target in targets:
            log(f"[STEP] Installing {target.product_label} {target.name}")
            results[target.name] = install_openjdk(target, ctx, remove_legacy=False)
        return results

    # Variants own disjoint install and cache directories.
    futures: Dict[str, Future[bool]] = {}
    with ThreadPoolExecutor(max_workers=len(targets)) as executor:
        for position, target in enumerate(targets):
            log(f"[STEP] Installing {target.product_label} {target.name}")
            futures[target.name] = executor.submit(install_openjdk, target, ctx, False, position)
    for name, future in futures.items():
        results[name] = future.result()
    return results


@click.command()
@click.argument("names", nargs=-1)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="JSON table of OpenJDK targets.",
)
@click.option(
    "--home",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Root of install and cache directories (defaults to $OPENJDK_SETUP_HOME).",
)
@click.option("--hosted-agent/--no-hosted-agent", default=None, help="Override hosted CI agent detection.")
@click.option("--sequential", is_flag=True, help="Install targets one after another.")
@click.option("--verbose", "-v", is_flag=True, help="Print probe diagnostics.")
def main(
    names: Tuple[str, ...],
    config_path: Path,
    home: Optional[Path],
    hosted_agent: Optional[bool],
    sequential: bool,
    verbose: bool,
) -> None:
    """Install the configured JetBrains OpenJDK targets (all when NAMES is empty)."""
    set_verbose(verbose)
    base = home if home is not None else SETUP_HOME
    ctx = SetupContext.from_environment(base)
    if hosted_agent is not None:
        ctx = replace(ctx, hosted_agent=hosted_agent)

    try:
        available = load_install_targets(config_path, ctx.os_name, base)
    except (OSError, ValueError, SetupError) as exc:
        raise click.ClickException(str(exc)) from exc

    unknown = [name for name in names if name not in available]
    if unknown:
        raise click.UsageError(f"Unknown target(s): {', '.join(unknown)}. Known: {', '.join(available)}")
    selected = [available[name] for name in names] if names else list(available.values())

    log(f"[START] OpenJDK Setup in: {base}")
    try:
        results = provision_targets(selected, ctx, parallel=not sequential)
    except SetupError as exc:
        raise click.ClickException(str(exc)) from exc

    failed = [name for name, ok in results.items() if not ok]
    if failed:
        log(f"[ERROR] Failed to install: {', '.join(failed)}")
        sys.exit(1)
    log("[DONE] Completed.")


if __name__ == "__main__":
    main()
