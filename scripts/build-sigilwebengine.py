#!/usr/bin/env python3
"""
Provision an Ubuntu 22.04 container for building Sigil's WebEngine AppImage:
the bundled Python runtime, CMake, Ninja and the Node.js toolchain.

Run inside the build container, e.g.:
    docker run --rm -v "$(git rev-parse --show-toplevel)":/build ubuntu:22.04 \\
        /build/scripts/build-sigilwebengine.py

To keep downloads between runs, mount volumes on /var/cache/apt and /usr/src:
    docker volume create appimage-tools
    docker run --rm -v "$(git rev-parse --show-toplevel)":/build \\
        -v appimage-tools:/var/cache/apt -v appimage-tools:/usr/src \\
        ubuntu:22.04 /build/scripts/build-sigilwebengine.py

The flow:
1. prepare-baseenv: apt configuration, build packages, ld.so paths
2. install-cmake / install-ninja: latest prebuilt release binaries
3. setup-python: bundled Sigil Python runtime under /opt/sigiltools
4. setup-nodejs: Node.js from NodeSource

Network steps (apt, curl, the NodeSource installer) are retried 5 times with
15 seconds between attempts; local steps fail fast.

Optional environment variables (a .env file is honoured):
    PYTHON_VER - bundled Python version (default: 3.13.2)
    OPENSSL_VER - OpenSSL version exported to builds (default: 3.0.16)
    NODE_MAJOR - NodeSource major release line (default: 23)
    BUILDENV_ROOT - filesystem root the container paths live under (default: /)
    BUILDENV_RETRY_ATTEMPTS / BUILDENV_RETRY_DELAY - retry policy (default: 5 / 15)
"""

from __future__ import annotations

import argparse
import hashlib
import os
import re
import shutil
import sys
import traceback
import typing as t

from dataclasses import dataclass
from pathlib import Path

import dotenv

from buildenv import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_DELAY,
    BuildEnvironment,
    Command,
    CommandRunner,
    Console,
    ProvisioningError,
    RetryPolicy,
    TaskRegistry,
    TimingsCollector,
    format_dependency_graph,
    run_task_graph,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_PYTHON_VERSION = "3.13.2"
DEFAULT_OPENSSL_VERSION = "3.0.16"
DEFAULT_NODE_MAJOR = "23"

CMAKE_DOWNLOAD_PAGE = "https://cmake.org/download/"
CMAKE_RELEASE_BASE = "https://github.com/Kitware/CMake/releases/download"
NINJA_HOME_PAGE = "https://ninja-build.org/"
NINJA_RELEASE_BASE = "https://github.com/ninja-build/ninja/releases/download"
SIGIL_PYTHON_RELEASE_BASE = (
    "https://github.com/dougmassay/win-qtwebkit-5.212/releases/download/v5.212-1"
)
NODESOURCE_SETUP_BASE = "https://deb.nodesource.com"

CMAKE_RELEASE_RE = re.compile(r"Latest Release\s*\(([^)]+)\)")
NINJA_RELEASE_RE = re.compile(r"The last Ninja release is\s*<b>([^<]+)</b>")

DOWNLOAD_MARKER_SUFFIX = ".download_ok"

APT_BOOTSTRAP_PACKAGES = (
    "software-properties-common",
    "apt-transport-https",
)

BUILD_PACKAGES = (
    "make",
    "build-essential",
    "curl",
    "gperf",
    "bison",
    "flex",
    "libgbm-dev",
    "libnss3-dev",
    "libasound2-dev",
    "libpulse-dev",
    "libdrm-dev",
    "libxshmfence-dev",
    "libxkbfile-dev",
    "libxcomposite-dev",
    "libxcursor-dev",
    "libxrandr-dev",
    "libxi-dev",
    "x11proto-dev",
    "libxtst-dev",
    "libxkbcommon-dev",
    "libxcb-dri3-dev",
    "zip",
    "zlib1g-dev",
)

APT_KEEP_DEBS_CONF = 'Binary::apt::APT::Keep-Downloaded-Packages "true";\n'
APT_TRUST_HTTPS_CONF = (
    'Acquire::https::Verify-Peer "false";\n'
    'Acquire::https::Verify-Host "false";\n'
)

# ---------------------------------------------------------------------------
# Settings and context
# ---------------------------------------------------------------------------


def _int_setting(environ: t.Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _float_setting(environ: t.Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(slots=True, frozen=True)
class BuildSettings:
    python_version: str = DEFAULT_PYTHON_VERSION
    openssl_version: str = DEFAULT_OPENSSL_VERSION
    node_major: str = DEFAULT_NODE_MAJOR
    root: Path = Path("/")
    retry_policy: RetryPolicy = RetryPolicy()

    @classmethod
    def from_environ(cls, environ: t.Mapping[str, str]) -> BuildSettings:
        return cls(
            python_version=environ.get("PYTHON_VER") or DEFAULT_PYTHON_VERSION,
            openssl_version=environ.get("OPENSSL_VER") or DEFAULT_OPENSSL_VERSION,
            node_major=environ.get("NODE_MAJOR") or DEFAULT_NODE_MAJOR,
            root=Path(environ.get("BUILDENV_ROOT") or "/"),
            retry_policy=RetryPolicy(
                max_attempts=_int_setting(
                    environ, "BUILDENV_RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS
                ),
                delay=_float_setting(environ, "BUILDENV_RETRY_DELAY", DEFAULT_RETRY_DELAY),
            ),
        )

    def path(self, container_path: str) -> Path:
        """Map an absolute container path under the configured root."""
        return self.root / container_path.lstrip("/")

    @property
    def src_dir(self) -> Path:
        return self.path("/usr/src")

    @property
    def local_prefix(self) -> Path:
        return self.path("/usr/local")

    @property
    def tools_dir(self) -> Path:
        return self.path("/opt/sigiltools")

    @property
    def python_home(self) -> Path:
        return self.tools_dir / "python"

    def base_variables(self) -> dict[str, str]:
        return {
            "PYTHON_VER": self.python_version,
            "OPENSSL_VER": self.openssl_version,
            "LC_ALL": "C.UTF-8",
            "DEBIAN_FRONTEND": "noninteractive",
            "PKG_CONFIG_PATH": str(self.local_prefix / "lib64" / "pkgconfig"),
        }


@dataclass(slots=True)
class BuildContext:
    """Collaborators shared by all provisioning tasks."""

    settings: BuildSettings
    runner: CommandRunner
    console: Console
    timings: TimingsCollector


# ---------------------------------------------------------------------------
# Download helpers
# ---------------------------------------------------------------------------


def parse_cmake_version(page: str) -> str:
    match = CMAKE_RELEASE_RE.search(page)
    if match is None:
        raise ProvisioningError(f"Unable to find the latest CMake release on {CMAKE_DOWNLOAD_PAGE}")
    return match.group(1).strip()


def parse_ninja_version(page: str) -> str:
    match = NINJA_RELEASE_RE.search(page)
    if match is None:
        raise ProvisioningError(f"Unable to find the latest Ninja release on {NINJA_HOME_PAGE}")
    return match.group(1).strip()


def parse_sha256_listing(listing: str, filename: str) -> str | None:
    """Return the digest for ``filename`` from a ``sha256sum``-style listing."""
    for line in listing.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1].lstrip("*") == filename:
            return parts[0].lower()
    return None


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def fetch_text(ctx: BuildContext, env: BuildEnvironment, label: str, url: str) -> str:
    command = Command.of("curl", "-ksSL", "--compressed", url, capture_output=True)
    return ctx.runner.retry(label, command, env).stdout


def download_with_marker(
    ctx: BuildContext,
    env: BuildEnvironment,
    label: str,
    url: str,
    dest: Path,
) -> Path:
    """Resumable download; a marker file records that ``dest`` is complete."""
    marker = dest.with_name(dest.name + DOWNLOAD_MARKER_SUFFIX)
    if marker.exists():
        ctx.console.info(f"[{label}] using cached {dest}")
        return dest
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.unlink(missing_ok=True)
    ctx.runner.retry(label, Command.of("curl", "-kLC-", "-o", dest, url), env)
    marker.touch()
    return dest


def _which(program: str, env: BuildEnvironment) -> str | None:
    return shutil.which(program, path=env.search_path)


# ---------------------------------------------------------------------------
# Task registry and task definitions
# ---------------------------------------------------------------------------

registry = TaskRegistry()


def _reset_apt_configuration(settings: BuildSettings) -> None:
    for stale in settings.path("/etc/apt/sources.list.d").glob("*.list*"):
        if stale.is_file() or stale.is_symlink():
            stale.unlink()

    apt_conf_dir = settings.path("/etc/apt/apt.conf.d")
    apt_conf_dir.mkdir(parents=True, exist_ok=True)
    for entry in apt_conf_dir.iterdir():
        if entry.is_file() or entry.is_symlink():
            entry.unlink()
    # keep debs in the container so a mounted /var/cache/apt volume holds them
    (apt_conf_dir / "01keep-debs").write_text(APT_KEEP_DEBS_CONF)
    (apt_conf_dir / "99-trust-https").write_text(APT_TRUST_HTTPS_CONF)


def _configure_ld_paths(settings: BuildSettings) -> None:
    # CMake >= 3.23 forces CMAKE_INSTALL_LIBDIR to lib/<multiarch-tuple> on Debian
    ld_conf_dir = settings.path("/etc/ld.so.conf.d")
    ld_conf_dir.mkdir(parents=True, exist_ok=True)
    (ld_conf_dir / "x86_64-linux-gnu-local.conf").write_text(
        "/usr/local/lib/x86_64-linux-gnu\n"
    )
    (ld_conf_dir / "lib64-local.conf").write_text("/usr/local/lib64\n")


@registry.task(
    name="prepare-baseenv",
    description="Configure apt and install build packages",
)
def task_prepare_baseenv(ctx: BuildContext, env: BuildEnvironment) -> BuildEnvironment:
    _reset_apt_configuration(ctx.settings)
    _configure_ld_paths(ctx.settings)

    ctx.runner.retry("apt-update", Command.of("apt-get", "update"), env)
    ctx.runner.retry(
        "apt-bootstrap",
        Command.of("apt-get", "install", "-y", "--allow-downgrades", *APT_BOOTSTRAP_PACKAGES),
        env,
    )
    ctx.runner.retry("apt-update", Command.of("apt-get", "update"), env)
    ctx.runner.retry(
        "apt-build-packages",
        Command.of("apt-get", "install", "-y", *BUILD_PACKAGES),
        env,
    )
    ctx.runner.run("apt-autoremove", Command.of("apt-get", "autoremove", "--purge", "-y"), env)

    # strip all compiled files by default
    env = env.with_variables(CFLAGS="-s", CXXFLAGS="-s")
    ctx.runner.run("ldconfig", Command.of("ldconfig"), env)
    return env


@registry.task(
    name="install-cmake",
    deps=("prepare-baseenv",),
    description="Install the latest prebuilt CMake release",
)
def task_install_cmake(ctx: BuildContext, env: BuildEnvironment) -> None:
    if _which("cmake", env) is None:
        version = parse_cmake_version(
            fetch_text(ctx, env, "cmake-latest", CMAKE_DOWNLOAD_PAGE)
        )
        archive_name = f"cmake-{version}-linux-x86_64.tar.gz"
        archive = ctx.settings.src_dir / archive_name
        release_url = f"{CMAKE_RELEASE_BASE}/v{version}"

        if archive.exists():
            listing = fetch_text(
                ctx, env, "cmake-sha256", f"{release_url}/cmake-{version}-SHA-256.txt"
            )
            expected = parse_sha256_listing(listing, archive_name)
            if expected is None or sha256_file(archive) != expected:
                ctx.console.always(f"[install-cmake] discarding corrupt {archive}")
                archive.unlink()

        if not archive.exists():
            archive.parent.mkdir(parents=True, exist_ok=True)
            ctx.runner.retry(
                "cmake-download",
                Command.of("curl", "-kLo", archive, f"{release_url}/{archive_name}"),
                env,
            )

        ctx.settings.local_prefix.mkdir(parents=True, exist_ok=True)
        ctx.runner.run(
            "cmake-extract",
            Command.of(
                "tar", "-zxf", archive,
                "-C", ctx.settings.local_prefix,
                "--strip-components", "1",
            ),
            env,
        )
    ctx.runner.run("cmake-version", Command.of("cmake", "--version"), env)


@registry.task(
    name="install-ninja",
    deps=("prepare-baseenv",),
    description="Install the latest prebuilt Ninja release",
)
def task_install_ninja(ctx: BuildContext, env: BuildEnvironment) -> None:
    if _which("ninja", env) is None:
        version = parse_ninja_version(fetch_text(ctx, env, "ninja-latest", NINJA_HOME_PAGE))
        archive = download_with_marker(
            ctx,
            env,
            "ninja-download",
            f"{NINJA_RELEASE_BASE}/{version}/ninja-linux.zip",
            ctx.settings.src_dir / f"ninja-{version}-linux.zip",
        )
        bin_dir = ctx.settings.local_prefix / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        ctx.runner.run("ninja-extract", Command.of("unzip", "-o", "-d", bin_dir, archive), env)

    result = ctx.runner.run(
        "ninja-version", Command.of("ninja", "--version", capture_output=True), env
    )
    ctx.console.always(f"Ninja version {result.stdout.strip()}")


@registry.task(
    name="setup-python",
    deps=("prepare-baseenv",),
    description="Unpack the bundled Sigil Python runtime",
)
def task_setup_python(ctx: BuildContext, env: BuildEnvironment) -> BuildEnvironment:
    settings = ctx.settings
    settings.tools_dir.mkdir(parents=True, exist_ok=True)
    archive_name = f"sigilpython{settings.python_version}.tar.xz"
    archive = download_with_marker(
        ctx,
        env,
        "python-download",
        f"{SIGIL_PYTHON_RELEASE_BASE}/{archive_name}",
        settings.src_dir / archive_name,
    )
    ctx.runner.run(
        "python-extract",
        Command.of("tar", "-xJf", archive, "-C", settings.tools_dir),
        env,
    )

    env = (
        env.prepend_path(settings.python_home / "bin")
        .prepend_library_path(settings.python_home / "lib")
        .with_variables(PYTHONHOME=str(settings.python_home))
    )
    python3 = _which("python3", env)
    if python3 is None:
        raise ProvisioningError(
            f"python3 not found after unpacking {archive_name} into {settings.tools_dir}"
        )
    ctx.console.info(f"[setup-python] using {python3}")
    result = ctx.runner.run(
        "python-version", Command.of(python3, "--version", capture_output=True), env
    )
    ctx.console.always(f"Python version {result.stdout.strip()}")
    return env


@registry.task(
    name="setup-nodejs",
    deps=("prepare-baseenv",),
    description="Install Node.js from NodeSource",
)
def task_setup_nodejs(ctx: BuildContext, env: BuildEnvironment) -> None:
    settings = ctx.settings
    settings.src_dir.mkdir(parents=True, exist_ok=True)
    setup_script = settings.src_dir / "nodesource_setup.sh"
    setup_url = f"{NODESOURCE_SETUP_BASE}/setup_{settings.node_major}.x"

    ctx.runner.retry(
        "nodesource-download",
        Command.of("curl", "-fsSL", setup_url, "-o", setup_script),
        env,
    )
    ctx.runner.retry("nodesource-setup", Command.of("bash", setup_script), env)
    ctx.runner.retry("nodejs-install", Command.of("apt-get", "install", "-y", "nodejs"), env)
    ctx.runner.run("node-version", Command.of("node", "-v"), env)


# ---------------------------------------------------------------------------
# Main provisioning flow
# ---------------------------------------------------------------------------


def provision(
    settings: BuildSettings,
    *,
    console: Console,
    runner: CommandRunner | None = None,
    environ: t.Mapping[str, str] | None = None,
) -> BuildEnvironment:
    """Run every provisioning task and return the final build environment."""
    timings = TimingsCollector()
    ctx = BuildContext(
        settings=settings,
        runner=runner or CommandRunner(console, policy=settings.retry_policy),
        console=console,
        timings=timings,
    )
    env = BuildEnvironment.capture(environ, **settings.base_variables())

    console.always(
        f"Provisioning Sigil WebEngine build environment "
        f"(Python {settings.python_version}, Node.js {settings.node_major}.x)"
    )
    env = run_task_graph(registry, ctx, env)

    summary = timings.summary()
    if summary:
        console.always("\nTiming Summary")
        for line in summary:
            console.always(line)
    return env


def parse_args(argv: t.Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Provision the Sigil WebEngine AppImage build container"
    )
    parser.add_argument(
        "--print-deps",
        action="store_true",
        help="Print the provisioning step graph and exit",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only print retry diagnostics, versions and errors",
    )
    return parser.parse_args(argv)


def main(argv: t.Sequence[str] | None = None) -> None:
    dotenv.load_dotenv()
    args = parse_args(argv)
    if args.print_deps:
        graph = format_dependency_graph(registry)
        if graph:
            print(graph)
        return

    console = Console(verbose=not args.quiet)
    try:
        settings = BuildSettings.from_environ(os.environ)
        provision(settings, console=console)
    except ProvisioningError as exc:
        console.always(f"ERROR: Provisioning failed: {exc}")
        sys.exit(exc.exit_code)
    except Exception:
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
