# /*
# Copyright 2026 The Grove Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Utility functions for command checks, kubectl, manifests, and best-effort steps."""

from __future__ import annotations

import subprocess
from collections.abc import Callable, Iterable
from pathlib import Path

import docker
import sh
import yaml

from cluster_manager import console, logger
from cluster_manager.constants import KUBECTL_TIMEOUT_SECONDS
from cluster_manager.errors import ExternalToolError, PreconditionError


def command_available(cmd: str) -> bool:
    """Return True if *cmd* is on the system PATH."""
    try:
        sh.which(cmd)
    except (sh.ErrorReturnCode, sh.CommandNotFound):
        return False
    return True


def require_command(cmd: str) -> None:
    """Check if a command exists on the system PATH.

    Args:
        cmd: Name of the CLI command to check.

    Raises:
        PreconditionError: If the command is not found.
    """
    if not command_available(cmd):
        raise PreconditionError(f"Required command '{cmd}' not found. Please install it first.")


def run_kubectl(args: list[str], timeout: int = KUBECTL_TIMEOUT_SECONDS) -> tuple[bool, str, str]:
    """Run a kubectl command via subprocess and return (success, stdout, stderr).

    Readiness predicates parse kubectl output column by column, so stdout and
    stderr are kept separate here instead of going through sh.

    Args:
        args: kubectl arguments (e.g. ``["get", "pods", "-n", "default"]``).
        timeout: Maximum seconds to wait for the command to complete.

    Returns:
        Tuple of (success, stdout, stderr).
    """
    try:
        result = subprocess.run(
            ["kubectl", *args],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.returncode == 0, result.stdout, result.stderr
    except (subprocess.SubprocessError, OSError) as exc:
        return False, "", str(exc)


def render_manifests(docs: Iterable[dict]) -> str:
    """Serialize Kubernetes objects into one multi-document YAML string."""
    return yaml.safe_dump_all(list(docs), default_flow_style=False, sort_keys=False)


def kubectl_apply(manifest: str | Iterable[dict]) -> None:
    """Apply a manifest (YAML text, a list of objects, or a URL) with kubectl.

    Args:
        manifest: URL, YAML text, or iterable of Kubernetes object dicts.

    Raises:
        ExternalToolError: If ``kubectl apply`` fails.
    """
    try:
        if isinstance(manifest, str) and manifest.startswith(("http://", "https://")):
            sh.kubectl("apply", "-f", manifest)
            return
        text = manifest if isinstance(manifest, str) else render_manifests(manifest)
        sh.kubectl("apply", "-f", "-", _in=text)
    except sh.ErrorReturnCode as err:
        raise ExternalToolError.from_sh(err) from err


def ensure_namespace(namespace: str) -> None:
    """Create *namespace* if it does not exist (client dry-run piped into apply)."""
    rendered = sh.kubectl("create", "namespace", namespace, "--dry-run=client", "-o", "yaml")
    kubectl_apply(str(rendered))


def describe(kind: str, namespace: str, selector: str | None = None) -> str:
    """Return ``kubectl describe`` output for diagnostics, or an empty string."""
    args = ["describe", kind, "-n", namespace]
    if selector:
        args.extend(["-l", selector])
    ok, stdout, stderr = run_kubectl(args, timeout=60)
    return stdout if ok else stderr


def best_effort(label: str, fn: Callable[[], object]) -> bool:
    """Run a step whose failure must not abort the caller.

    Args:
        label: Description printed with the outcome.
        fn: Zero-argument callable to run.

    Returns:
        True if the step succeeded, False if it raised.
    """
    try:
        fn()
    except (sh.ErrorReturnCode, sh.CommandNotFound, docker.errors.DockerException, RuntimeError, OSError) as exc:
        console.print(f"[yellow]\u26a0\ufe0f  {label} failed: {_first_line(exc)}[/yellow]")
        logger.debug("best-effort step %r failed", label, exc_info=True)
        return False
    console.print(f"[green]  \u2713 {label}[/green]")
    return True


def write_file(path: Path, content: str, mode: int = 0o644) -> Path:
    """Write *content* to *path*, creating parent directories and setting permissions."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    path.chmod(mode)
    return path


def remove_path(path: Path) -> None:
    """Remove a file or directory tree if present."""
    if path.is_dir() and not path.is_symlink():
        sh.rm("-rf", str(path))
    else:
        path.unlink(missing_ok=True)


def _first_line(exc: BaseException) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__
