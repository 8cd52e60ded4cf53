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

"""Kubeconfig handle with save-on-acquire / restore-on-release semantics."""

from __future__ import annotations

import shutil
from pathlib import Path

from cluster_manager import console
from cluster_manager.constants import (
    DEFAULT_KUBECONFIG,
    KUBECONFIG_ABSENT_SUFFIX,
    KUBECONFIG_BACKUP_SUFFIX,
)


class KubeconfigHandle:
    """The canonical kubeconfig file, checked out for the duration of a cluster's life.

    ``acquire`` moves a pre-existing user kubeconfig aside (or records that
    there was none); ``release`` removes whatever the cluster wrote and puts
    the user's file back. Acquiring twice without a release keeps the first
    backup, so a re-install never backs up a generated config as the user's.
    """

    def __init__(self, path: Path = DEFAULT_KUBECONFIG) -> None:
        self.path = path
        self.backup_path = path.with_name(path.name + KUBECONFIG_BACKUP_SUFFIX)
        self.absent_marker = path.with_name(path.name + KUBECONFIG_ABSENT_SUFFIX)

    @property
    def checked_out(self) -> bool:
        return self.backup_path.exists() or self.absent_marker.exists()

    def acquire(self) -> None:
        """Save the current kubeconfig before a cluster overwrites it."""
        if self.checked_out:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            shutil.move(str(self.path), str(self.backup_path))
            console.print(f"[yellow]\u2139\ufe0f  Backed up existing kubeconfig to {self.backup_path}[/yellow]")
        else:
            self.absent_marker.touch()

    def write(self, content: str | bytes) -> Path:
        """Write a cluster's kubeconfig to the canonical path with mode 0600."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            content = content.encode()
        self.path.write_bytes(content)
        self.path.chmod(0o600)
        console.print(f"[green]  \u2713 Kubeconfig written to {self.path}[/green]")
        return self.path

    def copy_from(self, source: Path) -> Path:
        """Install a kubeconfig generated elsewhere (e.g. ``/etc/rancher/k3s/k3s.yaml``)."""
        return self.write(source.read_bytes())

    def release(self) -> None:
        """Remove the cluster's kubeconfig and restore the user's original, if any.

        A kubeconfig that was never checked out is left alone.
        """
        if not self.checked_out:
            return
        self.path.unlink(missing_ok=True)
        if self.backup_path.exists():
            shutil.move(str(self.backup_path), str(self.path))
            console.print(f"[green]  \u2713 Restored kubeconfig from {self.backup_path}[/green]")
        self.absent_marker.unlink(missing_ok=True)
