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

"""cluster_manager - multi-backend Kubernetes cluster lifecycle management package."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path

from rich.console import Console

LOG_FILE_WIDTH = 120


class TeeConsole:
    """Console proxy that mirrors printed output into log files while a tee is active."""

    def __init__(self, real_console: Console) -> None:
        object.__setattr__(self, "_real", real_console)
        object.__setattr__(self, "_sinks", [])

    def __getattr__(self, name: str):
        return getattr(self._real, name)

    def print(self, *objects, **kwargs) -> None:
        self._real.print(*objects, **kwargs)
        for sink in self._sinks:
            sink.print(*objects, **kwargs)

    @contextmanager
    def tee(self, path: Path):
        """Append everything printed inside the block to *path*, without colors.

        Args:
            path: Log file to append to. Parent directories are created.

        Yields:
            The log file path.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as fh:
            sink = Console(file=fh, no_color=True, width=LOG_FILE_WIDTH, soft_wrap=True)
            self._sinks.append(sink)
            try:
                yield path
            finally:
                self._sinks.remove(sink)


console = TeeConsole(Console(stderr=True))
logger = logging.getLogger("cluster_manager")
