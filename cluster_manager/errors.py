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

"""Error taxonomy for cluster lifecycle phases."""

from __future__ import annotations

import sh


class PreconditionError(RuntimeError):
    """A required tool, credential, or host property is missing. Raised before any mutation."""


class ConvergenceTimeoutError(RuntimeError):
    """A readiness predicate never held within its time budget.

    Attributes:
        what: Human-readable description of the awaited condition.
        timeout: Budget in seconds that elapsed.
    """

    def __init__(self, what: str, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:g}s waiting for {what}")
        self.what = what
        self.timeout = timeout


class ExternalToolError(RuntimeError):
    """An external command (kubectl, helm, a cluster binary) exited non-zero.

    Attributes:
        command: The command line that failed.
        exit_code: The process exit code.
        output: Combined stdout/stderr of the tool, verbatim.
        diagnostics: Optional ``kubectl describe`` dump of the affected resources.
    """

    def __init__(self, command: str, exit_code: int, output: str = "", diagnostics: str = "") -> None:
        message = f"Command '{command}' failed with exit code {exit_code}"
        if output:
            message = f"{message}:\n{output.rstrip()}"
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.output = output
        self.diagnostics = diagnostics

    @classmethod
    def from_sh(cls, err: sh.ErrorReturnCode, diagnostics: str = "") -> ExternalToolError:
        """Build an ExternalToolError from an ``sh`` failure.

        Args:
            err: The ``sh.ErrorReturnCode`` raised by the command.
            diagnostics: Optional describe output to attach.

        Returns:
            The wrapped error.
        """
        output = _decode(err.stdout) + _decode(err.stderr)
        return cls(err.full_cmd, err.exit_code, output, diagnostics)


def _decode(data: bytes | str | None) -> str:
    if not data:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data
