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

"""Timeout-bounded readiness polling."""

from __future__ import annotations

import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass

import requests
import sh
from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from cluster_manager import console, logger
from cluster_manager.errors import ConvergenceTimeoutError

# Errors a status check may raise while the thing it probes is still coming up.
PROBE_ERRORS = (sh.ErrorReturnCode, OSError, subprocess.SubprocessError, requests.RequestException)


@dataclass(frozen=True)
class PollResult:
    """Outcome of a readiness poll.

    Attributes:
        ready: True if the predicate held before the deadline.
        attempts: Number of predicate evaluations.
        elapsed: Seconds spent polling.
        description: What was being awaited.
        timeout: The budget in seconds.
        last_error: Message of the last probe error, if the predicate raised.
    """

    ready: bool
    attempts: int
    elapsed: float
    description: str
    timeout: float
    last_error: str | None = None

    def __bool__(self) -> bool:
        return self.ready

    def raise_for_timeout(self) -> None:
        """Raise ConvergenceTimeoutError if the poll timed out."""
        if not self.ready:
            raise ConvergenceTimeoutError(self.description, self.timeout)


def wait_until(
    predicate: Callable[[], bool],
    *,
    timeout: float,
    interval: float,
    description: str = "condition",
    quiet: bool = False,
) -> PollResult:
    """Evaluate *predicate* every *interval* seconds until it holds or *timeout* elapses.

    Returns as soon as the predicate first holds. A deadline miss is returned
    as a not-ready result rather than raised, so each caller decides whether a
    timeout is fatal for its phase. The poll never takes longer than
    ``timeout + interval`` plus the duration of a single predicate call.

    Args:
        predicate: Side-effect-free status check.
        timeout: Budget in seconds.
        interval: Seconds between evaluations.
        description: What is being awaited, for messages.
        quiet: Suppress console progress lines.

    Returns:
        PollResult describing the outcome.
    """
    attempts = 0
    last_error: str | None = None
    start = time.monotonic()

    def _probe() -> bool:
        nonlocal attempts, last_error
        attempts += 1
        try:
            return bool(predicate())
        except PROBE_ERRORS as exc:
            last_error = str(exc).strip() or type(exc).__name__
            logger.debug("probe for %s raised: %s", description, last_error)
            return False

    if not quiet:
        console.print(f"[yellow]\u2139\ufe0f  Waiting for {description} (timeout {timeout:g}s)...[/yellow]")

    retrying = Retrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda ok: not ok),
    )
    try:
        retrying(_probe)
        ready = True
    except RetryError:
        ready = False

    result = PollResult(ready, attempts, time.monotonic() - start, description, timeout, last_error)
    if not quiet:
        if ready:
            console.print(f"[green]\u2705 {description.capitalize()} ready after {result.elapsed:.0f}s[/green]")
        else:
            console.print(f"[yellow]\u26a0\ufe0f  Timed out after {timeout:g}s waiting for {description}[/yellow]")
    return result
