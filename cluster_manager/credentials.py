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

"""Runtime credentials file parsing."""

from __future__ import annotations

from pathlib import Path

from cluster_manager import logger
from cluster_manager.constants import CRED_KEY_ACCESS_ID, CRED_KEY_ROOT_URL, CRED_KEY_SECRET_KEY
from cluster_manager.models import RuntimeCredentials


def parse_credentials(text: str) -> RuntimeCredentials:
    """Parse ``key = value`` lines into RuntimeCredentials.

    Blank lines and ``#`` comments are ignored; whitespace and surrounding
    quotes are stripped from values. Unknown keys are ignored.

    Args:
        text: Credentials file content.

    Returns:
        Parsed credentials; fields not present are empty strings.
    """
    values: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        values[key.strip()] = value.strip().strip("'\"")
    return RuntimeCredentials(
        access_id=values.get(CRED_KEY_ACCESS_ID, ""),
        secret_key=values.get(CRED_KEY_SECRET_KEY, ""),
        root_url=values.get(CRED_KEY_ROOT_URL, ""),
    )


def load_credentials(path: Path) -> RuntimeCredentials:
    """Read credentials from *path*; a missing file yields empty credentials."""
    if not path.exists():
        logger.info("Credentials file %s not found", path)
        return RuntimeCredentials()
    return parse_credentials(path.read_text())
