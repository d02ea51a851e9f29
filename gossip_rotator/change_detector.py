# Copyright 2025 Gossip Rotator Contributors
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

"""Change detection for the gossip key file.

The detector fingerprints the file on every check and reports a change only
when the fingerprint differs from the last *committed* one. Committing happens
after a rotation reaches Done, so a failed rotation is detected again on the
next tick.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .error_mapping import MalformedKeyError

logger = logging.getLogger(__name__)

# AES-128/192/256, the key sizes gossip encryption accepts.
VALID_KEY_SIZES = (16, 24, 32)


def fingerprint(data: bytes) -> str:
    """Deterministic SHA-256 content hash."""
    return hashlib.sha256(data).hexdigest()


def short_fingerprint(value: str) -> str:
    return value[:12]


@dataclass(frozen=True)
class KeyMaterial:
    """Captured secret bytes and their fingerprint."""

    raw: bytes = field(repr=False)
    fingerprint: str

    @classmethod
    def from_bytes(cls, data: bytes) -> KeyMaterial:
        """Validate ``data`` as a base64 gossip key and capture it.

        Raises MalformedKeyError for empty, non-base64 or wrongly sized input.
        """
        raw = data.strip()
        if not raw:
            raise MalformedKeyError("key material is empty")
        try:
            decoded = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedKeyError(f"key material is not valid base64: {e}") from e
        if len(decoded) not in VALID_KEY_SIZES:
            raise MalformedKeyError(f"decoded key is {len(decoded)} bytes, expected one of {VALID_KEY_SIZES}")
        return cls(raw=raw, fingerprint=fingerprint(raw))

    @property
    def key(self) -> str:
        """The key as the cluster API expects it."""
        return self.raw.decode("ascii")

    @property
    def short(self) -> str:
        return short_fingerprint(self.fingerprint)


class ChangeDetector:
    """Reports whether the watched key file holds new key material."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._committed: str | None = None

    @property
    def committed_fingerprint(self) -> str | None:
        return self._committed

    def initialize(self) -> KeyMaterial:
        """Read the file once at startup and commit its fingerprint as the baseline.

        Raises MalformedKeyError if the file cannot be read or is not a key.
        """
        try:
            data = self.path.read_bytes()
        except OSError as e:
            raise MalformedKeyError(f"cannot read key file {self.path}: {e}") from e
        material = KeyMaterial.from_bytes(data)
        self._committed = material.fingerprint
        logger.info(
            "Baseline key fingerprint captured",
            extra={"fields": {"path": str(self.path), "fingerprint": material.short}},
        )
        return material

    def read(self) -> KeyMaterial | None:
        """Read and validate the file; None on read errors or invalid content.

        The file handle is opened per call and never held across ticks.
        """
        try:
            data = self.path.read_bytes()
        except OSError as e:
            logger.warning(f"Unable to read key file {self.path}: {e}")
            return None
        try:
            return KeyMaterial.from_bytes(data)
        except MalformedKeyError as e:
            # Typically a file caught mid-write; the next tick reads it again.
            logger.warning(f"Ignoring key file contents: {e.detail}", extra={"fields": {"path": str(self.path)}})
            return None

    def detect(self) -> KeyMaterial | None:
        """Return the new KeyMaterial if the file changed, else None."""
        material = self.read()
        if material is None:
            return None
        if material.fingerprint == self._committed:
            logger.debug("Key file unchanged", extra={"fields": {"fingerprint": material.short}})
            return None
        logger.info(
            "Key file changed",
            extra={
                "fields": {
                    "previous": short_fingerprint(self._committed) if self._committed else None,
                    "fingerprint": material.short,
                }
            },
        )
        return material

    def commit(self, material: KeyMaterial) -> None:
        """Record ``material`` as the last fully rotated key."""
        self._committed = material.fingerprint
