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

"""Typed keyring operations over the cluster API."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .change_detector import fingerprint, short_fingerprint
from .error_mapping import ClusterAPIError
from .infrastructure.consul.client import ClusterAPI, KeyringPoolResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyringEntry:
    """One installed key and how many members report holding it."""

    key: str = field(repr=False)
    primary: bool
    members: int

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.key.encode("ascii"))

    @property
    def short(self) -> str:
        return short_fingerprint(self.fingerprint)


@dataclass(frozen=True)
class KeyringListing:
    """Keyring state aggregated across gossip pools.

    ``total_members`` comes from the same response as the entries, so
    propagation is judged against a consistent snapshot.
    """

    entries: tuple[KeyringEntry, ...]
    total_members: int
    pools: int = 1
    pool_names: tuple[str, ...] = ()

    @classmethod
    def from_pools(cls, pools: Iterable[KeyringPoolResponse]) -> KeyringListing:
        pools = list(pools)
        counts: dict[str, int] = {}
        seen_in: dict[str, int] = {}
        primary_in: dict[str, int] = {}
        for pool in pools:
            for key, count in pool.keys.items():
                counts[key] = counts.get(key, 0) + count
                seen_in[key] = seen_in.get(key, 0) + 1
            for key in pool.primary_keys:
                primary_in[key] = primary_in.get(key, 0) + 1

        entries = tuple(
            KeyringEntry(key=key, primary=primary_in.get(key, 0) == seen_in[key], members=counts[key])
            for key in sorted(counts)
        )
        return cls(
            entries=entries,
            total_members=sum(p.num_nodes for p in pools),
            pools=len(pools),
            pool_names=tuple(p.pool_name for p in pools),
        )

    def get(self, key: str) -> KeyringEntry | None:
        for entry in self.entries:
            if entry.key == key:
                return entry
        return None

    def is_propagated(self, key: str) -> bool:
        """True when every known member reports holding ``key``."""
        entry = self.get(key)
        return entry is not None and self.total_members > 0 and entry.members >= self.total_members

    @property
    def primary_keys(self) -> list[str]:
        return [entry.key for entry in self.entries if entry.primary]

    def is_sole_primary(self, key: str) -> bool:
        return self.primary_keys == [key]

    def others(self, key: str) -> list[KeyringEntry]:
        return [entry for entry in self.entries if entry.key != key]


class KeyringClient:
    """List/install/promote/remove against the cluster's shared keyring.

    Each call is a single blocking RPC bounded by ``timeout``. Failures are
    raised unchanged; classification and retries belong to the orchestrator.
    """

    def __init__(self, cluster: ClusterAPI, timeout: float = 10.0):
        self.cluster = cluster
        self.timeout = timeout

    def list(self) -> KeyringListing:
        return KeyringListing.from_pools(self.cluster.keyring_list(timeout=self.timeout))

    def install(self, key: str) -> None:
        """Install ``key``. Installing a present key is a no-op success."""
        logger.debug("Installing key", extra={"fields": {"fingerprint": _short(key)}})
        self.cluster.keyring_install(key, timeout=self.timeout)

    def promote(self, key: str) -> None:
        """Make ``key`` primary. Fails while any member lacks the key."""
        logger.debug("Promoting key", extra={"fields": {"fingerprint": _short(key)}})
        self.cluster.keyring_use(key, timeout=self.timeout)

    def remove(self, key: str) -> None:
        """Remove ``key``. Removing an absent key is a no-op success."""
        logger.debug("Removing key", extra={"fields": {"fingerprint": _short(key)}})
        try:
            self.cluster.keyring_remove(key, timeout=self.timeout)
        except ClusterAPIError as e:
            if e.status_code == 404:
                return
            raise


def _short(key: str) -> str:
    return short_fingerprint(fingerprint(key.encode("ascii")))
