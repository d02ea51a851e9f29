"""Tests for keyring listing aggregation and the keyring client."""

import pytest
from fakes import FakeCluster, make_key

from gossip_rotator.error_mapping import RPCRejectedError, TransientRPCError
from gossip_rotator.infrastructure.consul.client import KeyringPoolResponse
from gossip_rotator.keyring import KeyringClient, KeyringListing

A = make_key(1)
B = make_key(2)


def pool(keys, primary, num_nodes, wan=False):
    return KeyringPoolResponse(
        wan=wan,
        datacenter="dc1",
        keys=keys,
        primary_keys={k: num_nodes for k in primary},
        num_nodes=num_nodes,
    )


class TestKeyringListing:
    def test_single_pool(self):
        listing = KeyringListing.from_pools([pool({A: 3, B: 2}, [A], 3)])

        assert listing.total_members == 3
        assert listing.pools == 1
        assert listing.is_propagated(A)
        assert not listing.is_propagated(B)
        assert listing.primary_keys == [A]
        assert listing.is_sole_primary(A)
        assert [e.key for e in listing.others(A)] == [B]

    def test_counts_summed_across_pools(self):
        listing = KeyringListing.from_pools(
            [
                pool({A: 3, B: 3}, [A], 3),
                pool({A: 2, B: 1}, [A], 2, wan=True),
            ]
        )

        assert listing.total_members == 5
        assert listing.pool_names == ("lan:dc1", "wan:dc1")
        assert listing.get(A).members == 5
        assert listing.is_propagated(A)
        assert not listing.is_propagated(B)

    def test_primary_only_when_primary_in_every_pool(self):
        listing = KeyringListing.from_pools(
            [
                pool({A: 3, B: 3}, [B], 3),
                pool({A: 2, B: 2}, [A], 2, wan=True),
            ]
        )

        assert listing.primary_keys == []
        assert not listing.is_sole_primary(A)
        assert not listing.is_sole_primary(B)

    def test_absent_key_not_propagated(self):
        listing = KeyringListing.from_pools([pool({A: 3}, [A], 3)])

        assert listing.get(B) is None
        assert not listing.is_propagated(B)

    def test_empty_cluster_never_propagated(self):
        listing = KeyringListing.from_pools([pool({A: 0}, [], 0)])

        assert not listing.is_propagated(A)

    def test_entry_repr_hides_key(self):
        listing = KeyringListing.from_pools([pool({A: 3}, [A], 3)])

        assert A not in repr(listing)
        assert len(listing.entries[0].short) == 12


class TestKeyringClient:
    def setup_method(self):
        self.cluster = FakeCluster(keys=[A], primary=A)
        self.client = KeyringClient(self.cluster, timeout=2.0)

    def test_install_promote_remove(self):
        self.client.install(B)
        self.client.promote(B)
        self.client.remove(A)

        assert self.cluster.primary == B
        assert set(self.cluster.keys) == {B}

    def test_install_present_key_is_noop(self):
        self.client.install(A)

        assert self.cluster.keys == {A: 3}

    def test_remove_not_found_is_success(self):
        self.cluster.fail("remove", RPCRejectedError("unknown key", operation="remove", status_code=404))

        self.client.remove(B)

    def test_remove_rejection_propagates(self):
        with pytest.raises(RPCRejectedError) as exc_info:
            self.client.remove(A)

        assert exc_info.value.status_code == 400

    def test_errors_raised_unchanged(self):
        self.cluster.fail("install", TransientRPCError("timeout", operation="install"))

        with pytest.raises(TransientRPCError):
            self.client.install(B)
