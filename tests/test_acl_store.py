"""Tests for ACL storage, resolution and inheritance."""

from __future__ import annotations

import threading

import pytest
from pydantic import ValidationError

from aclguard.acl.models import ResourceIdentity, Sid
from aclguard.acl.permissions import PermissionMask
from aclguard.acl.storage import InMemoryAclStorage
from aclguard.acl.store import AclStore, OrphanPolicy
from aclguard.auth.models import Principal
from aclguard.errors import (
    AclHasChildren,
    InvalidAclHierarchy,
    ResourceAlreadyExists,
    ResourceNotFound,
    StorageUnavailable,
)

READ = PermissionMask.READ
WRITE = PermissionMask.WRITE
DELETE = PermissionMask.DELETE


def user(name: str, *authorities: str) -> Principal:
    return Principal(principal_id=name, authorities=set(authorities))


class TestOwnership:
    """Owner permissions on creation."""

    def test_owner_has_full_permissions_after_creation(self, store, doc):
        """The creator holds every permission, including ADMIN."""
        store.create_acl(doc, owner="user1")
        owner = user("user1")
        for bit in (READ, WRITE, DELETE, PermissionMask.ADMIN, PermissionMask.CREATE):
            assert store.has_permission(doc, owner, bit)

    def test_owner_delete_and_stranger_denied(self, store):
        """user1 may delete their document; user2 may not."""
        d1 = ResourceIdentity(type="Document", id="D1")
        store.create_acl(d1, owner="user1")

        assert store.has_permission(d1, user("user1"), DELETE) is True
        assert store.has_permission(d1, user("user2"), DELETE) is False

    def test_create_twice_raises(self, store, doc):
        """Creating an existing ACL raises ResourceAlreadyExists."""
        store.create_acl(doc, owner="alice")
        with pytest.raises(ResourceAlreadyExists):
            store.create_acl(doc, owner="bob")

    def test_create_under_missing_parent_raises(self, store, doc, folder):
        """The parent must exist."""
        with pytest.raises(ResourceNotFound):
            store.create_acl(doc, owner="alice", parent=folder)

    def test_change_owner_keeps_entries(self, store, doc):
        """Changing the owner does not touch existing entries."""
        store.create_acl(doc, owner="alice")
        acl = store.change_owner(doc, "carol")

        assert acl.identity.owner == Sid.principal("carol")
        assert store.has_permission(doc, user("alice"), DELETE)
        assert not store.has_permission(doc, user("carol"), READ)

    def test_unknown_resource_raises(self, store, doc):
        """Checking a resource without ACL raises ResourceNotFound."""
        with pytest.raises(ResourceNotFound):
            store.has_permission(doc, user("alice"), READ)

    def test_resource_type_cannot_contain_colon(self):
        """A colon in the type would let two identities share a key."""
        with pytest.raises(ValidationError):
            ResourceIdentity(type="Doc:a", id="b")

    def test_colon_in_id_keeps_identities_apart(self, store):
        """Ids may contain colons without colliding with other resources."""
        store.create_acl(ResourceIdentity(type="Doc", id="a:b"), owner="alice")

        assert store.exists(ResourceIdentity(type="Doc", id="a:b"))
        assert not store.exists(ResourceIdentity(type="Doc", id="a"))
        assert ResourceIdentity.from_key("Doc:a:b") == ResourceIdentity(type="Doc", id="a:b")


class TestGrantRevoke:
    """Grant and revoke semantics."""

    def test_grant_read_only(self, store):
        """A READ grant allows READ but not WRITE."""
        d1 = ResourceIdentity(type="Document", id="D1")
        store.create_acl(d1, owner="user1")
        store.grant(d1, "user2", READ)

        assert store.has_permission(d1, user("user2"), READ) is True
        assert store.has_permission(d1, user("user2"), WRITE) is False

    def test_grant_revoke_round_trip(self, store, doc):
        """A revoked grant no longer applies."""
        store.create_acl(doc, owner="alice")
        bob = user("bob")

        store.grant(doc, "bob", WRITE)
        assert store.has_permission(doc, bob, WRITE)

        assert store.revoke(doc, "bob") == 1
        assert not store.has_permission(doc, bob, WRITE)

    def test_repeated_grant_is_idempotent(self, store, doc):
        """Granting the same thing twice keeps a single entry."""
        store.create_acl(doc, owner="alice")
        first = store.grant(doc, "bob", READ)
        second = store.grant(doc, "bob", READ)

        assert first.entry_id == second.entry_id
        assert len(store.read_acl(doc).entries_for(Sid.principal("bob"))) == 1

    def test_revoke_absent_grant_is_noop(self, store, doc):
        """Revoking nothing returns 0 and does not raise."""
        store.create_acl(doc, owner="alice")
        assert store.revoke(doc, "bob") == 0
        assert store.revoke(doc, "bob") == 0

    def test_revoke_removes_all_entries_for_sid(self, store, doc):
        """Revoke removes grants and denies alike."""
        store.create_acl(doc, owner="alice")
        store.grant(doc, "bob", READ)
        store.deny(doc, "bob", WRITE)

        assert store.revoke(doc, "bob") == 2
        assert store.read_acl(doc).entries_for(Sid.principal("bob")) == []

    def test_empty_mask_rejected(self, store, doc):
        """A grant must carry at least one bit."""
        store.create_acl(doc, owner="alice")
        with pytest.raises(ValueError):
            store.grant(doc, "bob", 0)

    def test_grant_by_name(self, store, doc):
        """Masks may be given as names."""
        store.create_acl(doc, owner="alice")
        store.grant(doc, "bob", "read,write")
        assert store.has_permission(doc, user("bob"), READ | WRITE)

    def test_authority_sid(self, store, doc):
        """Entries for an authority apply to every holder."""
        store.create_acl(doc, owner="alice")
        store.grant(doc, Sid.authority("ROLE_EDITOR"), WRITE)

        assert store.has_permission(doc, user("dave", "ROLE_EDITOR"), WRITE)
        assert not store.has_permission(doc, user("erin"), WRITE)

    def test_principal_named_like_authority_does_not_match(self, store, doc):
        """A principal SID never matches an authority of the same name."""
        store.create_acl(doc, owner="alice")
        store.grant(doc, "ROLE_EDITOR", WRITE)

        assert not store.has_permission(doc, user("dave", "ROLE_EDITOR"), WRITE)


class TestEntryOrder:
    """First matching entry decides."""

    def test_earlier_grant_wins_over_later_deny(self, store, doc):
        """Grant then deny: the grant is found first."""
        store.create_acl(doc, owner="alice")
        store.grant(doc, "bob", READ)
        store.deny(doc, "bob", READ)
        assert store.has_permission(doc, user("bob"), READ)

    def test_earlier_deny_wins_over_later_grant(self, store, doc):
        """Deny then grant: the deny is found first."""
        store.create_acl(doc, owner="alice")
        store.deny(doc, "bob", READ)
        store.grant(doc, "bob", READ)
        assert not store.has_permission(doc, user("bob"), READ)

    def test_deny_on_authority_blocks_member(self, store, doc):
        """A deny for an authority blocks principals holding it."""
        store.create_acl(doc, owner="alice")
        store.deny(doc, Sid.authority("ROLE_CONTRACTOR"), READ)
        store.grant(doc, "bob", READ)

        assert not store.has_permission(doc, user("bob", "ROLE_CONTRACTOR"), READ)
        assert store.has_permission(doc, user("bob"), READ)

    def test_bits_collected_across_entries(self, store, doc):
        """READ and WRITE from separate entries satisfy READ|WRITE."""
        store.create_acl(doc, owner="alice")
        store.grant(doc, "bob", READ)
        store.grant(doc, "bob", WRITE)
        assert store.has_permission(doc, user("bob"), READ | WRITE)

    def test_denied_bit_fails_composite_check(self, store, doc):
        """A denied bit fails a multi-bit requirement."""
        store.create_acl(doc, owner="alice")
        store.grant(doc, "bob", READ)
        store.deny(doc, "bob", WRITE)

        assert store.has_permission(doc, user("bob"), READ)
        assert not store.has_permission(doc, user("bob"), READ | WRITE)

    def test_check_reports_matched_entries_and_chain(self, store, doc, folder):
        """The result explains which entries decided."""
        store.create_acl(folder, owner="alice")
        store.create_acl(doc, owner="alice", parent=folder)
        granted = store.grant(folder, "bob", READ)

        result = store.check(doc, user("bob"), READ)

        assert result.granted
        assert result.chain == [doc.key, folder.key]
        assert [e.entry_id for e in result.matched_entries] == [granted.entry_id]
        assert result.cached is False

        again = store.check(doc, user("bob"), READ)
        assert again.granted and again.cached


class TestInheritance:
    """Parent ACLs apply to inheriting children."""

    def test_child_inherits_parent_grant(self, store, doc, folder):
        """Child result equals parent result when the child has no own entry."""
        store.create_acl(folder, owner="alice")
        store.create_acl(doc, owner="alice", parent=folder)
        store.grant(folder, "bob", READ)
        bob = user("bob")

        assert store.has_permission(doc, bob, READ) == store.has_permission(folder, bob, READ)
        assert store.has_permission(doc, bob, READ) is True

    def test_non_inheriting_child_ignores_parent(self, store, doc, folder):
        """entries_inheriting=False stops the walk."""
        store.create_acl(folder, owner="alice")
        store.create_acl(doc, owner="alice", parent=folder, entries_inheriting=False)
        store.grant(folder, "bob", READ)

        assert not store.has_permission(doc, user("bob"), READ)

    def test_child_deny_overrides_parent_grant(self, store, doc, folder):
        """Own entries are scanned before inherited ones."""
        store.create_acl(folder, owner="alice")
        store.create_acl(doc, owner="alice", parent=folder)
        store.grant(folder, "bob", READ)
        store.deny(doc, "bob", READ)

        assert not store.has_permission(doc, user("bob"), READ)

    def test_parent_grant_visible_after_cached_deny(self, store, doc, folder):
        """A cached deny is dropped when an ancestor changes."""
        store.create_acl(folder, owner="alice")
        store.create_acl(doc, owner="alice", parent=folder)
        bob = user("bob")

        assert not store.has_permission(doc, bob, READ)
        store.grant(folder, "bob", READ)
        assert store.has_permission(doc, bob, READ)

        store.revoke(folder, "bob")
        assert not store.has_permission(doc, bob, READ)

    def test_toggle_inheritance_invalidates(self, store, doc, folder):
        """Turning inheritance off takes effect immediately."""
        store.create_acl(folder, owner="alice")
        store.create_acl(doc, owner="alice", parent=folder)
        store.grant(folder, "bob", READ)
        bob = user("bob")

        assert store.has_permission(doc, bob, READ)
        store.set_entries_inheriting(doc, False)
        assert not store.has_permission(doc, bob, READ)

    def test_effective_entries_order(self, store, doc, folder):
        """Own entries come before inherited ones."""
        store.create_acl(folder, owner="alice")
        store.create_acl(doc, owner="carol", parent=folder)

        entries = store.effective_entries(doc)
        assert [e.sid.name for e in entries] == ["carol", "alice"]

    def test_reparent_changes_inherited_entries(self, store, doc, folder):
        """Moving a node under another parent changes what it inherits."""
        other = ResourceIdentity(type="Folder", id="private")
        store.create_acl(folder, owner="alice")
        store.create_acl(other, owner="alice")
        store.create_acl(doc, owner="alice", parent=folder)
        store.grant(folder, "bob", READ)
        bob = user("bob")

        assert store.has_permission(doc, bob, READ)
        store.set_parent(doc, other)
        assert not store.has_permission(doc, bob, READ)

    def test_cycle_rejected(self, store, doc, folder):
        """A node cannot become its own ancestor."""
        store.create_acl(folder, owner="alice")
        store.create_acl(doc, owner="alice", parent=folder)

        with pytest.raises(InvalidAclHierarchy):
            store.set_parent(folder, doc)
        with pytest.raises(InvalidAclHierarchy):
            store.set_parent(folder, folder)


class TestDeleteAcl:
    """Deleting ACLs with children."""

    @pytest.fixture
    def tree(self, store):
        root = ResourceIdentity(type="Folder", id="root")
        mid = ResourceIdentity(type="Folder", id="mid")
        leaf = ResourceIdentity(type="Document", id="leaf")
        store.create_acl(root, owner="alice")
        store.create_acl(mid, owner="alice", parent=root)
        store.create_acl(leaf, owner="carol", parent=mid)
        store.grant(mid, "bob", READ)
        return root, mid, leaf

    def test_reparent_keeps_effective_permissions(self, store, tree):
        """Children move to the grandparent and keep their effective ACL."""
        root, mid, leaf = tree
        bob = user("bob")
        assert store.has_permission(leaf, bob, READ)

        deleted = store.delete_acl(mid)

        assert deleted == [mid.key]
        assert not store.exists(mid)
        assert store.read_acl(leaf).parent == root
        assert store.has_permission(leaf, bob, READ)

    def test_cascade_deletes_subtree(self, store, tree):
        """Cascade removes every descendant."""
        root, mid, leaf = tree

        deleted = store.delete_acl(mid, OrphanPolicy.CASCADE)

        assert set(deleted) == {mid.key, leaf.key}
        assert not store.exists(leaf)
        assert store.exists(root)

    def test_forbid_refuses_with_children(self, store, tree):
        """Forbid raises while children exist and deletes nothing."""
        _, mid, leaf = tree

        with pytest.raises(AclHasChildren) as exc_info:
            store.delete_acl(mid, "forbid")

        assert exc_info.value.children == 1
        assert store.exists(mid) and store.exists(leaf)

    def test_delete_leaf_invalidates_cache(self, store, tree):
        """A deleted resource is not served from cache."""
        _, _, leaf = tree
        assert store.has_permission(leaf, user("carol"), READ)

        store.delete_acl(leaf)

        with pytest.raises(ResourceNotFound):
            store.has_permission(leaf, user("carol"), READ)

    def test_reparent_skips_entries_the_child_already_has(self, store, tree):
        """Materialised entries never duplicate an existing child entry."""
        _, mid, leaf = tree
        store.grant(leaf, "bob", READ)

        store.delete_acl(mid)

        bob_entries = store.read_acl(leaf).entries_for(Sid.principal("bob"))
        assert len(bob_entries) == 1
        assert store.has_permission(leaf, user("bob"), READ)

    def test_deleted_nodes_leave_no_generation_records(self, store, cache):
        """Create and delete cycles do not grow the cache's bookkeeping."""
        for i in range(50):
            resource = ResourceIdentity(type="Document", id=f"tmp-{i}")
            store.create_acl(resource, owner="alice")
            store.has_permission(resource, user("alice"), READ)
            store.delete_acl(resource)

        assert cache.tracked_nodes == 0
        assert len(cache) == 0

    def test_recreated_resource_starts_fresh(self, store, doc):
        """A resource re-created under the same key has none of the old grants."""
        store.create_acl(doc, owner="alice")
        store.grant(doc, "bob", READ)
        assert store.has_permission(doc, user("bob"), READ)

        store.delete_acl(doc)
        store.create_acl(doc, owner="alice")

        assert not store.has_permission(doc, user("bob"), READ)


class TestStorageFaults:
    """Backend failures are reported, never treated as a grant."""

    def test_load_failure_raises_storage_unavailable(self, store, storage, doc):
        """A failing backend surfaces as StorageUnavailable."""
        store.create_acl(doc, owner="alice")
        store.cache.clear()
        storage.failing = True

        with pytest.raises(StorageUnavailable):
            store.has_permission(doc, user("alice"), READ)

    def test_save_failure_raises_storage_unavailable(self, store, storage, doc):
        """Mutations fail loudly too."""
        store.create_acl(doc, owner="alice")
        storage.failing = True

        with pytest.raises(StorageUnavailable):
            store.grant(doc, "bob", READ)


class TestConcurrency:
    """Per-resource serialisation and snapshot reads."""

    def test_concurrent_grants_are_not_lost(self, store, doc):
        """Racing grants on one resource all land."""
        store.create_acl(doc, owner="alice")
        names = [f"user{i}" for i in range(25)]
        barrier = threading.Barrier(len(names))

        def grant(name: str) -> None:
            barrier.wait()
            store.grant(doc, name, READ)

        threads = [threading.Thread(target=grant, args=(n,)) for n in names]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        granted = {e.sid.name for e in store.read_acl(doc).entries}
        assert set(names) <= granted
        for name in names:
            assert store.has_permission(doc, user(name), READ)

    def test_reads_never_see_partial_state(self, cache, doc):
        """Readers observe only states that existed, and the cache ends consistent."""
        storage = InMemoryAclStorage()
        store = AclStore(storage, cache)
        store.create_acl(doc, owner="alice")
        bob = user("bob")
        both = READ | WRITE
        observed: list[tuple[int, ...]] = []
        errors: list[Exception] = []
        stop = threading.Event()

        def writer() -> None:
            for _ in range(200):
                store.grant(doc, "bob", both)
                store.revoke(doc, "bob")
            store.grant(doc, "bob", both)
            stop.set()

        def reader() -> None:
            try:
                while not stop.is_set():
                    store.has_permission(doc, bob, both)
                    masks = tuple(
                        e.mask for e in store.read_acl(doc).entries
                        if e.sid == Sid.principal("bob")
                    )
                    observed.append(masks)
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for t in readers:
            t.start()
        writer()
        for t in readers:
            t.join()

        assert errors == []
        assert set(observed) <= {(), (int(both),)}

        fresh = AclStore(storage)
        assert store.has_permission(doc, bob, both) == fresh.has_permission(doc, bob, both)
        assert store.has_permission(doc, bob, both) is True
