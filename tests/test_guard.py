"""Tests for the method guard."""

import pytest

from aclguard.acl.models import ResourceIdentity
from aclguard.acl.permissions import PermissionMask
from aclguard.authz.context import SecurityContext
from aclguard.authz.guard import InvocationState
from aclguard.errors import AccessDenied, AuthenticationRequired, StorageUnavailable

FULL_RUN = [
    InvocationState.PRE_CHECK,
    InvocationState.EXECUTING,
    InvocationState.POST_CHECK,
    InvocationState.RETURNED,
]


def document(args):
    return ResourceIdentity(type="Document", id=args["doc_id"])


@pytest.fixture
def owned_doc(engine, alice, doc):
    engine.create_resource(alice, doc)
    return doc


@pytest.fixture
def updates(engine):
    """A guarded update that records every call it actually executes."""
    calls = []

    @engine.protect("document.update", resource=document)
    def update_document(doc_id, text):
        calls.append((doc_id, text))
        return text

    return update_document, calls


class TestPreCheck:
    """Decisions made before the call."""

    def test_denied_call_never_runs(self, engine, owned_doc, carol, updates):
        """A denied pre-check raises and the body has no effect."""
        update_document, calls = updates

        with pytest.raises(AccessDenied) as exc_info:
            update_document(1, "hello", principal=carol)

        assert exc_info.value.reason_code == "acl_denied"
        assert calls == []
        assert engine.guard.recent_invocations[-1].history == [
            InvocationState.PRE_CHECK,
            InvocationState.DENIED,
        ]

    def test_granted_call_runs_through_all_states(self, engine, owned_doc, alice, bob, updates):
        """A granted call goes PRE_CHECK, EXECUTING, POST_CHECK, RETURNED."""
        update_document, calls = updates
        engine.grant_permission(alice, owned_doc, "bob", PermissionMask.WRITE)

        assert update_document(1, "edited", principal=bob) == "edited"

        invocation = engine.guard.recent_invocations[-1]
        assert calls == [(1, "edited")]
        assert invocation.history == FULL_RUN
        assert invocation.principal_id == "bob"
        assert invocation.decisions[0].granted

    def test_missing_principal_raises(self, engine, owned_doc, updates):
        """Without any principal the call is rejected as unauthenticated."""
        update_document, calls = updates

        with pytest.raises(AuthenticationRequired):
            update_document(1, "hello")

        assert calls == []
        assert engine.guard.recent_invocations[-1].state == InvocationState.DENIED

    def test_principal_from_security_context(self, engine, owned_doc, alice, updates):
        """The context principal is used when none is passed."""
        update_document, calls = updates

        with SecurityContext.principal_scope(alice):
            update_document(1, "mine")

        assert calls == [(1, "mine")]
        assert SecurityContext.get_principal() is None

    def test_function_declaring_principal_receives_it(self, engine, bob):
        """A declared ``principal`` parameter is passed through."""
        @engine.protect("report.view")
        def whoami(principal):
            return principal.principal_id

        assert whoami(principal=bob) == "bob"

    def test_storage_fault_raises_storage_unavailable(self, engine, storage, owned_doc, alice, updates):
        """A storage fault is not reported as a plain denial."""
        update_document, calls = updates
        engine.cache.clear()
        storage.failing = True

        with pytest.raises(StorageUnavailable):
            update_document(1, "hello", principal=alice)
        assert calls == []

    def test_unknown_filter_argument_rejected(self, engine):
        """pre_filter must name a real argument."""
        with pytest.raises(ValueError):
            @engine.protect("document.bulk", pre_filter="documents")
            def archive(items):
                return items

    def test_guard_config_is_exposed(self, engine, updates):
        """Wrapped functions expose what they check."""
        update_document, _ = updates
        assert update_document.guard_config.operation == "document.update"
        assert update_document.__name__ == "update_document"

    def test_raising_function_ends_failed(self, engine, bob):
        """An exception from the wrapped function leaves a terminal state."""
        @engine.protect("report.view")
        def broken():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            broken(principal=bob)

        invocation = engine.guard.recent_invocations[-1]
        assert invocation.state == InvocationState.FAILED
        assert invocation.history == [
            InvocationState.PRE_CHECK,
            InvocationState.EXECUTING,
            InvocationState.FAILED,
        ]



class TestFilters:
    """Pre- and post-filtering of collections."""

    def test_pre_filter_drops_unpermitted_elements(self, engine, alice):
        """Only permitted elements reach the function."""
        received = []

        @engine.protect("document.bulk", pre_filter="documents", filter_operation="document.view")
        def archive(documents):
            received.extend(documents)
            return len(documents)

        documents = [
            {"id": 1, "owner": "alice"},
            {"id": 2, "owner": "bob"},
            {"id": 3, "owner": "alice"},
        ]

        assert archive(documents, principal=alice) == 2
        assert [d["id"] for d in received] == [1, 3]

    def test_post_filter_keeps_order_and_type(self, engine, bob):
        """Filtered results keep their order and collection type."""
        @engine.protect("document.bulk", post_filter=True, filter_operation="document.view")
        def list_documents():
            return (
                {"id": 1, "owner": "bob"},
                {"id": 2, "owner": "alice"},
                {"id": 3, "owner": "bob"},
            )

        result = list_documents(principal=bob)

        assert isinstance(result, tuple)
        assert [d["id"] for d in result] == [1, 3]

    def test_post_filter_with_acl_resources(self, engine, alice, bob):
        """resource_of maps results to ACL resources."""
        docs = [ResourceIdentity(type="Document", id=i) for i in range(3)]
        for d in docs:
            engine.create_resource(alice, d)
        engine.grant_permission(alice, docs[2], "bob", PermissionMask.READ)

        @engine.protect(
            "document.bulk",
            post_filter=True,
            filter_operation="document.read",
            resource_of=lambda d: d,
        )
        def list_documents():
            return list(docs)

        assert list_documents(principal=bob) == [docs[2]]

    @pytest.fixture
    def stored_docs(self, engine, alice):
        docs = [ResourceIdentity(type="Document", id=i) for i in range(3)]
        for d in docs:
            engine.create_resource(alice, d)
        return docs

    def test_pre_filter_storage_failure_raises(self, engine, storage, alice, stored_docs):
        """An outage while pre-filtering blocks the call instead of emptying the argument."""
        received = []

        @engine.protect(
            "document.bulk",
            pre_filter="documents",
            filter_operation="document.read",
            resource_of=lambda d: d,
        )
        def archive(documents):
            received.extend(documents)

        storage.failing = True
        with pytest.raises(StorageUnavailable):
            archive(stored_docs, principal=alice)

        assert received == []
        assert engine.guard.recent_invocations[-1].history == [
            InvocationState.PRE_CHECK,
            InvocationState.DENIED,
        ]

    def test_post_filter_storage_failure_raises(self, engine, storage, alice, stored_docs):
        """An outage while post-filtering is raised, not returned as an empty result."""
        @engine.protect(
            "document.bulk",
            post_filter=True,
            filter_operation="document.read",
            resource_of=lambda d: d,
        )
        def list_documents():
            storage.failing = True
            return list(stored_docs)

        with pytest.raises(StorageUnavailable):
            list_documents(principal=alice)

        assert engine.guard.recent_invocations[-1].history == [
            InvocationState.PRE_CHECK,
            InvocationState.EXECUTING,
            InvocationState.POST_CHECK,
            InvocationState.DENIED,
        ]



class TestPostCheck:
    """Decisions on the returned object."""

    @pytest.fixture
    def loaders(self, engine):
        def load(doc_id):
            return {"id": doc_id, "owner": "alice"}

        strict = engine.protect("document.bulk", post_check="document.view")(load)
        lenient = engine.protect(
            "document.bulk", post_check="document.view", on_post_denied="null"
        )(load)
        return strict, lenient

    def test_owner_gets_result(self, engine, alice, loaders):
        """The owner passes the post-check."""
        strict, _ = loaders
        assert strict(7, principal=alice) == {"id": 7, "owner": "alice"}
        assert engine.guard.recent_invocations[-1].history == FULL_RUN

    def test_denied_result_raises(self, engine, bob, loaders):
        """With the deny policy a failed post-check raises."""
        strict, _ = loaders

        with pytest.raises(AccessDenied):
            strict(7, principal=bob)

        assert engine.guard.recent_invocations[-1].history[-1] == InvocationState.DENIED

    def test_denied_result_nulled(self, engine, bob, loaders):
        """With the null policy a failed post-check returns None."""
        _, lenient = loaders

        assert lenient(7, principal=bob) is None
        assert engine.guard.recent_invocations[-1].history == FULL_RUN


class TestAsync:
    """Coroutine functions are guarded the same way."""

    @pytest.mark.asyncio
    async def test_async_granted_and_denied(self, engine, owned_doc, alice, carol):
        """Async functions are checked before they are awaited."""
        calls = []

        @engine.protect("document.update", resource=document)
        async def update_document(doc_id):
            calls.append(doc_id)
            return "ok"

        assert await update_document(1, principal=alice) == "ok"
        with pytest.raises(AccessDenied):
            await update_document(1, principal=carol)

        assert calls == [1]
