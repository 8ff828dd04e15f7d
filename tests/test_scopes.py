from typing import Annotated

import pytest

from routewire.container import Container
from routewire.markers import DeepLocal, Inject, Injected, Local, split_annotated
from routewire.resolution import ResolutionContext
from routewire.scope import Scope, ScopeManager


class Leaf:
    pass


class Middle:
    def __init__(self, leaf: Leaf) -> None:
        self.leaf = leaf


class Root:
    def __init__(self, middle: Middle) -> None:
        self.middle = middle


class PinnedRoot:
    def __init__(self, middle: Middle, leaf: Annotated[Leaf, Inject(scope=Scope.SHARED)]) -> None:
        self.middle = middle
        self.leaf = leaf


class Session:
    pass


class TwoSessions:
    def __init__(self, first: Session, second: Session) -> None:
        self.first = first
        self.second = second


class TaggedConsumer:
    def __init__(self, local_leaf: Local[Leaf], shared_leaf: Injected[Leaf]) -> None:
        self.local_leaf = local_leaf
        self.shared_leaf = shared_leaf


class DeepConsumer:
    def __init__(self, root: DeepLocal[Root]) -> None:
        self.root = root


class MixedConsumer:
    def __init__(self, local_middle: Local[Middle], deep_middle: DeepLocal[Middle]) -> None:
        self.local_middle = local_middle
        self.deep_middle = deep_middle


@pytest.fixture()
def graph_container(container: Container) -> Container:
    container.add_concrete(Leaf)
    container.add_concrete(Middle)
    container.add_concrete(Root)
    return container


class TestScopeManager:
    def test_store_shared_is_write_once(self) -> None:
        manager = ScopeManager()
        first = object()

        assert manager.store_shared("token", first) is first
        assert manager.store_shared("token", object()) is first
        assert manager.get_shared("token") is first
        assert manager.has_shared("token")

    def test_locks_are_created_once_per_token(self) -> None:
        manager = ScopeManager()

        assert manager.sync_lock(Leaf) is manager.sync_lock(Leaf)
        assert manager.sync_lock(Leaf) is not manager.sync_lock(Root)
        assert manager.async_lock(Leaf) is manager.async_lock(Leaf)

    @pytest.mark.parametrize(
        ("parent", "explicit", "provider_default", "expected"),
        [
            (Scope.SHARED, None, Scope.SHARED, Scope.SHARED),
            (Scope.SHARED, None, Scope.LOCAL, Scope.LOCAL),
            (Scope.LOCAL, None, Scope.SHARED, Scope.SHARED),
            (Scope.DEEP_LOCAL, None, Scope.SHARED, Scope.DEEP_LOCAL),
            (Scope.DEEP_LOCAL, Scope.SHARED, Scope.SHARED, Scope.SHARED),
            (Scope.SHARED, Scope.LOCAL, Scope.SHARED, Scope.LOCAL),
        ],
    )
    def test_child_scope_policy(
        self,
        parent: Scope,
        explicit: Scope,
        provider_default: Scope,
        expected: Scope,
    ) -> None:
        assert ScopeManager.child_scope(parent, explicit, provider_default) is expected


class TestMarkers:
    def test_local_marker(self) -> None:
        inner, metadata = split_annotated(Local[Leaf])

        assert inner is Leaf
        assert metadata == (Inject(scope=Scope.LOCAL),)

    def test_deep_local_marker(self) -> None:
        _inner, metadata = split_annotated(DeepLocal[Leaf])

        assert metadata == (Inject(scope=Scope.DEEP_LOCAL),)

    def test_injected_marker_has_no_scope(self) -> None:
        _inner, metadata = split_annotated(Injected[Leaf])

        assert metadata == (Inject(),)


class TestLocal:
    def test_local_provider_builds_per_resolution(self, container: Container) -> None:
        container.add_concrete(Session, scope=Scope.LOCAL)

        assert container.resolve(Session) is not container.resolve(Session)

    def test_local_instance_is_reused_within_one_resolution(self, container: Container) -> None:
        container.add_concrete(Session, scope=Scope.LOCAL)
        container.add_concrete(TwoSessions, scope=Scope.LOCAL)

        consumer = container.resolve(TwoSessions)

        assert consumer.first is consumer.second

    def test_explicit_context_is_shared_between_calls(self, container: Container) -> None:
        container.add_concrete(Session, scope=Scope.LOCAL)
        context = ResolutionContext()

        first = container.resolve(Session, context=context)

        assert container.resolve(Session, context=context) is first
        assert Session in context

    def test_local_does_not_propagate(self, graph_container: Container) -> None:
        first = graph_container.resolve(Middle, scope=Scope.LOCAL)
        second = graph_container.resolve(Middle, scope=Scope.LOCAL)

        assert first is not second
        assert first.leaf is second.leaf is graph_container.resolve(Leaf)

    def test_tags_at_injection_site(self, graph_container: Container) -> None:
        graph_container.add_concrete(TaggedConsumer)

        consumer = graph_container.resolve(TaggedConsumer)

        assert consumer.shared_leaf is graph_container.resolve(Leaf)
        assert consumer.local_leaf is not consumer.shared_leaf


class TestDeepLocal:
    def test_deep_local_rebuilds_untagged_subgraph(self, graph_container: Container) -> None:
        shared_root = graph_container.resolve(Root)

        deep_root = graph_container.resolve(Root, scope=Scope.DEEP_LOCAL)

        assert deep_root is not shared_root
        assert deep_root.middle is not shared_root.middle
        assert deep_root.middle.leaf is not shared_root.middle.leaf

    def test_explicit_tag_wins_over_propagation(self, graph_container: Container) -> None:
        graph_container.add_concrete(PinnedRoot)

        root = graph_container.resolve(PinnedRoot, scope=Scope.DEEP_LOCAL)

        assert root.leaf is graph_container.resolve(Leaf)
        assert root.middle.leaf is not root.leaf

    def test_deep_local_marker(self, graph_container: Container) -> None:
        graph_container.add_concrete(DeepConsumer)

        consumer = graph_container.resolve(DeepConsumer)

        assert consumer.root is not graph_container.resolve(Root)
        assert consumer.root.middle.leaf is not graph_container.resolve(Leaf)

    def test_deep_local_does_not_touch_shared_cache(self, graph_container: Container) -> None:
        graph_container.resolve(Root, scope=Scope.DEEP_LOCAL)

        assert graph_container.scopes.shared_tokens() == []

    def test_deep_local_is_not_served_from_local_entry(self, graph_container: Container) -> None:
        context = ResolutionContext()
        shared_leaf = graph_container.resolve(Leaf)

        local_middle = graph_container.resolve(Middle, scope=Scope.LOCAL, context=context)
        deep_middle = graph_container.resolve(Middle, scope=Scope.DEEP_LOCAL, context=context)

        assert local_middle.leaf is shared_leaf
        assert deep_middle is not local_middle
        assert deep_middle.leaf is not shared_leaf
        assert graph_container.resolve(Middle, scope=Scope.DEEP_LOCAL, context=context) is deep_middle
        assert len(context) == 3

    def test_local_and_deep_local_tags_on_one_consumer(self, graph_container: Container) -> None:
        graph_container.add_concrete(MixedConsumer)

        consumer = graph_container.resolve(MixedConsumer)

        assert consumer.local_middle.leaf is graph_container.resolve(Leaf)
        assert consumer.deep_middle is not consumer.local_middle
        assert consumer.deep_middle.leaf is not consumer.local_middle.leaf
