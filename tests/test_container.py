import logging
from abc import ABC, abstractmethod
from typing import Annotated, Any, Optional

import pytest

from routewire.container import Container, injectable, injectable_scope
from routewire.exceptions import (
    AsyncDependencyInSyncContextError,
    CircularDependencyError,
    DuplicateTokenError,
    InvalidRegistrationError,
    UnknownTokenError,
    UnresolvableDependencyError,
)
from routewire.markers import Inject, Injected
from routewire.scope import Scope


class Database:
    pass


class Repository:
    def __init__(self, db: Database) -> None:
        self.db = db


class UserService:
    def __init__(
        self,
        repo: Repository,
        config: Annotated[dict[str, Any], Inject("CONFIG")],
    ) -> None:
        self.repo = repo
        self.config = config


class CycleA:
    def __init__(self, b: "CycleB") -> None:
        self.b = b


class CycleB:
    def __init__(self, c: "CycleC") -> None:
        self.c = c


class CycleC:
    def __init__(self, a: CycleA) -> None:
        self.a = a


class SelfReferencing:
    def __init__(self, me: "SelfReferencing") -> None:
        self.me = me


class Untyped:
    def __init__(self, value) -> None:  # noqa: ANN001
        self.value = value


class NeedsScalar:
    def __init__(self, name: str) -> None:
        self.name = name


class ScalarWithDefault:
    def __init__(self, name: str = "fallback") -> None:
        self.name = name


class Cache:
    pass


class OptionalCache:
    def __init__(self, cache: Optional[Cache] = None) -> None:
        self.cache = cache


class Client:
    def __init__(self, db: Database) -> None:
        self.db = db


class AsyncResource:
    def __init__(self, ready: bool) -> None:
        self.ready = ready


class NeedsAsyncResource:
    def __init__(self, resource: AsyncResource) -> None:
        self.resource = resource


class AbstractPort(ABC):
    @abstractmethod
    def send(self) -> None: ...


def make_client(db: Database) -> Client:
    return Client(db)


async def make_async_resource() -> AsyncResource:
    return AsyncResource(ready=True)


def make_untyped():  # noqa: ANN201
    return object()


@pytest.fixture()
def service_container(container: Container) -> Container:
    container.add_concrete(Database)
    container.add_concrete(Repository)
    container.add_concrete(UserService)
    container.add_instance({"dsn": "sqlite://"}, provides="CONFIG")
    return container


class TestRegistration:
    def test_add_concrete_returns_class(self, container: Container) -> None:
        assert container.add_concrete(Database) is Database
        assert Database in container.registry

    def test_duplicate_token_is_refused(self, container: Container) -> None:
        container.add_concrete(Database)

        with pytest.raises(DuplicateTokenError, match="'Database' is already registered"):
            container.add_concrete(Database)

    def test_registration_after_freeze_is_refused(self, container: Container) -> None:
        container.freeze()

        with pytest.raises(InvalidRegistrationError, match="frozen"):
            container.add_concrete(Database)

    def test_add_concrete_rejects_non_class(self, container: Container) -> None:
        with pytest.raises(InvalidRegistrationError, match="must be a class"):
            container.add_concrete(make_client)  # type: ignore[arg-type]

    def test_add_concrete_rejects_abstract_class(self, container: Container) -> None:
        with pytest.raises(InvalidRegistrationError, match="abstract"):
            container.add_concrete(AbstractPort)

    def test_add_instance_requires_token(self, container: Container) -> None:
        with pytest.raises(InvalidRegistrationError):
            container.add_instance(1, provides=None)

    def test_add_factory_infers_token_from_return_annotation(self, container: Container) -> None:
        container.add_concrete(Database)
        container.add_factory(make_client)

        client = container.resolve(Client)

        assert isinstance(client, Client)
        assert isinstance(client.db, Database)

    def test_add_factory_without_token_is_refused(self, container: Container) -> None:
        with pytest.raises(InvalidRegistrationError, match="Unable to infer"):
            container.add_factory(make_untyped)

    def test_injectable_method_decorator(self, container: Container) -> None:
        @container.injectable
        class Plain:
            pass

        @container.injectable(scope=Scope.LOCAL)
        class PerCall:
            pass

        assert container.resolve(Plain) is container.resolve(Plain)
        assert container.resolve(PerCall) is not container.resolve(PerCall)

    def test_injectable_marker_records_scope(self) -> None:
        @injectable
        class Shared:
            pass

        @injectable(scope=Scope.LOCAL)
        class PerCall:
            pass

        assert injectable_scope(Shared) is Scope.SHARED
        assert injectable_scope(PerCall) is Scope.LOCAL
        assert injectable_scope(Database) is None

    def test_register_marked_dependencies_walks_the_graph(self, container: Container) -> None:
        @injectable
        class Leaf:
            pass

        @injectable(scope=Scope.LOCAL)
        class Branch:
            def __init__(self, leaf: Leaf) -> None:
                self.leaf = leaf

        class Root:
            def __init__(self, branch: Branch) -> None:
                self.branch = branch

        container.add_concrete(Root)

        registered = container.register_marked_dependencies()

        assert set(registered) == {Leaf, Branch}
        assert container.registry.lookup(Branch).scope is Scope.LOCAL
        assert isinstance(container.resolve(Root).branch.leaf, Leaf)


class TestResolve:
    def test_resolves_dependency_graph(self, service_container: Container) -> None:
        service = service_container.resolve(UserService)

        assert isinstance(service.repo, Repository)
        assert isinstance(service.repo.db, Database)
        assert service.config == {"dsn": "sqlite://"}

    def test_shared_instances_are_reused(self, service_container: Container) -> None:
        first = service_container.resolve(UserService)
        second = service_container.resolve(UserService)

        assert first is second
        assert first.repo.db is service_container.resolve(Database)

    def test_string_token_resolves_value(self, service_container: Container) -> None:
        assert service_container.resolve("CONFIG") == {"dsn": "sqlite://"}

    def test_container_resolves_itself(self, container: Container) -> None:
        assert container.resolve(Container) is container

    def test_unknown_token(self, container: Container) -> None:
        with pytest.raises(UnknownTokenError, match="Injection token 'MISSING' is not registered"):
            container.resolve("MISSING")

    def test_unknown_dependency(self, container: Container) -> None:
        container.add_concrete(Repository)

        with pytest.raises(UnknownTokenError) as exc_info:
            container.resolve(Repository)

        assert exc_info.value.token_name == "Database"

    def test_separate_containers_do_not_share_instances(self) -> None:
        first = Container()
        second = Container()
        first.add_concrete(Database)
        second.add_concrete(Database)

        assert first.resolve(Database) is not second.resolve(Database)

    def test_optional_dependency_with_default_is_skipped(self, container: Container) -> None:
        container.add_concrete(OptionalCache)

        assert container.resolve(OptionalCache).cache is None

    def test_optional_dependency_is_injected_when_registered(self, container: Container) -> None:
        container.add_concrete(Cache)
        container.add_concrete(OptionalCache)

        assert isinstance(container.resolve(OptionalCache).cache, Cache)

    def test_scalar_with_default_keeps_default(self, container: Container) -> None:
        container.add_concrete(ScalarWithDefault)

        assert container.resolve(ScalarWithDefault).name == "fallback"

    def test_resolve_arguments(self, service_container: Container) -> None:
        def handler(repo: Injected[Repository], config: Annotated[dict, Inject("CONFIG")]) -> None: ...

        dependencies = service_container.extractor.extract_from_factory(handler)
        arguments = service_container.resolve_arguments(dependencies, owner="handler")

        assert arguments["repo"] is service_container.resolve(Repository)
        assert arguments["config"] == {"dsn": "sqlite://"}

    def test_debug_logs_each_instantiation(
        self,
        debug_container: Container,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        debug_container.add_concrete(Database)
        debug_container.add_concrete(Repository)

        with caplog.at_level(logging.DEBUG, logger="routewire.container"):
            debug_container.resolve(Repository)
            debug_container.resolve(Repository)

        messages = [record.getMessage() for record in caplog.records]
        assert messages == ["load Database {0}", "load Repository {1}"]


class TestCycles:
    def test_three_step_cycle_reports_full_chain(self, container: Container) -> None:
        container.add_concrete(CycleA)
        container.add_concrete(CycleB)
        container.add_concrete(CycleC)

        with pytest.raises(CircularDependencyError) as exc_info:
            container.resolve(CycleA)

        assert exc_info.value.chain == ["CycleA", "CycleB", "CycleC", "CycleA"]
        assert str(exc_info.value) == "Circular dependency detected: CycleA -> CycleB -> CycleC -> CycleA"

    def test_self_cycle(self, container: Container) -> None:
        container.add_concrete(SelfReferencing)

        with pytest.raises(CircularDependencyError) as exc_info:
            container.resolve(SelfReferencing)

        assert exc_info.value.chain == ["SelfReferencing", "SelfReferencing"]

    def test_local_cycle_is_still_rejected(self, container: Container) -> None:
        container.add_concrete(CycleA, scope=Scope.LOCAL)
        container.add_concrete(CycleB, scope=Scope.LOCAL)
        container.add_concrete(CycleC, scope=Scope.LOCAL)

        with pytest.raises(CircularDependencyError):
            container.resolve(CycleB)

    def test_cycle_leaves_no_partial_shared_instance(self, container: Container) -> None:
        container.add_concrete(CycleA)
        container.add_concrete(CycleB)
        container.add_concrete(CycleC)

        with pytest.raises(CircularDependencyError):
            container.resolve(CycleA)

        assert container.scopes.shared_tokens() == []


class TestUnresolvable:
    def test_missing_annotation(self, container: Container) -> None:
        container.add_concrete(Untyped)

        with pytest.raises(UnresolvableDependencyError) as exc_info:
            container.resolve(Untyped)

        assert exc_info.value.owner == "Untyped"
        assert exc_info.value.parameter == "value"

    def test_scalar_without_token(self, container: Container) -> None:
        container.add_concrete(NeedsScalar)

        with pytest.raises(UnresolvableDependencyError, match="'name' of 'NeedsScalar'"):
            container.resolve(NeedsScalar)


class TestAsyncFactories:
    def test_sync_resolve_of_async_factory_fails(self, container: Container) -> None:
        container.add_factory(make_async_resource)

        with pytest.raises(AsyncDependencyInSyncContextError, match="AsyncResource"):
            container.resolve(AsyncResource)

    def test_sync_resolve_of_async_dependency_fails(self, container: Container) -> None:
        container.add_factory(make_async_resource)
        container.add_concrete(NeedsAsyncResource)

        with pytest.raises(AsyncDependencyInSyncContextError):
            container.resolve(NeedsAsyncResource)

    @pytest.mark.asyncio
    async def test_aresolve_awaits_async_factory(self, container: Container) -> None:
        container.add_factory(make_async_resource)
        container.add_concrete(NeedsAsyncResource)

        consumer = await container.aresolve(NeedsAsyncResource)

        assert consumer.resource.ready is True
        assert consumer.resource is await container.aresolve(AsyncResource)

    @pytest.mark.asyncio
    async def test_aresolve_arguments(self, container: Container) -> None:
        container.add_factory(make_async_resource)

        def handler(resource: Injected[AsyncResource]) -> None: ...

        dependencies = container.extractor.extract_from_factory(handler)
        arguments = await container.aresolve_arguments(dependencies, owner="handler")

        assert arguments["resource"].ready is True
