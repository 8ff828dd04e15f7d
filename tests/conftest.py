"""Shared pytest fixtures for routewire tests."""

import pytest

from routewire.casting import TypeCaster
from routewire.container import Container
from routewire.providers import DependenciesExtractor
from routewire.routing import RouteScanner


@pytest.fixture()
def container() -> Container:
    """Fresh container with nothing but itself registered."""
    return Container()


@pytest.fixture()
def debug_container() -> Container:
    """Container logging every provider instantiation."""
    return Container(debug=True)


@pytest.fixture()
def dependencies_extractor() -> DependenciesExtractor:
    """DependenciesExtractor instance."""
    return DependenciesExtractor()


@pytest.fixture()
def scanner() -> RouteScanner:
    return RouteScanner()


@pytest.fixture()
def caster() -> TypeCaster:
    """Lenient caster."""
    return TypeCaster(strict=False)


@pytest.fixture()
def strict_caster() -> TypeCaster:
    return TypeCaster(strict=True)
