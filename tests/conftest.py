"""Shared pytest fixtures."""

import pytest

from glitch.core.graph_model import GraphModel
from glitch.core.layout import LayeredLayout, LayoutEngine
from glitch.core.store import EntityStore
from glitch.server.session import GraphSession


@pytest.fixture
def store():
    return EntityStore()


@pytest.fixture
def model(store):
    return GraphModel(store)


@pytest.fixture
def engine(store):
    """Layout engine writing derived components into the shared store."""
    return LayoutEngine(LayeredLayout(), store=store)


@pytest.fixture
def session():
    return GraphSession()

