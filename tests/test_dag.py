"""
Unit tests for StageGraph ordering, cycle detection and dependents.
"""

import pytest

from models.errors import CycleError, DefinitionError, DuplicateIdError
from models.schemas import StageDefinition, StageKind
from utils.dag import StageGraph


def make_stage(stage_id, *needs):
    return StageDefinition(id=stage_id, kind=StageKind.CACHE_INVALIDATE, needs=tuple(needs))


@pytest.fixture
def diamond():
    return StageGraph([
        make_stage("build"),
        make_stage("api", "build"),
        make_stage("web", "build"),
        make_stage("invalidate", "api", "web"),
    ])


class TestReadyStages:

    def test_roots_ready_first(self, diamond):
        assert diamond.ready_stages(set()) == ["build"]

    def test_ready_is_sorted_by_id(self, diamond):
        assert diamond.ready_stages({"build"}) == ["api", "web"]

    def test_waits_for_every_need(self, diamond):
        assert diamond.ready_stages({"build", "api"}) == ["web"]
        assert diamond.ready_stages({"build", "api", "web"}) == ["invalidate"]

    def test_iterating_yields_each_stage_exactly_once(self, diamond):
        completed = set()
        seen = []
        while not diamond.is_complete(completed):
            ready = diamond.ready_stages(completed)
            assert ready, "graph stalled before completion"
            seen.extend(ready)
            completed.update(ready)
        assert sorted(seen) == ["api", "build", "invalidate", "web"]
        assert len(seen) == len(set(seen))

    def test_is_complete(self, diamond):
        assert not diamond.is_complete({"build", "api", "web"})
        assert diamond.is_complete({"build", "api", "web", "invalidate"})


class TestAddStage:

    def test_duplicate_id_rejected(self):
        graph = StageGraph([make_stage("a")])
        with pytest.raises(DuplicateIdError):
            graph.add_stage(make_stage("a"))

    def test_two_stage_cycle_rejected(self):
        graph = StageGraph([make_stage("a", "b")])
        with pytest.raises(CycleError):
            graph.add_stage(make_stage("b", "a"))
        assert "b" not in graph

    def test_self_dependency_rejected(self):
        with pytest.raises(CycleError):
            StageGraph([make_stage("a", "a")])

    def test_longer_cycle_rejected(self):
        graph = StageGraph([make_stage("a", "c"), make_stage("b", "a")])
        with pytest.raises(CycleError):
            graph.add_stage(make_stage("c", "b"))

    def test_cycle_error_is_a_definition_error(self):
        assert issubclass(CycleError, DefinitionError)

    def test_forward_reference_allowed_until_validate(self):
        graph = StageGraph([make_stage("deploy", "image")])
        with pytest.raises(DefinitionError, match="unknown stage"):
            graph.validate()
        graph.add_stage(make_stage("image"))
        graph.validate()


class TestQueries:

    def test_dependents_are_transitive(self, diamond):
        assert diamond.dependents_of("build") == ["api", "invalidate", "web"]
        assert diamond.dependents_of("web") == ["invalidate"]
        assert diamond.dependents_of("invalidate") == []

    def test_topological_order_respects_needs(self, diamond):
        order = diamond.topological_order()
        assert order.index("build") < order.index("api") < order.index("invalidate")
        assert order.index("web") < order.index("invalidate")

    def test_unknown_stage_lookup(self, diamond):
        with pytest.raises(KeyError):
            diamond.stage("nope")
