"""Stage dependency graph built on graphlib."""

from __future__ import annotations

import graphlib
from typing import Iterable

from models.errors import CycleError, DefinitionError, DuplicateIdError
from models.schemas import StageDefinition


class StageGraph:
    """Stages and their "needs" edges. A pure query structure; runs nothing."""

    def __init__(self, stages: Iterable[StageDefinition] = ()) -> None:
        self._stages: dict[str, StageDefinition] = {}
        self._needs: dict[str, set[str]] = {}
        for stage in stages:
            self.add_stage(stage)

    def add_stage(self, stage: StageDefinition) -> None:
        """Add a stage. Needs may name stages that are added later."""
        if stage.id in self._stages:
            raise DuplicateIdError(f"Duplicate stage id: {stage.id}")

        candidate = {**self._needs, stage.id: set(stage.needs)}
        try:
            graphlib.TopologicalSorter(candidate).prepare()
        except graphlib.CycleError as e:
            cycle = " -> ".join(e.args[1]) if len(e.args) > 1 else stage.id
            raise CycleError(f"Adding stage {stage.id} creates a cycle: {cycle}") from e

        self._stages[stage.id] = stage
        self._needs[stage.id] = set(stage.needs)

    def validate(self) -> None:
        """Raise if any stage needs an id that was never added."""
        for stage_id in sorted(self._needs):
            missing = self._needs[stage_id] - self._stages.keys()
            if missing:
                raise DefinitionError(
                    f"Stage {stage_id} needs unknown stage(s): {', '.join(sorted(missing))}"
                )

    def ready_stages(self, completed: set[str]) -> list[str]:
        """Stages whose needs are all completed and which are not completed themselves."""
        return sorted(
            stage_id for stage_id, needs in self._needs.items()
            if stage_id not in completed and needs.issubset(completed)
        )

    def is_complete(self, completed: set[str]) -> bool:
        return self._stages.keys() <= completed

    def dependents_of(self, stage_id: str) -> list[str]:
        """Every stage that transitively needs stage_id."""
        found: set[str] = set()
        frontier = [stage_id]
        while frontier:
            current = frontier.pop()
            for other, needs in self._needs.items():
                if current in needs and other not in found:
                    found.add(other)
                    frontier.append(other)
        return sorted(found)

    def topological_order(self) -> list[str]:
        return list(graphlib.TopologicalSorter(self._needs).static_order())

    def stage(self, stage_id: str) -> StageDefinition:
        try:
            return self._stages[stage_id]
        except KeyError:
            raise KeyError(f"Unknown stage id: {stage_id}") from None

    @property
    def stage_ids(self) -> list[str]:
        return sorted(self._stages)

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._stages

    def __len__(self) -> int:
        return len(self._stages)
