"""Creation-time validation of workflow definitions."""

from __future__ import annotations

from collections import Counter
from typing import Dict, List

from .contracts import (
    ActionConfig,
    ActionType,
    SplitTestConfig,
    WorkflowDefinition,
)
from .errors import ValidationError


def find_entry_step_ids(definition: WorkflowDefinition) -> List[str]:
    """Return ids of steps that no connection points at."""
    targets = {c.target_step_id for s in definition.steps for c in s.connections}
    return [s.id for s in definition.steps if s.id not in targets]


def _find_cycle(definition: WorkflowDefinition) -> List[str] | None:
    graph: Dict[str, List[str]] = {
        s.id: [c.target_step_id for c in s.connections] for s in definition.steps
    }
    visiting: set[str] = set()
    done: set[str] = set()
    path: List[str] = []

    def visit(node: str) -> List[str] | None:
        visiting.add(node)
        path.append(node)
        for target in graph.get(node, []):
            if target in visiting:
                return path[path.index(target):] + [target]
            if target not in done and target in graph:
                found = visit(target)
                if found:
                    return found
        visiting.discard(node)
        done.add(node)
        path.pop()
        return None

    for node in graph:
        if node not in done:
            found = visit(node)
            if found:
                return found
    return None


def _action_problems(step_id: str, config: ActionConfig) -> List[str]:
    if config.action in (ActionType.ADD_TAG, ActionType.REMOVE_TAG) and not config.tag:
        return [f"Step {step_id}: {config.action.value} requires a tag"]
    if config.action is ActionType.UPDATE_FIELD and not config.field:
        return [f"Step {step_id}: update_field requires a field"]
    if config.action is ActionType.WEBHOOK and not config.url:
        return [f"Step {step_id}: webhook requires a url"]
    return []


def _split_test_problems(step_id: str, config: SplitTestConfig) -> List[str]:
    problems = []
    if not config.variants:
        return [f"Step {step_id}: split test needs at least one variant"]
    total = sum(v.percentage for v in config.variants)
    if total != 100:
        problems.append(
            f"Step {step_id}: variant percentages add up to {total}, expected 100"
        )
    names = Counter(v.name for v in config.variants)
    duplicates = sorted(n for n, count in names.items() if count > 1)
    if duplicates:
        problems.append(f"Step {step_id}: duplicate variant names {duplicates}")
    return problems


def validate_definition(definition: WorkflowDefinition) -> None:
    """Raise :class:`ValidationError` listing every problem found.

    Checks performed: non-empty name and owner, at least one step, unique step
    ids, connections pointing at existing steps, exactly one entry step, no
    cycles and kind-specific configuration.
    """

    problems: List[str] = []
    if not definition.name.strip():
        problems.append("Workflow name is required")
    if not definition.owner.strip():
        problems.append("Workflow owner is required")
    if not definition.steps:
        problems.append("Workflow must have at least one step")
        raise ValidationError(problems)

    ids = Counter(s.id for s in definition.steps)
    duplicates = sorted(i for i, count in ids.items() if count > 1)
    if duplicates:
        problems.append(f"Duplicate step ids: {duplicates}")

    for step in definition.steps:
        for connection in step.connections:
            if connection.target_step_id not in ids:
                problems.append(
                    f"Invalid connection: step {step.id} points at missing step "
                    f"{connection.target_step_id}"
                )
        if isinstance(step.config, ActionConfig):
            problems.extend(_action_problems(step.id, step.config))
        elif isinstance(step.config, SplitTestConfig):
            problems.extend(_split_test_problems(step.id, step.config))

    entries = find_entry_step_ids(definition)
    if len(entries) != 1:
        problems.append(
            f"Workflow must have exactly one entry step, found {len(entries)}"
            + (f": {entries}" if entries else "")
        )

    cycle = _find_cycle(definition)
    if cycle:
        problems.append(f"Workflow contains a cycle: {' -> '.join(cycle)}")

    if problems:
        raise ValidationError(problems)
