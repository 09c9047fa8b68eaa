"""
Workflow definition loader (``workflow_config.loader``).

Responsibility
--------------
Loads YAML workflow definition files and parses them into the typed,
frozen ``workflow_config.schema`` dataclasses.

Architecture position
---------------------
**Config layer**.  Depends on the kernel only for its exception types;
knows nothing of the engine.

Invariants enforced
-------------------
* Missing required keys raise ``WorkflowDefinitionError`` naming the
  definition and the key; no silent defaults for required fields.
* ``compute_checksum`` produces a deterministic SHA-256 over canonical
  JSON, so two definitions with the same content share a checksum.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Structurally invalid document  -> ``WorkflowDefinitionError``.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from workflow_config.schema import (
    StateDefinition,
    TransitionDefinition,
    WorkflowDefinition,
)
from workflow_kernel.exceptions import WorkflowDefinitionError

_UNSET = object()


def load_yaml_file(path: Path | str) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _get(data: Mapping[str, Any], *keys: str, default: Any = _UNSET) -> Any:
    """First present key among snake_case / camelCase spellings."""
    for key in keys:
        if key in data:
            return data[key]
    if default is _UNSET:
        raise KeyError(keys[0])
    return default


def _as_tuple(value: Any) -> tuple[Any, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, Mapping)):
        return (value,)
    return tuple(value)


def parse_transition(data: Mapping[str, Any]) -> TransitionDefinition:
    return TransitionDefinition(
        target=_get(data, "target"),
        action=_get(data, "action", default=None),
        label=_get(data, "label", default=None),
        guards=_as_tuple(_get(data, "guards", default=None)),
        requires_confirmation=bool(
            _get(data, "requires_confirmation", "requiresConfirmation", default=False)
        ),
        metadata=dict(_get(data, "metadata", default=None) or {}),
    )


def parse_state(data: Mapping[str, Any]) -> StateDefinition:
    return StateDefinition(
        name=_get(data, "name"),
        description=_get(data, "description", default="") or "",
        transitions=tuple(
            parse_transition(t) for t in _get(data, "transitions", default=None) or ()
        ),
        required_actors=tuple(
            str(a) for a in _as_tuple(_get(data, "required_actors", "requiredActors", default=None))
        ),
        permission_conditions=dict(
            _get(data, "permission_conditions", "permissionConditions", default=None) or {}
        ),
        on_enter=_get(data, "on_enter", "onEnter", default=None),
        on_exit=_get(data, "on_exit", "onExit", default=None),
        validations=tuple(str(v) for v in _as_tuple(_get(data, "validations", default=None))),
    )


def parse_workflow_definition(data: Mapping[str, Any]) -> WorkflowDefinition:
    """
    Parse a ``WorkflowDefinition`` from a dict.

    ``states`` may be a list of state mappings or a mapping of
    name -> state body.

    Raises:
        WorkflowDefinitionError: when a required key is missing or a
            section has the wrong shape.
    """
    name = str(data.get("name") or "<unnamed>") if isinstance(data, Mapping) else "<unnamed>"
    if not isinstance(data, Mapping):
        raise WorkflowDefinitionError(name, ["definition must be a mapping"])

    try:
        raw_states = data.get("states")
        if isinstance(raw_states, Mapping):
            raw_states = [{"name": k, **(v or {})} for k, v in raw_states.items()]
        if not isinstance(raw_states, list):
            raise WorkflowDefinitionError(name, ["'states' must be a list or mapping"])
        return WorkflowDefinition(
            name=_get(data, "name"),
            version=int(_get(data, "version", default=1)),
            description=_get(data, "description", default="") or "",
            initial_state=_get(data, "initial_state", "initialState"),
            states=tuple(parse_state(s) for s in raw_states),
        )
    except KeyError as e:
        raise WorkflowDefinitionError(name, [f"missing required key: {e.args[0]}"]) from e
    except (TypeError, ValueError, AttributeError) as e:
        raise WorkflowDefinitionError(name, [f"malformed definition: {e}"]) from e


def load_workflow_definition(path: Path | str) -> WorkflowDefinition:
    return parse_workflow_definition(load_yaml_file(path))


def compute_checksum(definition: WorkflowDefinition | Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``definition``."""
    data = definition.to_dict() if isinstance(definition, WorkflowDefinition) else definition
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
