"""Observer-facing session state, mutated by draft-and-diff

Every change is a function applied to a deep copy ("draft") of the current
state. The difference between the old state and the draft is expressed as a
list of JSON-patch style operations:

    {"op": "add" | "replace" | "remove", "path": [key or index, ...], "value": ...}

Patches are optimised, appended to the pending batch, and the batch is
published as one `local.patches` event from a single deferred callback, so
observers see an ordered stream of batches rather than one message per
field write. Replaying a batch with apply_patches() over the old state
reproduces the new state.
"""

import asyncio
import copy
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from livedev.bus.event_bus import EventBus
from livedev.bus.events import EventType

logger = logging.getLogger(__name__)

Patch = Dict[str, Any]
Path = List[Any]

# Per-function invocation entries kept in state
MAX_FUNCTION_INVOCATIONS = 25


class PatchError(Exception):
    """A patch does not apply to the given state"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def _patch(op: str, path: Path, value: Any = None) -> Patch:
    patch: Patch = {"op": op, "path": list(path)}
    if op != "remove":
        patch["value"] = copy.deepcopy(value)
    return patch


def diff(old: Any, new: Any, path: Optional[Path] = None) -> List[Patch]:
    """Patches turning old into new"""
    path = path or []
    if isinstance(old, dict) and isinstance(new, dict):
        return _diff_dict(old, new, path)
    if isinstance(old, list) and isinstance(new, list):
        return _diff_list(old, new, path)
    if type(old) is not type(new) or old != new:
        return [_patch("replace", path, new)]
    return []


def _diff_dict(old: Dict, new: Dict, path: Path) -> List[Patch]:
    patches = []
    for key in old:
        if key not in new:
            patches.append(_patch("remove", path + [key]))
    for key, value in new.items():
        if key not in old:
            patches.append(_patch("add", path + [key], value))
        else:
            patches.extend(diff(old[key], value, path + [key]))
    return patches


def _diff_list(old: List, new: List, path: Path) -> List[Patch]:
    if old == new:
        return []
    # Common shapes first: prepend, and prepend with the tail dropped
    if old and len(new) == len(old) + 1 and new[1:] == old:
        return [_patch("add", path + [0], new[0])]
    if old and len(new) == len(old) and new[1:] == old[:-1]:
        return [_patch("remove", path + [len(old) - 1]), _patch("add", path + [0], new[0])]

    patches = []
    for index in range(min(len(old), len(new))):
        patches.extend(diff(old[index], new[index], path + [index]))
    for index in range(len(old) - 1, len(new) - 1, -1):
        patches.append(_patch("remove", path + [index]))
    for index in range(len(old), len(new)):
        patches.append(_patch("add", path + [index], new[index]))
    return patches


def _is_prefix(prefix: Sequence, path: Sequence) -> bool:
    return len(prefix) <= len(path) and list(path[:len(prefix)]) == list(prefix)


def optimise(patches: List[Patch]) -> List[Patch]:
    """Drop patches made redundant by a later replace or remove

    An earlier patch is dropped when a later replace/remove covers its path
    and no structural change (add/remove) in between moved what that path
    refers to.
    """
    keep = [True] * len(patches)
    for j, later in enumerate(patches):
        if later["op"] == "add":
            continue
        for i in range(j - 1, -1, -1):
            earlier = patches[i]
            if earlier["op"] in ("add", "remove") and _is_prefix(earlier["path"][:-1], later["path"]):
                if earlier["op"] != "add" or len(earlier["path"]) <= len(later["path"]):
                    break
            if _is_prefix(later["path"], earlier["path"]):
                keep[i] = False
    return [patch for patch, kept in zip(patches, keep) if kept]


def apply_patches(state: Any, patches: Sequence[Patch]) -> Any:
    """Apply patches to a copy of state and return it

    Raises:
        PatchError: If a patch path does not exist
    """
    result = copy.deepcopy(state)
    for patch in patches:
        path = patch["path"]
        if not path:
            if patch["op"] == "remove":
                raise PatchError("Cannot remove the root")
            result = copy.deepcopy(patch["value"])
            continue
        parent = result
        try:
            for key in path[:-1]:
                parent = parent[key]
        except (KeyError, IndexError, TypeError):
            raise PatchError(f"Path {path} does not exist")
        _apply_one(parent, patch["op"], path[-1], patch.get("value"))
    return result


def _apply_one(parent: Any, op: str, key: Any, value: Any) -> None:
    value = copy.deepcopy(value)
    try:
        if isinstance(parent, list):
            if op == "add":
                parent.insert(key, value)
            elif op == "replace":
                parent[key] = value
            else:
                del parent[key]
        elif isinstance(parent, dict):
            if op == "remove":
                del parent[key]
            else:
                parent[key] = value
        else:
            raise PatchError(f"Cannot {op} {key!r} on {type(parent).__name__}")
    except (KeyError, IndexError, TypeError) as e:
        raise PatchError(f"Cannot {op} {key!r}: {e}")


def new_function_state() -> Dict[str, Any]:
    return {
        "warm": False,
        "state": "idle",
        "issues": {},
        "invocations": [],
    }


class StateStore:
    """Single source of truth for the state observers mirror"""

    def __init__(self, bus: EventBus, app: str, stage: str, live: bool = True):
        self.bus = bus
        self._state: Dict[str, Any] = {
            "app": app,
            "stage": stage,
            "live": live,
            "stacks": {"status": "idle"},
            "functions": {},
        }
        self._pending: List[Patch] = []

    @property
    def state(self) -> Dict[str, Any]:
        """Current state; treat as read-only"""
        return self._state

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._state)

    @property
    def pending(self) -> List[Patch]:
        return list(self._pending)

    def update(self, mutate: Callable[[Dict[str, Any]], None]) -> List[Patch]:
        """Run mutate on a draft and queue the resulting patches"""
        draft = copy.deepcopy(self._state)
        mutate(draft)
        patches = diff(self._state, draft)
        if not patches:
            return []

        scheduled = bool(self._pending)
        patches = optimise(patches)
        self._pending.extend(patches)
        self._state = draft
        if not scheduled:
            asyncio.get_running_loop().call_soon(self.flush)
        return patches

    def update_function(self, function_id: str, mutate: Callable[[Dict[str, Any]], None]) -> List[Patch]:
        def apply(draft: Dict[str, Any]) -> None:
            function = draft["functions"].get(function_id)
            if function is None:
                function = new_function_state()
                draft["functions"][function_id] = function
            mutate(function)

        return self.update(apply)

    def flush(self) -> None:
        """Publish and clear the pending batch"""
        if not self._pending:
            return
        batch = self._pending
        self._pending = []
        logger.debug("Publishing %d patches", len(batch))
        self.bus.publish(EventType.LOCAL_PATCHES, {"patches": batch})
