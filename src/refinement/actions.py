"""Closed set of refinement actions and parsing of driver tool calls."""

from dataclasses import dataclass

from memory.errors import ValidationError

ACTIONS = ("search", "consolidate", "update", "delete", "protect", "unprotect", "complete")


@dataclass(frozen=True)
class Search:
    query: str


@dataclass(frozen=True)
class Update:
    id: str
    content: str


@dataclass(frozen=True)
class Delete:
    id: str


@dataclass(frozen=True)
class Consolidate:
    ids: tuple[str, ...]
    content: str


@dataclass(frozen=True)
class Protect:
    id: str


@dataclass(frozen=True)
class Unprotect:
    id: str


@dataclass(frozen=True)
class Complete:
    summary: str


Action = Search | Update | Delete | Consolidate | Protect | Unprotect | Complete

MUTATING = (Update, Delete, Consolidate)


def _required(action: str, param: str, value) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{param} is required for {action}")
    return str(value)


def _split_ids(ids) -> tuple[str, ...]:
    if isinstance(ids, str):
        parts = ids.split(",")
    elif isinstance(ids, (list, tuple)):
        parts = [str(i) for i in ids]
    else:
        raise ValidationError("ids must be a list or comma-separated string")
    seen: dict[str, None] = {}
    for part in parts:
        part = part.strip()
        if part:
            seen.setdefault(part, None)
    return tuple(seen)


def parse_action(name: str, **params) -> Action:
    """Build a typed action from the driver's string name and keyword params."""
    match name:
        case "search":
            return Search(query=_required(name, "query", params.get("query")).strip())
        case "update":
            return Update(
                id=_required(name, "id", params.get("id")).strip(),
                content=_required(name, "content", params.get("content")).strip(),
            )
        case "delete":
            return Delete(id=_required(name, "id", params.get("id")).strip())
        case "consolidate":
            raw_ids = params.get("ids")
            if raw_ids is None or (isinstance(raw_ids, str) and not raw_ids.strip()):
                raise ValidationError("ids is required for consolidate")
            ids = _split_ids(raw_ids)
            if len(ids) < 2:
                raise ValidationError("consolidate requires at least 2 memory IDs")
            return Consolidate(
                ids=ids,
                content=_required(name, "content", params.get("content")).strip(),
            )
        case "protect":
            return Protect(id=_required(name, "id", params.get("id")).strip())
        case "unprotect":
            return Unprotect(id=_required(name, "id", params.get("id")).strip())
        case "complete":
            return Complete(summary=_required(name, "summary", params.get("summary")).strip())
        case _:
            raise ValidationError(
                f"Invalid action '{name}'. Allowed actions: {', '.join(ACTIONS)}"
            )
