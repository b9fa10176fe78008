"""Document helpers shared by the store implementations.

Filters use the Mongo-style operator dialect the query layer produces
(``$and``, ``$or``, ``$in``, ``$regex``, ...). The in-memory store evaluates
filters here; the SQL store compiles the same dialect in ``sql_filters`` and
uses the update operators and pipeline stages from this module.
"""

import copy
import re
import uuid
from collections.abc import Iterable
from typing import Any

Document = dict[str, Any]
SortSpec = list[tuple[str, int]]

_MISSING = object()

_LEGACY_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")


def new_document_id() -> str:
    """Generate a document identifier."""
    return uuid.uuid4().hex


def is_valid_identifier(value: str) -> bool:
    """Check that ``value`` looks like a document identifier.

    Accepts UUIDs (hex or dashed) and 24-hex legacy object ids.
    """
    if _LEGACY_ID_PATTERN.match(value):
        return True
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def get_path(document: Document, path: str) -> Any:
    """Resolve a dotted path, returning a sentinel when absent."""
    value: Any = document
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _candidates(value: Any) -> list[Any]:
    # Array fields match when any element matches, or the array as a whole
    if isinstance(value, list):
        return [*value, value]
    return [value]


def _compare(left: Any, right: Any, op: str) -> bool:
    try:
        if op == "$gt":
            return left > right
        if op == "$gte":
            return left >= right
        if op == "$lt":
            return left < right
        return left <= right
    except TypeError:
        return False


def _regex_matches(value: Any, pattern: Any, options: str) -> bool:
    if not isinstance(value, str):
        return False
    if isinstance(pattern, re.Pattern):
        return pattern.search(value) is not None
    flags = re.IGNORECASE if "i" in options else 0
    return re.search(str(pattern), value, flags) is not None


def _match_operators(value: Any, condition: dict[str, Any]) -> bool:
    options = condition.get("$options", "")
    for op, operand in condition.items():
        if op == "$options":
            continue
        if op == "$eq":
            if not any(c == operand for c in _candidates(value)):
                return False
        elif op == "$ne":
            if any(c == operand for c in _candidates(value)):
                return False
        elif op == "$in":
            if not any(c in operand for c in _candidates(value) if c is not _MISSING):
                if not (value is _MISSING and None in operand):
                    return False
        elif op == "$nin":
            if any(c in operand for c in _candidates(value) if c is not _MISSING):
                return False
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            if value is _MISSING or not any(_compare(c, operand, op) for c in _candidates(value)):
                return False
        elif op == "$regex":
            if not any(_regex_matches(c, operand, options) for c in _candidates(value)):
                return False
        elif op == "$exists":
            if (value is not _MISSING) != bool(operand):
                return False
        elif op == "$all":
            if not isinstance(value, list) or not all(item in value for item in operand):
                return False
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
    return True


def matches(document: Document, filter_: dict[str, Any] | None) -> bool:
    """Check whether ``document`` satisfies ``filter_``."""
    if not filter_:
        return True

    for key, condition in filter_.items():
        if key == "$and":
            if not all(matches(document, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
        elif key == "$nor":
            if any(matches(document, sub) for sub in condition):
                return False
        else:
            value = get_path(document, key)
            if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
                if not _match_operators(value, condition):
                    return False
            elif isinstance(condition, re.Pattern):
                if not any(_regex_matches(c, condition, "") for c in _candidates(value)):
                    return False
            elif condition is None:
                if value is not _MISSING and value is not None:
                    return False
            elif not any(c == condition for c in _candidates(value)):
                return False
    return True


def parse_sort(sort: str | dict[str, int] | SortSpec | None) -> SortSpec:
    """Normalize a sort spec.

    Accepts "-created_at,name" / "-created_at name", a {field: 1|-1} mapping, or
    a list of (field, direction) pairs.
    """
    if not sort:
        return []
    if isinstance(sort, dict):
        return [(name, -1 if int(direction) < 0 else 1) for name, direction in sort.items()]
    if isinstance(sort, list):
        return [(name, -1 if direction < 0 else 1) for name, direction in sort]

    spec: SortSpec = []
    for token in re.split(r"[,\s]+", sort.strip()):
        if not token:
            continue
        if token.startswith("-"):
            spec.append((token[1:], -1))
        else:
            spec.append((token.lstrip("+"), 1))
    return spec


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is _MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    return (4, str(value))


def sort_documents(documents: list[Document], sort: SortSpec) -> list[Document]:
    """Stable multi-key sort; missing values sort first ascending."""
    result = list(documents)
    for name, direction in reversed(sort):
        result.sort(key=lambda doc: _sort_key(get_path(doc, name)), reverse=direction < 0)
    return result


def project(document: Document, projection: dict[str, int] | None) -> Document:
    """Apply an inclusion or exclusion projection.

    ``id`` is always kept unless explicitly excluded.
    """
    if not projection:
        return copy.deepcopy(document)

    included = [name for name, flag in projection.items() if flag]
    excluded = {name for name, flag in projection.items() if not flag}

    if included:
        result: Document = {}
        if "id" in document and "id" not in excluded:
            result["id"] = copy.deepcopy(document["id"])
        for name in included:
            value = get_path(document, name)
            if value is _MISSING:
                continue
            set_path(result, name, copy.deepcopy(value))
        return result

    result = copy.deepcopy(document)
    for name in excluded:
        _unset_path(result, name)
    return result


def parse_projection(select: str | Iterable[str] | None) -> dict[str, int] | None:
    """Turn "name,email" / "-password" style selects into a projection."""
    if not select:
        return None
    tokens = re.split(r"[,\s]+", select.strip()) if isinstance(select, str) else list(select)
    projection: dict[str, int] = {}
    for token in tokens:
        if not token:
            continue
        if token.startswith("-"):
            projection[token[1:]] = 0
        else:
            projection[token.lstrip("+")] = 1
    return projection or None


def set_path(document: Document, path: str, value: Any) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _unset_path(document: Document, path: str) -> None:
    parts = path.split(".")
    target: Any = document
    for part in parts[:-1]:
        if not isinstance(target, dict) or part not in target:
            return
        target = target[part]
    if isinstance(target, dict):
        target.pop(parts[-1], None)


def apply_update(document: Document, update: dict[str, Any]) -> Document:
    """Return a copy of ``document`` with ``update`` applied.

    A plain mapping without operators is treated as ``$set``.
    """
    result = copy.deepcopy(document)
    if not any(key.startswith("$") for key in update):
        update = {"$set": update}

    for op, fields in update.items():
        for path, value in fields.items():
            if op == "$set":
                set_path(result, path, copy.deepcopy(value))
            elif op == "$unset":
                _unset_path(result, path)
            elif op == "$inc":
                current = get_path(result, path)
                set_path(result, path, (0 if current is _MISSING else current) + value)
            elif op in ("$push", "$addToSet"):
                current = get_path(result, path)
                items = [] if current is _MISSING else list(current)
                values = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                for item in values:
                    if op == "$push" or item not in items:
                        items.append(copy.deepcopy(item))
                set_path(result, path, items)
            elif op == "$pull":
                current = get_path(result, path)
                if isinstance(current, list):
                    if isinstance(value, dict) and "$in" in value:
                        set_path(result, path, [i for i in current if i not in value["$in"]])
                    else:
                        set_path(result, path, [i for i in current if i != value])
            else:
                raise ValueError(f"Unsupported update operator: {op}")
    return result


def run_pipeline(documents: list[Document], pipeline: list[dict[str, Any]]) -> list[Document]:
    """Evaluate a small aggregation pipeline.

    Supported stages: $match, $sort, $skip, $limit, $project, $count, $group
    (``_id`` as "$field" or None, accumulators ``$sum``).
    """
    result = [copy.deepcopy(doc) for doc in documents]
    for stage in pipeline:
        if len(stage) != 1:
            raise ValueError(f"Pipeline stage must have exactly one key: {stage}")
        name, arg = next(iter(stage.items()))
        if name == "$match":
            result = [doc for doc in result if matches(doc, arg)]
        elif name == "$sort":
            result = sort_documents(result, parse_sort(arg))
        elif name == "$skip":
            result = result[int(arg):]
        elif name == "$limit":
            result = result[: int(arg)]
        elif name == "$project":
            result = [project(doc, arg) for doc in result]
        elif name == "$count":
            result = [{arg: len(result)}] if result else []
        elif name == "$group":
            result = _group(result, arg)
        else:
            raise ValueError(f"Unsupported pipeline stage: {name}")
    return result


def _group(documents: list[Document], spec: dict[str, Any]) -> list[Document]:
    key_expr = spec.get("_id")
    groups: dict[Any, Document] = {}
    for doc in documents:
        key = _field_ref(doc, key_expr)
        hashable = repr(key)
        group = groups.setdefault(hashable, {"_id": key})
        for out, accumulator in spec.items():
            if out == "_id":
                continue
            op, operand = next(iter(accumulator.items()))
            if op != "$sum":
                raise ValueError(f"Unsupported accumulator: {op}")
            amount = _field_ref(doc, operand)
            group[out] = group.get(out, 0) + (amount if isinstance(amount, (int, float)) else 0)
    return list(groups.values())


def _field_ref(document: Document, expr: Any) -> Any:
    if isinstance(expr, str) and expr.startswith("$"):
        value = get_path(document, expr[1:])
        return None if value is _MISSING else value
    return expr
