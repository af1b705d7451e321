"""
Document query language: filters, update operators, sorting, aggregation.

A small Mongo-style subset that both stores understand. MemoryStore evaluates
it directly; PostgresStore compiles filters to SQL but reuses the update,
projection and pipeline helpers here on the rows it has locked or fetched.

Filters
    {"field": value}                     equality (None matches missing/null)
    {"a.b": value}                       dotted paths into sub-documents
    {"field": {"$gt": v, "$lte": w}}     $eq $ne $lt $lte $gt $gte $in $nin
                                         $exists $regex (+ $options "i")
    {"$or": [...]} / {"$and": [...]} / {"$nor": [...]}

Updates
    $set $unset $inc $setOnInsert
"""
import copy
import re
from enum import Enum
from typing import Any, Iterable

FIELD_OPERATORS = frozenset(
    {"$eq", "$ne", "$lt", "$lte", "$gt", "$gte", "$in", "$nin", "$exists", "$regex", "$options"}
)
LOGICAL_OPERATORS = frozenset({"$and", "$or", "$nor"})
UPDATE_OPERATORS = frozenset({"$set", "$unset", "$inc", "$setOnInsert"})

MISSING = object()

Sort = list[tuple[str, int]]


def plain(value: Any) -> Any:
    """Enum members compare and serialise as their values."""
    if isinstance(value, Enum):
        return value.value
    return value


def get_path(doc: dict, path: str) -> Any:
    """Value at a dotted path, or MISSING."""
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return MISSING
        current = current[part]
    return current


def set_path(doc: dict, path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def unset_path(doc: dict, path: str) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.get(part)
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(k.startswith("$") for k in value)


def _equals(actual: Any, expected: Any) -> bool:
    expected = plain(expected)
    if expected is None:
        return actual is MISSING or actual is None
    if actual is MISSING:
        return False
    actual = plain(actual)
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in [plain(a) for a in actual]
    return actual == expected


def _compare(actual: Any, op: str, expected: Any) -> bool:
    if actual is MISSING or actual is None or expected is None:
        return False
    actual, expected = plain(actual), plain(expected)
    try:
        if op == "$lt":
            return actual < expected
        if op == "$lte":
            return actual <= expected
        if op == "$gt":
            return actual > expected
        return actual >= expected
    except TypeError:
        return False


def _match_operators(actual: Any, spec: dict) -> bool:
    for op, expected in spec.items():
        if op not in FIELD_OPERATORS:
            raise ValueError(f"Unsupported query operator: {op}")
        if op == "$eq":
            if not _equals(actual, expected):
                return False
        elif op == "$ne":
            if _equals(actual, expected):
                return False
        elif op in ("$lt", "$lte", "$gt", "$gte"):
            if not _compare(actual, op, expected):
                return False
        elif op == "$in":
            if not any(_equals(actual, candidate) for candidate in expected):
                return False
        elif op == "$nin":
            if any(_equals(actual, candidate) for candidate in expected):
                return False
        elif op == "$exists":
            if (actual is not MISSING) != bool(expected):
                return False
        elif op == "$regex":
            flags = re.IGNORECASE if "i" in spec.get("$options", "") else 0
            if not isinstance(actual, str) or re.search(expected, actual, flags) is None:
                return False
    return True


def matches(doc: dict, query: dict | None) -> bool:
    """True if ``doc`` satisfies every clause of ``query``."""
    for key, condition in (query or {}).items():
        if key in LOGICAL_OPERATORS:
            results = [matches(doc, sub) for sub in condition]
            if key == "$and" and not all(results):
                return False
            if key == "$or" and not any(results):
                return False
            if key == "$nor" and any(results):
                return False
            continue
        if key.startswith("$"):
            raise ValueError(f"Unsupported query operator: {key}")

        actual = get_path(doc, key)
        if _is_operator_dict(condition):
            if not _match_operators(actual, condition):
                return False
        elif not _equals(actual, condition):
            return False
    return True


def equality_fields(query: dict | None) -> dict:
    """The plain ``field: value`` clauses of a filter (seed for an upsert)."""
    seed: dict = {}
    for key, condition in (query or {}).items():
        if key.startswith("$"):
            continue
        if _is_operator_dict(condition):
            if "$eq" in condition:
                set_path(seed, key, plain(condition["$eq"]))
            continue
        set_path(seed, key, plain(condition))
    return seed


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------

def _plain_deep(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _plain_deep(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain_deep(v) for v in value]
    return plain(value)


def apply_update(doc: dict, update: dict, *, inserting: bool = False) -> dict:
    """Return a new document with the update operators applied."""
    unknown = set(update) - UPDATE_OPERATORS
    if unknown:
        raise ValueError(f"Unsupported update operator(s): {', '.join(sorted(unknown))}")

    result = copy.deepcopy(doc)
    for path, value in update.get("$set", {}).items():
        set_path(result, path, _plain_deep(value))
    if inserting:
        for path, value in update.get("$setOnInsert", {}).items():
            set_path(result, path, _plain_deep(value))
    for path in update.get("$unset", {}):
        unset_path(result, path)
    for path, amount in update.get("$inc", {}).items():
        current = get_path(result, path)
        base = 0 if current is MISSING or current is None else current
        set_path(result, path, base + amount)
    return result


def normalise_document(doc: dict) -> dict:
    """Deep copy with enum members replaced by their values."""
    return _plain_deep(doc)


# ---------------------------------------------------------------------------
# Sorting and projection
# ---------------------------------------------------------------------------

def normalise_sort(sort: Sort | dict | None) -> Sort:
    if not sort:
        return []
    if isinstance(sort, dict):
        return list(sort.items())
    return list(sort)


def sort_documents(docs: Iterable[dict], sort: Sort | dict | None) -> list[dict]:
    """Stable multi-key sort; missing/null values order first ascending."""
    ordered = list(docs)
    for field, direction in reversed(normalise_sort(sort)):
        def key(doc, field=field):
            value = plain(get_path(doc, field))
            if value is MISSING or value is None:
                return (0, 0)
            return (1, value)
        ordered.sort(key=key, reverse=direction < 0)
    return ordered


def project(doc: dict, projection: dict | None) -> dict:
    """Apply an inclusion ({f: 1}) or exclusion ({f: 0}) projection."""
    if not projection:
        return doc
    include = [f for f, flag in projection.items() if flag]
    exclude = [f for f, flag in projection.items() if not flag]
    if include and exclude and exclude != ["_id"]:
        raise ValueError("Projection cannot mix inclusion and exclusion")

    if include:
        result: dict = {}
        if "_id" not in exclude and "_id" in doc:
            result["_id"] = doc["_id"]
        for field in include:
            value = get_path(doc, field)
            if value is not MISSING:
                set_path(result, field, value)
        return result

    result = copy.deepcopy(doc)
    for field in exclude:
        unset_path(result, field)
    return result


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def _group(docs: list[dict], spec: dict) -> list[dict]:
    key_expr = spec.get("_id")
    accumulators = {k: v for k, v in spec.items() if k != "_id"}

    groups: dict[Any, dict] = {}
    for doc in docs:
        if isinstance(key_expr, str) and key_expr.startswith("$"):
            key = get_path(doc, key_expr[1:])
            key = None if key is MISSING else plain(key)
        else:
            key = key_expr
        group = groups.setdefault(key, {"_id": key})
        for name, acc in accumulators.items():
            if not isinstance(acc, dict) or list(acc) != ["$sum"]:
                raise ValueError(f"Unsupported accumulator for {name}: {acc}")
            operand = acc["$sum"]
            if isinstance(operand, str) and operand.startswith("$"):
                value = get_path(doc, operand[1:])
                value = 0 if value is MISSING or value is None else value
            else:
                value = operand
            group[name] = group.get(name, 0) + value
    return list(groups.values())


def run_pipeline(docs: Iterable[dict], pipeline: list[dict]) -> list[dict]:
    """Evaluate $match / $group / $sort / $skip / $limit stages in order."""
    current = list(docs)
    for stage in pipeline:
        if len(stage) != 1:
            raise ValueError(f"Pipeline stage must have exactly one operator: {stage}")
        (op, arg), = stage.items()
        if op == "$match":
            current = [d for d in current if matches(d, arg)]
        elif op == "$group":
            current = _group(current, arg)
        elif op == "$sort":
            current = sort_documents(current, arg)
        elif op == "$skip":
            current = current[arg:]
        elif op == "$limit":
            current = current[:arg]
        else:
            raise ValueError(f"Unsupported pipeline stage: {op}")
    return current
