"""
In-memory stand-ins for the MongoDB async API and the KashFlow client.

FakeDatabase implements only the collection methods kfsync calls:
bulk_write (UpdateOne), update_one, insert_one, find, find_one,
count_documents, delete_many, aggregate ($match/$group/$push/$sum),
create_index and db.command("ping").
"""
import copy
from dataclasses import dataclass, field
from typing import Any

from bson import ObjectId

from kfsync.kashflow.errors import KashFlowApiError

_MISSING = object()


# ─── Query matching ───────────────────────────────────────────────────────────

def _get(doc: dict, key: str):
    return doc.get(key, _MISSING)


def _match_condition(value, cond) -> bool:
    if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
        for op, arg in cond.items():
            present = value is not _MISSING
            actual = value if present else None
            if op == "$exists":
                if present != bool(arg):
                    return False
            elif op == "$ne":
                if actual == arg:
                    return False
            elif op == "$in":
                if actual not in arg:
                    return False
            elif op == "$nin":
                if actual in arg:
                    return False
            elif op == "$gt":
                if not present or actual is None or not actual > arg:
                    return False
            else:
                raise NotImplementedError(op)
        return True
    if value is _MISSING:
        return cond is None
    return value == cond


def matches(doc: dict, query: dict | None) -> bool:
    for key, cond in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in cond):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in cond):
                return False
        elif not _match_condition(_get(doc, key), cond):
            return False
    return True


def _project(doc: dict, projection: dict | None) -> dict:
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    include = {k for k, v in projection.items() if v and k != "_id"}
    if include:
        out = {k: doc[k] for k in include if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            out["_id"] = doc["_id"]
        return out
    return {k: v for k, v in doc.items() if projection.get(k, 1)}


# ─── Results / cursors ────────────────────────────────────────────────────────

@dataclass
class FakeBulkWriteResult:
    upserted_count: int = 0
    matched_count: int = 0
    modified_count: int = 0
    upserted_ids: dict = field(default_factory=dict)


@dataclass
class FakeUpdateResult:
    matched_count: int = 0
    modified_count: int = 0
    upserted_id: Any = None


@dataclass
class FakeDeleteResult:
    deleted_count: int = 0


@dataclass
class FakeInsertOneResult:
    inserted_id: Any = None


class FakeCursor:
    def __init__(self, docs: list[dict]):
        self._docs = docs

    def sort(self, key, direction=1):
        def sort_key(d):
            v = d.get(key)
            return (v is not None, v)
        self._docs = sorted(self._docs, key=sort_key, reverse=direction < 0)
        return self

    def limit(self, n: int):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return list(self._docs if length is None else self._docs[:length])

    def __aiter__(self):
        self._iter = iter(list(self._docs))
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


# ─── Collection / database ────────────────────────────────────────────────────

class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs: list[dict] = []
        self.indexes: list[tuple] = []
        self.bulk_calls: list[int] = []

    # updates

    def _apply(self, doc: dict, update: dict, inserting: bool) -> None:
        for key, value in update.get("$set", {}).items():
            doc[key] = copy.deepcopy(value)
        if inserting:
            for key, value in update.get("$setOnInsert", {}).items():
                doc[key] = copy.deepcopy(value)
        for key in update.get("$unset", {}):
            doc.pop(key, None)
        for key, spec in update.get("$push", {}).items():
            items = doc.setdefault(key, [])
            if isinstance(spec, dict) and "$each" in spec:
                items.extend(copy.deepcopy(spec["$each"]))
                if "$slice" in spec:
                    s = spec["$slice"]
                    doc[key] = items[s:] if s < 0 else items[:s]
            else:
                items.append(copy.deepcopy(spec))

    def _update(self, query: dict, update: dict, upsert: bool) -> tuple[str, Any]:
        for doc in self.docs:
            if matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply(doc, update, inserting=False)
                return ("modified" if doc != before else "matched"), doc["_id"]
        if not upsert:
            return "none", None
        new = {k: copy.deepcopy(v) for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
        new["_id"] = ObjectId()
        self._apply(new, update, inserting=True)
        self.docs.append(new)
        return "upserted", new["_id"]

    async def bulk_write(self, ops, ordered=True):
        self.bulk_calls.append(len(ops))
        result = FakeBulkWriteResult()
        for idx, op in enumerate(ops):
            outcome, _id = self._update(op._filter, op._doc, bool(op._upsert))
            if outcome == "upserted":
                result.upserted_count += 1
                result.upserted_ids[idx] = _id
            elif outcome in ("matched", "modified"):
                result.matched_count += 1
                if outcome == "modified":
                    result.modified_count += 1
        return result

    async def update_one(self, query, update, upsert=False):
        outcome, _id = self._update(query, update, upsert)
        return FakeUpdateResult(
            matched_count=int(outcome in ("matched", "modified")),
            modified_count=int(outcome == "modified"),
            upserted_id=_id if outcome == "upserted" else None,
        )

    async def insert_one(self, doc):
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", ObjectId())
        self.docs.append(doc)
        return FakeInsertOneResult(doc["_id"])

    # reads

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self.docs if matches(d, query)])

    async def find_one(self, query=None, projection=None):
        for d in self.docs:
            if matches(d, query):
                return _project(d, projection)
        return None

    async def count_documents(self, query):
        return sum(1 for d in self.docs if matches(d, query))

    async def delete_many(self, query):
        keep = [d for d in self.docs if not matches(d, query)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return FakeDeleteResult(deleted)

    async def aggregate(self, pipeline):
        docs = [copy.deepcopy(d) for d in self.docs]
        for stage in pipeline:
            (op, arg), = stage.items()
            if op == "$match":
                docs = [d for d in docs if matches(d, arg)]
            elif op == "$group":
                docs = self._group(docs, arg)
            else:
                raise NotImplementedError(op)
        return FakeCursor(docs)

    @staticmethod
    def _expr(doc: dict, expr):
        if isinstance(expr, str) and expr.startswith("$"):
            return doc.get(expr[1:], _MISSING)
        return expr

    def _group(self, docs: list[dict], spec: dict) -> list[dict]:
        groups: dict = {}
        for d in docs:
            key = self._expr(d, spec["_id"])
            key = None if key is _MISSING else key
            g = groups.setdefault(key, {"_id": key})
            for out_field, acc in spec.items():
                if out_field == "_id":
                    continue
                (acc_op, acc_arg), = acc.items()
                if acc_op == "$sum":
                    g[out_field] = g.get(out_field, 0) + acc_arg
                elif acc_op == "$push":
                    item = {}
                    for k, e in acc_arg.items():
                        v = self._expr(d, e)
                        if v is not _MISSING:
                            item[k] = v
                    g.setdefault(out_field, []).append(item)
                else:
                    raise NotImplementedError(acc_op)
        return list(groups.values())

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return kwargs.get("name")


class FakeDatabase:
    def __init__(self):
        self.collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    async def command(self, name):
        return {"ok": 1}


# ─── KashFlow ─────────────────────────────────────────────────────────────────

def api_error(status: int = 500, message: str = "boom", error_code: str | None = None) -> KashFlowApiError:
    return KashFlowApiError(status, message, error_code=error_code, api_message=message)


class FakeResource:
    """One KashFlow endpoint backed by lists of dicts.

    ``by_parent`` maps a customer/supplier code to its list rows;
    ``details`` maps a detail key to the full record (defaults to the list
    row plus ``{"Detail": True}``); keys in ``fail_keys`` raise on ``get``.
    """

    def __init__(self, records=None, *, key="Code", by_parent=None, parent_param=None,
                 details=None, fail_keys=(), fail_parents=()):
        self.records = records or []
        self.key = key
        self.by_parent = by_parent or {}
        self.parent_param = parent_param
        self.details = details or {}
        self.fail_keys = set(fail_keys)
        self.fail_parents = set(fail_parents)
        self.get_calls: list = []

    def _all_rows(self):
        yield from self.records
        for rows in self.by_parent.values():
            yield from rows

    async def list(self, params=None):
        rows = copy.deepcopy(self.records)
        perpage = (params or {}).get("perpage")
        return rows[:perpage] if perpage else rows

    async def list_all(self, params=None):
        params = params or {}
        if self.parent_param and self.parent_param in params:
            code = params[self.parent_param]
            if code in self.fail_parents:
                raise api_error(500, f"list failed for {code}")
            return copy.deepcopy(self.by_parent.get(code, []))
        return copy.deepcopy(self.records)

    async def get(self, key):
        self.get_calls.append(key)
        if key in self.fail_keys:
            raise api_error(500, f"detail failed for {key}")
        if key in self.details:
            return copy.deepcopy(self.details[key])
        for row in self._all_rows():
            if row.get(self.key) == key:
                return {**copy.deepcopy(row), "Detail": True}
        raise api_error(404, f"{key} not found")


class FakeMetadata:
    def __init__(self, error: Exception | None = None):
        self.error = error

    async def get(self):
        if self.error is not None:
            raise self.error
        return {"Company": "Test Ltd"}


class FakeKashFlowClient:
    def __init__(self, *, customers=None, suppliers=None, projects=None, nominals=None,
                 invoices=None, quotes=None, purchases=None, metadata_error=None):
        self.customers = customers or FakeResource()
        self.suppliers = suppliers or FakeResource()
        self.projects = projects or FakeResource(key="Number")
        self.nominals = nominals or FakeResource()
        self.invoices = invoices or FakeResource(key="Number", parent_param="customerCode")
        self.quotes = quotes or FakeResource(key="Number", parent_param="customerCode")
        self.purchases = purchases or FakeResource(key="Number", parent_param="supplierCode")
        self.metadata = FakeMetadata(metadata_error)
        self.closed = False

    async def aclose(self):
        self.closed = True


def factory_for(client: FakeKashFlowClient):
    async def _factory():
        return client
    return _factory
