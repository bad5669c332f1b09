import copy
import operator
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

Filter = Tuple[str, str, Any]

OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class StoreError(Exception):
    """The document store could not complete a call."""


class DuplicateKeyError(StoreError):
    """A document with the requested id already exists."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document {collection}/{doc_id} already exists")


class DocumentStore:
    """Repository-style access to a document database.

    ``create`` is the only write that enforces uniqueness: it must fail with
    DuplicateKeyError when ``doc_id`` already exists, atomically with respect
    to concurrent creates of the same id.
    """

    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def find(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def update_many(self, collection: str, filters: Sequence[Filter], changes: Dict[str, Any]) -> int:
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> bool:
        raise NotImplementedError

    def delete_many(self, collection: str, filters: Sequence[Filter]) -> int:
        raise NotImplementedError


def _matches(doc: Dict[str, Any], filters: Iterable[Filter]) -> bool:
    for field, op, value in filters:
        if field not in doc:
            return False
        try:
            if not OPERATORS[op](doc[field], value):
                return False
        except TypeError:
            return False
    return True


class MemoryStore(DocumentStore):
    """Thread-safe in-process store for single-instance deployments and tests."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def create(self, collection, doc_id, data):
        with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                raise DuplicateKeyError(collection, doc_id)
            docs[doc_id] = copy.deepcopy(data)
            return self._snapshot(doc_id, docs[doc_id])

    def get(self, collection, doc_id):
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return self._snapshot(doc_id, doc) if doc is not None else None

    def find(self, collection, filters=(), order_by=None, descending=False, limit=None):
        with self._lock:
            results = [
                self._snapshot(doc_id, doc)
                for doc_id, doc in self._collection(collection).items()
                if _matches(doc, filters)
            ]
        if order_by:
            results.sort(key=lambda d: d.get(order_by), reverse=descending)
        if limit is not None:
            results = results[:limit]
        return results

    def update(self, collection, doc_id, changes):
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None:
                return False
            doc.update(copy.deepcopy(changes))
            return True

    def update_many(self, collection, filters, changes):
        with self._lock:
            matched = [doc for doc in self._collection(collection).values() if _matches(doc, filters)]
            for doc in matched:
                doc.update(copy.deepcopy(changes))
            return len(matched)

    def delete(self, collection, doc_id):
        with self._lock:
            return self._collection(collection).pop(doc_id, None) is not None

    def delete_many(self, collection, filters):
        with self._lock:
            docs = self._collection(collection)
            doomed = [doc_id for doc_id, doc in docs.items() if _matches(doc, filters)]
            for doc_id in doomed:
                del docs[doc_id]
            return len(doomed)

    @staticmethod
    def _snapshot(doc_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        data = copy.deepcopy(doc)
        data["id"] = doc_id
        return data
