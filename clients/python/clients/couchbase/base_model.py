import uuid
from datetime import datetime, timezone
from typing import Optional, TypeVar, Generic, List, ClassVar
from pydantic import BaseModel
from couchbase.exceptions import DocumentNotFoundException
from couchbase.n1ql import QueryScanConsistency
from couchbase.options import ReplaceOptions
from .keyspace import Keyspace, get_keyspace


class BaseCouchbaseEntityData(BaseModel):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


DataT = TypeVar("DataT", bound=BaseCouchbaseEntityData)
T = TypeVar("T", bound="BaseModelCouchbase")


def _consistency(consistent: bool) -> Optional[QueryScanConsistency]:
    return QueryScanConsistency.REQUEST_PLUS if consistent else None


class BaseModelCouchbase(BaseModel, Generic[DataT]):
    id: str
    data: DataT
    cas: Optional[int] = None

    _collection_name: ClassVar[str] = ""

    @staticmethod
    def to_document(data: BaseCouchbaseEntityData) -> dict:
        return data.model_dump(mode="json")

    @classmethod
    def get_keyspace(cls) -> Keyspace:
        if not cls._collection_name:
            raise ValueError(f"_collection_name not set for {cls.__name__}")
        return get_keyspace(cls._collection_name)

    @classmethod
    def from_row(cls: type[T], row: dict) -> Optional[T]:
        """Build an entity from a ``SELECT META().id, *`` row."""
        data = row.get(cls._collection_name)
        if not data:
            return None
        return cls(id=row["id"], data=data)

    @classmethod
    async def get(cls: type[T], id: str) -> Optional[T]:
        try:
            collection = await cls.get_keyspace().get_collection()
            result = await collection.get(id)
            return cls(id=id, data=result.content_as[dict], cas=result.cas)
        except DocumentNotFoundException:
            return None

    @classmethod
    async def create(cls: type[T], data: DataT, key: Optional[str] = None) -> T:
        if key is None:
            key = str(uuid.uuid4())

        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now

        result = await cls.get_keyspace().insert(key, cls.to_document(data))
        return cls(id=key, data=data, cas=result.cas)

    @classmethod
    async def update(cls: type[T], item: T) -> T:
        """Replace the document, guarded by the CAS value read with it.

        Raises ``CASMismatchException`` when another writer got there first.
        """
        collection = await cls.get_keyspace().get_collection()
        item.data.updated_at = datetime.now(timezone.utc)

        doc = cls.to_document(item.data)
        if item.cas:
            result = await collection.replace(item.id, doc, ReplaceOptions(cas=item.cas))
        else:
            result = await collection.replace(item.id, doc)
        item.cas = result.cas
        return item

    @classmethod
    async def select(
        cls: type[T],
        where: str,
        suffix: str = "",
        consistent: bool = False,
        **params,
    ) -> List[T]:
        """Query the collection with a WHERE clause and named parameters.

        ``consistent=True`` makes the query see every write acknowledged
        before it (``REQUEST_PLUS``), at the cost of waiting for the index.
        """
        keyspace = cls.get_keyspace()
        query = f"SELECT META().id, * FROM {keyspace} WHERE {where}"
        if suffix:
            query = f"{query} {suffix}"
        rows = await keyspace.query(query, scan_consistency=_consistency(consistent), **params)
        items = []
        for row in rows:
            item = cls.from_row(row)
            if item:
                items.append(item)
        return items

    @classmethod
    async def get_many(cls: type[T], ids: List[str]) -> List[T]:
        if not ids:
            return []
        return await cls.select("META().id IN $ids", ids=list(ids))

    @classmethod
    async def count(cls, where: str = "1=1", consistent: bool = False, **params) -> int:
        keyspace = cls.get_keyspace()
        rows = await keyspace.query(
            f"SELECT COUNT(*) AS total FROM {keyspace} WHERE {where}",
            scan_consistency=_consistency(consistent),
            **params,
        )
        return rows[0]["total"] if rows else 0
