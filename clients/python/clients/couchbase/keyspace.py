from dataclasses import dataclass
from typing import Optional
from couchbase.n1ql import QueryScanConsistency
from couchbase.options import QueryOptions
from .config import get_cluster, DEFAULT_BUCKET_NAME


@dataclass
class Keyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    def __str__(self) -> str:
        return f"{self.bucket_name}.{self.scope_name}.{self.collection_name}"

    async def query(
        self,
        query: str,
        scan_consistency: Optional[QueryScanConsistency] = None,
        **params,
    ) -> list:
        """Run a N1QL statement with named parameters.

        ``${keyspace}`` in the statement is replaced with this keyspace.
        Named parameters are passed as ``$name`` placeholders. Pass
        ``QueryScanConsistency.REQUEST_PLUS`` to wait for the index to catch
        up with every mutation made before the query.
        """
        cluster = await get_cluster()
        query = query.replace("${keyspace}", str(self))
        opts = {}
        if params:
            opts["named_parameters"] = params
        if scan_consistency is not None:
            opts["scan_consistency"] = scan_consistency
        result = cluster.query(query, QueryOptions(**opts))
        return [row async for row in result]

    async def get_collection(self):
        cluster = await get_cluster()
        bucket = cluster.bucket(self.bucket_name)
        return bucket.scope(self.scope_name).collection(self.collection_name)

    async def insert(self, key: str, value: dict, **kwargs):
        collection = await self.get_collection()
        return await collection.insert(key, value, **kwargs)


def get_keyspace(collection_name: str, scope_name: Optional[str] = "_default", bucket_name: Optional[str] = DEFAULT_BUCKET_NAME) -> Keyspace:
    """
    Create a Keyspace instance with optional scope and bucket parameters.

    Args:
        collection_name: Name of the collection
        scope_name: Name of the scope (defaults to "_default")
        bucket_name: Name of the bucket (defaults to DEFAULT_BUCKET_NAME)
    """
    return Keyspace(bucket_name, scope_name, collection_name)
