from typing import Iterable, List, Optional

from couchbase.exceptions import CouchbaseException

from models.engine.records import Bidder
from models.entities.couchbase.users import User
from models.exceptions import StorageError


async def user_get(user_id: str) -> Optional[User]:
    return await User.get(user_id)


async def user_get_many(user_ids: Iterable[str]) -> List[User]:
    return await User.get_many(list(user_ids))


class CouchbaseBidderDirectory:
    """``BidderDirectory`` backed by the users collection."""

    async def find_by_id(self, user_id: str) -> Optional[Bidder]:
        try:
            user = await user_get(user_id)
        except CouchbaseException as e:
            raise StorageError(f"Failed to load user {user_id}", cause=e) from e
        return user.to_bidder() if user else None

    async def find_many(self, user_ids: Iterable[str]) -> List[Bidder]:
        try:
            users = await user_get_many(user_ids)
        except CouchbaseException as e:
            raise StorageError("Failed to load users", cause=e) from e
        return [u.to_bidder() for u in users]
