from typing import Literal, Optional
from pydantic import Field
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from models.engine.records import Bidder, BidderStatus


class UserData(BaseCouchbaseEntityData):
    name: str = ""
    email: str
    hashed_password: Optional[str] = Field(default=None, exclude=True)
    role: Literal["buyer", "seller", "admin"] = "buyer"
    status: BidderStatus = "active"


class User(BaseModelCouchbase[UserData]):
    _collection_name = "users"

    def to_bidder(self) -> Bidder:
        return Bidder(
            id=self.id,
            name=self.data.name,
            email=self.data.email,
            role=self.data.role,
            status=self.data.status,
        )
