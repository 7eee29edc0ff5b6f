from .config import (
    USERNAME,
    PASSWORD,
    DEFAULT_BUCKET_NAME,
    HOST,
    PROTOCOL,
    config_errors,
    validate_config,
    get_cluster,
    check_connection,
)
from .keyspace import (
    Keyspace,
    get_keyspace,
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    DataT,
    T,
)

# External re-exports used by the operations layer
from couchbase.exceptions import (
    CouchbaseException,
    DocumentNotFoundException,
    CASMismatchException,
)
