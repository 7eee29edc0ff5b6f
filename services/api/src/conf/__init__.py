from pydantic import BaseModel

from utils import env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

#### Types ####

class HttpServerConf(BaseModel):
    host: str
    port: int
    autoreload: bool

class BiddingConf(BaseModel):
    lock_timeout_seconds: float
    commit_max_retries: int
    commit_backoff_ms: int
    final_countdown_seconds: int

#### Env Vars ####

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

## HTTP ##

HTTP_HOST = EnvVarSpec(id="HTTP_HOST", default="0.0.0.0")

HTTP_PORT = EnvVarSpec(id="HTTP_PORT", default="8000", parse=int, type=(int, ...))

HTTP_AUTORELOAD = EnvVarSpec(
    id="HTTP_AUTORELOAD",
    parse=lambda x: x.lower() == "true",
    default="false",
    type=(bool, ...),
)

HTTP_EXPOSE_ERRORS = EnvVarSpec(
    id="HTTP_EXPOSE_ERRORS",
    default="false",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

## Bidding ##

BID_LOCK_TIMEOUT_SECONDS = EnvVarSpec(
    id="BID_LOCK_TIMEOUT_SECONDS",
    default="5.0",
    parse=float,
    type=(float, ...),
)

BID_COMMIT_MAX_RETRIES = EnvVarSpec(
    id="BID_COMMIT_MAX_RETRIES",
    default="3",
    parse=int,
    type=(int, ...),
)

BID_COMMIT_BACKOFF_MS = EnvVarSpec(
    id="BID_COMMIT_BACKOFF_MS",
    default="10",
    parse=int,
    type=(int, ...),
)

FINAL_COUNTDOWN_SECONDS = EnvVarSpec(
    id="FINAL_COUNTDOWN_SECONDS",
    default="60",
    parse=int,
    type=(int, ...),
)

#### Validation ####
VALIDATED_ENV_VARS = [
    HTTP_AUTORELOAD,
    HTTP_EXPOSE_ERRORS,
    HTTP_PORT,
    LOG_LEVEL,
    BID_LOCK_TIMEOUT_SECONDS,
    BID_COMMIT_MAX_RETRIES,
    BID_COMMIT_BACKOFF_MS,
    FINAL_COUNTDOWN_SECONDS,
]

def validate() -> bool:
    return env.validate(VALIDATED_ENV_VARS)

#### Getters ####

def get_http_expose_errors() -> bool:
    return env.parse(HTTP_EXPOSE_ERRORS)

def get_log_level() -> str:
    return env.parse(LOG_LEVEL)

def get_http_conf() -> HttpServerConf:
    return HttpServerConf(
        host=env.parse(HTTP_HOST),
        port=env.parse(HTTP_PORT),
        autoreload=env.parse(HTTP_AUTORELOAD),
    )

def get_bidding_conf() -> BiddingConf:
    lock_timeout_seconds = env.parse(BID_LOCK_TIMEOUT_SECONDS)
    commit_max_retries = env.parse(BID_COMMIT_MAX_RETRIES)
    commit_backoff_ms = env.parse(BID_COMMIT_BACKOFF_MS)
    final_countdown_seconds = env.parse(FINAL_COUNTDOWN_SECONDS)

    return BiddingConf(
        lock_timeout_seconds=max(0.1, lock_timeout_seconds),
        commit_max_retries=max(0, commit_max_retries),
        commit_backoff_ms=max(0, commit_backoff_ms),
        final_countdown_seconds=max(0, final_countdown_seconds),
    )
