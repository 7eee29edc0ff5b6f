"""
Typed environment variables.

Each variable is declared once as an ``EnvVarSpec``; ``validate`` checks a
list of them with a generated pydantic model and ``parse`` reads one.
"""

import os
from typing import Any, Callable, List, Optional, Tuple

from pydantic import BaseModel, ValidationError, create_model

from utils import log

logger = log.get_logger(__name__)


class EnvVarSpec(BaseModel):
    id: str
    default: Optional[str] = None
    parse: Callable[[str], Any] = lambda x: x
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


def parse(var: EnvVarSpec) -> Any:
    value = os.environ.get(var.id, var.default)
    if value is None:
        if var.is_optional:
            return None
        raise ValueError(f"Environment variable {var.id} is not set")
    return var.parse(value)


def validate(vars: List[EnvVarSpec]) -> bool:
    fields = {}
    values = {}
    for var in vars:
        type_, default = var.type
        fields[var.id] = (Optional[type_], None) if var.is_optional else (type_, default)
        try:
            values[var.id] = parse(var)
        except ValueError as e:
            logger.error(f"Invalid value for {var.id}: {e}")
            return False

    model = create_model("EnvVars", **fields)
    try:
        model(**values)
    except ValidationError as e:
        for error in e.errors():
            name = error["loc"][0] if error["loc"] else "?"
            spec = next((v for v in vars if v.id == name), None)
            shown = "<hidden>" if spec and spec.is_secret else values.get(name)
            logger.error(f"Invalid value for {name} ({shown}): {error['msg']}")
        return False
    return True
