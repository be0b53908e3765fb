"""
JSON helpers for event payloads produced by remote-client drivers.
"""

import json
from dataclasses import asdict, is_dataclass
from enum import Enum
from json import JSONEncoder
from pathlib import Path
from typing import Any


class PayloadEncoder(JSONEncoder):
    """
    Encode dataclasses, enums, paths, exceptions and plain objects that
    drivers hand us as event payloads.
    """

    def default(self, o: Any) -> Any:
        if is_dataclass(o) and not isinstance(o, type):
            return asdict(o)
        if isinstance(o, Enum):
            return o.value
        if isinstance(o, Path):
            return str(o)
        if isinstance(o, (set, frozenset)):
            return list(o)
        if isinstance(o, Exception):
            return {
                "error_type": type(o).__name__,
                "message": str(o),
            }
        if hasattr(o, "model_dump") and callable(o.model_dump):
            return o.model_dump()
        if hasattr(o, "__dict__"):
            return {k: v for k, v in vars(o).items() if not k.startswith("_")}
        return str(o)


def to_serializable(obj: Any) -> Any:
    """Round-trip through the encoder to get plain JSON types."""
    return json.loads(json.dumps(obj, cls=PayloadEncoder))
