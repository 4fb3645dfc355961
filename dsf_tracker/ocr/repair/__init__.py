from .normalize import (
    normalize,
    repair_text,
    split_timestamp,
)

__all__ = [
    "normalize",
    "repair_text",
    "split_timestamp",
]
