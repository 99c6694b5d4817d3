"""ORM models exposed by the PlateMate offline layer."""
from .kv_entry import KeyValueEntry

__all__ = ["KeyValueEntry"]
