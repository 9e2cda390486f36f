"""Access to the external message store: fetching, schema, timestamps, identities."""

from .fetch import RawRow, RowFetcher, SqliteRowFetcher, StoreQuery  # noqa: F401
from .identity import IdentityResolver  # noqa: F401
from .schema import SchemaCache, SchemaCapabilities  # noqa: F401
from .timestamps import ScaleCache, TimestampScale, to_canonical_ms, to_raw_units  # noqa: F401
