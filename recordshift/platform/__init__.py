from recordshift.platform.mapping import SYSTEM_FIELD_TYPES, extract_field_value, map_record_fields
from recordshift.platform.protocols import NullRateLimitProvider, RateLimitProvider, RecordPlatform
from recordshift.platform.types import CollectionField, PlatformApiError, Record, RecordField, RecordPage

__all__ = [
    "CollectionField",
    "NullRateLimitProvider",
    "PlatformApiError",
    "RateLimitProvider",
    "Record",
    "RecordField",
    "RecordPage",
    "RecordPlatform",
    "SYSTEM_FIELD_TYPES",
    "extract_field_value",
    "map_record_fields",
]
