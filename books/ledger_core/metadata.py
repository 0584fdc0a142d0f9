"""
Versioned extension map stored on invoices and payments.

Metadata is a flat JSON object of string keys to scalar values, tagged
with a schema version. Older versions are upgraded on read so callers
always see the current layout.
"""
from django.core.exceptions import ValidationError

METADATA_VERSION = 2

_SCALARS = (str, int, bool, type(None))


def validate_metadata(value):
    """Model field validator: flat dict of str -> scalar."""
    if not isinstance(value, dict):
        raise ValidationError("metadata must be a JSON object")
    for key, item in value.items():
        if not isinstance(key, str) or not key:
            raise ValidationError("metadata keys must be non-empty strings")
        # floats are rejected so money never travels as binary floating point
        if not isinstance(item, _SCALARS):
            raise ValidationError(
                f"metadata value for '{key}' must be a string, integer, boolean or null"
            )


def upgrade_metadata(value, version):
    """Return (data, METADATA_VERSION) for metadata stored at `version`.

    v1 stored everything under a single "extra" object; v2 is flat.
    """
    data = dict(value or {})
    if version < 2:
        extra = data.pop("extra", None) or {}
        for key, item in extra.items():
            data.setdefault(str(key), item)
    return data, METADATA_VERSION
