"""
linkrewards/ingestor/

Ledger-sourced topology and telemetry: data model and fetcher boundary.
"""

from .types import (
    ACTIVATED,
    LinkKey,
    RawSample,
    TelemetryAccount,
    Location,
    Device,
    Link,
    ValidatorPlacement,
    Topology,
    RawFetchResult,
)
from .fetcher import (
    Fetcher,
    DirectoryFetcher,
    decode_account_epoch,
    encode_account_header,
    validate_accounts,
    DEVICE_TELEMETRY_DISCRIMINATOR,
    INTERNET_TELEMETRY_DISCRIMINATOR,
)

__all__ = [
    "ACTIVATED",
    "LinkKey",
    "RawSample",
    "TelemetryAccount",
    "Location",
    "Device",
    "Link",
    "ValidatorPlacement",
    "Topology",
    "RawFetchResult",
    "Fetcher",
    "DirectoryFetcher",
    "decode_account_epoch",
    "encode_account_header",
    "validate_accounts",
    "DEVICE_TELEMETRY_DISCRIMINATOR",
    "INTERNET_TELEMETRY_DISCRIMINATOR",
]
