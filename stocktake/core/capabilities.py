"""
Run store capabilities.

Older deployments stored only the operator's display name on counting runs;
newer ones also store the operator id. Which columns the store may rely on
is decided once at startup from settings and handed to the store as an
immutable value; no query inspects the schema.
"""
from dataclasses import dataclass

from stocktake.config import Settings

# First schema version whose counting runs carry owner_user_id.
OWNER_USER_ID_SCHEMA_VERSION = 2


@dataclass(frozen=True)
class StoreCapabilities:
    owner_user_id: bool = True
    operator_display_name: bool = True
    schema_version: int = OWNER_USER_ID_SCHEMA_VERSION

    def __post_init__(self):
        if not self.owner_user_id and not self.operator_display_name:
            raise ValueError("At least one run ownership column must be enabled")

    @classmethod
    def from_settings(cls, settings: Settings) -> "StoreCapabilities":
        owner_user_id = settings.RUN_OWNER_USER_ID_ENABLED
        if owner_user_id is None:
            owner_user_id = settings.SCHEMA_VERSION >= OWNER_USER_ID_SCHEMA_VERSION
        return cls(
            owner_user_id=owner_user_id,
            operator_display_name=settings.RUN_OPERATOR_NAME_ENABLED,
            schema_version=settings.SCHEMA_VERSION,
        )
