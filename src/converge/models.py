"""Pydantic models for resource definitions and provider schemas.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Provider schema metadata consumed by the diff engine
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Resource type names: lowercase with underscores (e.g. azure_virtual_network)
VALID_TYPE_PATTERN = r"^[a-z][a-z0-9_]*$"
# Block names: identifier-like, dashes allowed (e.g. hub, app-subnet)
VALID_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_-]*$"

MAX_COUNT = 1000


# =============================================================================
# Definition Documents
# =============================================================================


class LifecycleConfig(BaseModel):
    """Per-block lifecycle overrides."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    # None means "let the provider schema / dependents decide"
    create_before_destroy: bool | None = Field(None, alias="createBeforeDestroy")

    # Attribute paths (glob patterns) whose drift is never planned
    # Example: ignoreChanges: ["tags.*", "properties.agentPoolProfiles"]
    ignore_changes: list[str] = Field(default_factory=list, alias="ignoreChanges")


class ResourceBlock(BaseModel):
    """A single declared resource block.

    A block with ``count`` or ``forEach`` expands into several addressed
    nodes; a plain block yields exactly one.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: Annotated[str, Field(pattern=VALID_TYPE_PATTERN, max_length=64)]
    name: Annotated[str, Field(pattern=VALID_NAME_PATTERN, max_length=64)]
    count: Annotated[int, Field(ge=0, le=MAX_COUNT)] | None = None
    for_each: list[str] | dict[str, Any] | None = Field(None, alias="forEach")
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    attributes: dict[str, Any] = Field(default_factory=dict)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)

    @field_validator("for_each")
    @classmethod
    def validate_for_each(
        cls, v: list[str] | dict[str, Any] | None
    ) -> list[str] | dict[str, Any] | None:
        if isinstance(v, list):
            if len(v) != len(set(v)):
                raise ValueError("forEach list must not contain duplicates")
            if len(v) > MAX_COUNT:
                raise ValueError(f"forEach supports at most {MAX_COUNT} entries")
        return v

    @model_validator(mode="after")
    def validate_repetition(self) -> ResourceBlock:
        if self.count is not None and self.for_each is not None:
            raise ValueError("count and forEach are mutually exclusive")
        return self

    @property
    def block_address(self) -> str:
        """Address of the block before expansion (type.name)."""
        return f"{self.type}.{self.name}"


class DefinitionDocument(BaseModel):
    """Body of one definitions file."""

    model_config = {"extra": "forbid"}

    variables: dict[str, Any] = Field(default_factory=dict)
    resources: list[ResourceBlock] = Field(default_factory=list)


# =============================================================================
# Provider Schema Metadata
# =============================================================================


class ReplaceStrategy(str, Enum):
    """Ordering of the two halves of a replacement."""

    AUTO = "auto"  # Decided per plan: create first when still referenced
    CREATE_BEFORE_DELETE = "create_before_delete"
    DELETE_BEFORE_CREATE = "delete_before_create"


class ResourceTypeSchema(BaseModel):
    """Provider-declared behavior of one resource type.

    The diff engine reads update-vs-replace from ``immutable_attributes``
    rather than from per-type logic of its own.
    """

    model_config = {"extra": "ignore", "frozen": True}

    type_name: Annotated[str, Field(pattern=VALID_TYPE_PATTERN)]

    # Attribute paths that cannot be changed in place (e.g. "location",
    # "properties.dnsPrefix"). A change to any of them forces a replace.
    immutable_attributes: tuple[str, ...] = ()

    replace_strategy: ReplaceStrategy = ReplaceStrategy.AUTO

    def is_immutable(self, path: str) -> bool:
        """Check whether a change at ``path`` requires replacement."""
        for immutable in self.immutable_attributes:
            if path == immutable or path.startswith(immutable + "."):
                return True
            # Whole parent object replaced (e.g. "properties" changed wholesale)
            if immutable.startswith(path + "."):
                return True
        return False
