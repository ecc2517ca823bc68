"""
Wire records exchanged with a PLC directory.

Field names and nesting match what the directory speaks (camelCase).
Unknown or missing keys are rejected rather than defaulted.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ServiceRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    endpoint: str


class OperationRecord(BaseModel):
    """One signed (or unsigned) plc_operation."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: Literal["plc_operation"]
    rotation_keys: list[str] = Field(alias="rotationKeys")
    verification_methods: dict[str, str] = Field(alias="verificationMethods")
    also_known_as: list[str] = Field(alias="alsoKnownAs")
    services: dict[str, ServiceRecord]
    prev: Optional[str]
    sig: Optional[str] = None


class DocumentRecord(BaseModel):
    """Current published state of an identifier (GET /{did}/data)."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    did: str
    rotation_keys: list[str] = Field(alias="rotationKeys")
    verification_methods: dict[str, str] = Field(alias="verificationMethods")
    also_known_as: list[str] = Field(alias="alsoKnownAs")
    services: dict[str, ServiceRecord]


class AuditEntry(BaseModel):
    """One entry of GET /{did}/log/audit."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    did: str
    operation: dict[str, Any]
    cid: str
    nullified: bool = False
    created_at: str = Field(default="", alias="createdAt")
