"""
Rotation type definitions
"""

from datetime import datetime
from enum import Enum
from typing import Literal, NamedTuple, Optional

from pydantic import BaseModel, Field, field_validator

from ..models import PoolType, RotationMode, RotationStrategy, RotationTrigger


class PoolMemberConfig(BaseModel):
    machine_id: int
    # Lower goes first; defaults to the position in the member list
    priority: Optional[int] = None
    enabled: bool = True


class PoolConfig(BaseModel):
    """Operator supplied settings of a record pool or wildcard pool."""

    target_ip: str = Field(min_length=1)
    target_port: int = Field(default=443, ge=1, le=65535)
    target_port_http: int = Field(default=80, ge=1, le=65535)
    rotation_strategy: RotationStrategy = RotationStrategy.ROUND_ROBIN
    rotation_mode: RotationMode = RotationMode.INTERVAL
    interval_minutes: int = Field(default=60, ge=1)
    scheduled_times: list[str] = Field(default_factory=list)
    health_check_enabled: bool = False
    # Explicit members, a bare machine id is an enabled member at its position
    members: list[PoolMemberConfig] = Field(default_factory=list)
    group_ids: list[int] = Field(default_factory=list)

    @field_validator("members", mode="before")
    @classmethod
    def _expand_machine_ids(cls, value):
        if isinstance(value, list):
            return [{"machine_id": item} if isinstance(item, int) else item for item in value]
        return value


class WildcardPoolConfig(PoolConfig):
    include_root: bool = True
    record_type: Literal["A", "AAAA"] = "A"


class PoolKey(NamedTuple):
    pool_type: PoolType
    pool_id: int


class RotationDecision(str, Enum):
    NOT_DUE = "not_due"
    UNCHANGED = "unchanged"
    ROTATED = "rotated"


class RotationResult(NamedTuple):
    """What a single evaluation of a pool did."""

    pool_type: PoolType
    pool_id: int
    decision: RotationDecision
    trigger: Optional[RotationTrigger] = None
    from_machine_id: Optional[int] = None
    to_machine_id: Optional[int] = None
    to_ip: Optional[str] = None
    rotated_at: Optional[datetime] = None
