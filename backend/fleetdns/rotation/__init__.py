"""
Dynamic rotation of DNS records across fleet machines.
"""

from .membership import Candidate, MembershipResolver, Resolution
from .rotator import PoolRotator
from .scheduler import RotationScheduler
from .strategy import is_due, select_next
from .types import (
    PoolConfig,
    RotationDecision,
    RotationResult,
    WildcardPoolConfig,
)

__all__ = [
    "Candidate",
    "MembershipResolver",
    "PoolConfig",
    "PoolRotator",
    "Resolution",
    "RotationDecision",
    "RotationResult",
    "RotationScheduler",
    "WildcardPoolConfig",
    "is_due",
    "select_next",
]
