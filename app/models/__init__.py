from app.models.affiliate import Affiliate
from app.models.associations import role_permissions, user_roles
from app.models.audit_log import AuditLog
from app.models.carryover import CarryoverEntry
from app.models.commission import (
    CommissionAdjustment,
    CommissionCycle,
    CommissionRecord,
    CycleSnapshot,
)
from app.models.network_node import NetworkNode
from app.models.payout import PayoutInstruction
from app.models.role import Permission, Role
from app.models.user import User
from app.models.volume_event import VolumeEvent

__all__ = [
    "Affiliate",
    "AuditLog",
    "CarryoverEntry",
    "CommissionAdjustment",
    "CommissionCycle",
    "CommissionRecord",
    "CycleSnapshot",
    "NetworkNode",
    "PayoutInstruction",
    "Permission",
    "Role",
    "User",
    "VolumeEvent",
    "user_roles",
    "role_permissions",
]
