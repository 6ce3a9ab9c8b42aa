"""
Seed script: populates the database with the roles and permissions used by
the network engine endpoints.

Usage:
    python -m app.db.seed
"""

import asyncio

from sqlalchemy import select

from app.db.session import async_session_factory
from app.models.associations import role_permissions
from app.models.role import Permission, Role

# --- Seed data ---

ROLES = [
    {"name": "super_admin", "display_name": "Super Administrator", "is_system": True},
    {"name": "admin", "display_name": "Administrator", "is_system": True},
    {"name": "operator", "display_name": "Network Operator", "is_system": True},
    {"name": "distributor", "display_name": "Distributor", "is_system": True},
]

PERMISSIONS = [
    # Network
    {"codename": "network:place", "resource": "network", "action": "place", "description": "Create roots and place affiliates"},
    {"codename": "network:read", "resource": "network", "action": "read", "description": "View nodes, trees and leg stats"},
    {"codename": "network:override", "resource": "network", "action": "override", "description": "Change sponsor or relocate nodes"},
    # Volumes
    {"codename": "volumes:post", "resource": "volumes", "action": "post", "description": "Post qualifying sales volume"},
    {"codename": "volumes:rebuild", "resource": "volumes", "action": "rebuild", "description": "Verify and rebuild leg volumes"},
    # Commissions
    {"codename": "commissions:run", "resource": "commissions", "action": "run", "description": "Run cycles and record adjustments"},
    {"codename": "commissions:read", "resource": "commissions", "action": "read", "description": "View cycles and commission records"},
]

# super_admin gets ALL permissions
FULL_ACCESS_ROLES = ["super_admin"]

ROLE_PERMISSIONS = {
    "admin": [
        "network:place", "network:read", "network:override",
        "volumes:post", "volumes:rebuild",
        "commissions:run", "commissions:read",
    ],
    "operator": [
        "network:place", "network:read",
        "volumes:post",
        "commissions:read",
    ],
    "distributor": [
        "network:read",
    ],
}


async def _grant(db, role: Role, perm: Permission) -> None:
    existing = await db.execute(
        select(role_permissions).where(
            role_permissions.c.role_id == role.id,
            role_permissions.c.permission_id == perm.id,
        )
    )
    if existing.first() is None:
        await db.execute(
            role_permissions.insert().values(role_id=role.id, permission_id=perm.id)
        )


async def seed_database():
    async with async_session_factory() as db:
        # 1. Seed permissions
        print("Seeding permissions...")
        perm_map: dict[str, Permission] = {}
        for perm_data in PERMISSIONS:
            result = await db.execute(
                select(Permission).where(Permission.codename == perm_data["codename"])
            )
            perm = result.scalar_one_or_none()
            if perm is None:
                perm = Permission(**perm_data)
                db.add(perm)
                await db.flush()
            perm_map[perm.codename] = perm
        print(f"  {len(perm_map)} permissions ready.")

        # 2. Seed roles
        print("Seeding roles...")
        role_map: dict[str, Role] = {}
        for role_data in ROLES:
            result = await db.execute(
                select(Role).where(Role.name == role_data["name"])
            )
            role = result.scalar_one_or_none()
            if role is None:
                role = Role(**role_data)
                db.add(role)
                await db.flush()
            role_map[role.name] = role
        print(f"  {len(role_map)} roles ready.")

        # 3. Assign permissions to roles
        print("Assigning permissions to roles...")
        for role_name in FULL_ACCESS_ROLES:
            for perm in perm_map.values():
                await _grant(db, role_map[role_name], perm)

        # Clear existing permissions for non-full-access roles before reassigning
        for role_name in ROLE_PERMISSIONS:
            await db.execute(
                role_permissions.delete().where(
                    role_permissions.c.role_id == role_map[role_name].id
                )
            )

        for role_name, perm_codenames in ROLE_PERMISSIONS.items():
            for codename in perm_codenames:
                await _grant(db, role_map[role_name], perm_map[codename])
        print("  Permissions assigned.")

        await db.commit()
        print("Seed complete!")


if __name__ == "__main__":
    asyncio.run(seed_database())
