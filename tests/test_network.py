"""Tree views and audited sponsor/placement overrides."""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException

from app.models.audit_log import AuditLog
from app.models.carryover import CarryoverEntry
from app.services import overrides, tree_store
from tests.conftest import arena_of, make_fake_user, make_node


def _mock_db():
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    return db


# ── Stats ────────────────────────────────────────────────────────────────

async def test_stats_report_open_volume_balance_and_carryover():
    root = make_node(personal="20", left="100", right="40", left_flushed="60")
    a = make_node(root, "left")
    b = make_node(root, "right")
    c = make_node(a, "left")
    entry = CarryoverEntry(node_id=root.id, leg="left", amount=Decimal("25"), cycles_remaining=2)

    with (
        patch("app.services.tree_store.require_node", AsyncMock(return_value=root)),
        patch("app.services.tree_store.load_arena", AsyncMock(return_value=arena_of(root, a, b, c))),
        patch("app.services.carryover.get_entries", AsyncMock(return_value=[entry])),
    ):
        stats = await tree_store.get_network_stats(_mock_db(), root.id)

    assert stats.group_volume == Decimal("140")
    assert stats.weaker_leg == "right"
    assert stats.balance_percentage == 40
    assert stats.left.open_volume == Decimal("40")
    assert stats.left.carryover == Decimal("25")
    assert stats.left.carryover_cycles_remaining == 2
    assert stats.left.members == 2
    assert stats.right.members == 1
    assert stats.right.carryover == 0


def test_iter_subtree_is_breadth_first():
    root = make_node()
    a = make_node(root, "left")
    b = make_node(root, "right")
    c = make_node(a, "left")
    d = make_node(b, "right")
    arena = arena_of(root, a, b, c, d)

    assert list(tree_store.iter_subtree(arena, root.id)) == [root, a, b, c, d]
    assert list(tree_store.iter_subtree(arena, None)) == []


async def test_tree_endpoint_unknown_node_returns_404(client, override_auth, override_db):
    override_auth(make_fake_user(permissions={"network:read"}))
    override_db(AsyncMock())

    with patch("app.services.tree_store.get_binary_tree", AsyncMock(return_value=None)):
        resp = await client.get(f"/api/v1/network/nodes/{uuid.uuid4()}/tree")

    assert resp.status_code == 404


# ── Sponsor override ─────────────────────────────────────────────────────

async def test_sponsor_cannot_be_self():
    node = make_node()

    with patch("app.services.tree_store.require_node", AsyncMock(return_value=node)):
        with pytest.raises(HTTPException) as exc:
            await overrides.reassign_sponsor(
                _mock_db(), node.id, node.affiliate_id, "typo fix", uuid.uuid4()
            )
    assert exc.value.status_code == 422


async def test_sponsor_override_is_audited():
    node = make_node()
    old_sponsor = uuid.uuid4()
    node.sponsor_id = old_sponsor
    new_sponsor = uuid.uuid4()
    db = _mock_db()

    with (
        patch("app.services.tree_store.require_node", AsyncMock(return_value=node)),
        patch("app.services.directory.get_affiliate", AsyncMock(return_value=MagicMock())),
    ):
        await overrides.reassign_sponsor(db, node.id, new_sponsor, "wrong referral", uuid.uuid4())

    assert node.sponsor_id == new_sponsor
    audit = db.add.call_args.args[0]
    assert isinstance(audit, AuditLog)
    assert audit.old_values == {"sponsor_id": str(old_sponsor)}
    assert audit.reason == "wrong referral"


async def test_sponsor_override_requires_permission(client, override_auth, override_db):
    override_auth(make_fake_user(permissions={"network:place", "network:read"}))
    override_db(AsyncMock())

    resp = await client.post(
        f"/api/v1/network/nodes/{uuid.uuid4()}/sponsor",
        json={"new_sponsor_id": str(uuid.uuid4()), "reason": "wrong referral"},
    )
    assert resp.status_code == 403


# ── Relocation ───────────────────────────────────────────────────────────

async def test_root_cannot_be_relocated():
    root = make_node()

    with patch("app.services.tree_store.require_node", AsyncMock(return_value=root)):
        with pytest.raises(HTTPException) as exc:
            await overrides.relocate_node(
                _mock_db(), root.id, uuid.uuid4(), "left", "reorganize", uuid.uuid4()
            )
    assert exc.value.status_code == 409


async def test_cannot_move_under_own_subtree():
    root = make_node()
    a = make_node(root, "left")
    c = make_node(a, "left")

    with (
        patch("app.services.tree_store.require_node", AsyncMock(return_value=a)),
        patch("app.services.tree_store.get_node", AsyncMock(return_value=c)),
        patch("app.services.tree_store.load_arena", AsyncMock(return_value=arena_of(root, a, c))),
    ):
        with pytest.raises(HTTPException) as exc:
            await overrides.relocate_node(_mock_db(), a.id, c.id, "right", "reorganize", uuid.uuid4())
    assert exc.value.status_code == 409


async def test_cannot_move_into_taken_slot():
    root = make_node()
    a = make_node(root, "left")
    b = make_node(root, "right")
    c = make_node(a, "left")
    make_node(b, "left")

    with (
        patch("app.services.tree_store.require_node", AsyncMock(return_value=c)),
        patch("app.services.tree_store.get_node", AsyncMock(return_value=b)),
        patch("app.services.tree_store.load_arena", AsyncMock(return_value=arena_of(root, a, b, c))),
    ):
        with pytest.raises(HTTPException) as exc:
            await overrides.relocate_node(_mock_db(), c.id, b.id, "left", "reorganize", uuid.uuid4())
    assert exc.value.status_code == 409


def _arena_lookup(arena):
    async def _get_node(_db, node_id, for_update=False):
        return arena.get(node_id)
    return _get_node


async def _relocate(arena, node, new_parent, new_leg):
    db = _mock_db()
    with (
        patch("app.services.tree_store.get_node", side_effect=_arena_lookup(arena)),
        patch("app.services.tree_store.load_arena", AsyncMock(return_value=arena)),
    ):
        moved = await overrides.relocate_node(
            db, node.id, new_parent.id, new_leg, "team request", uuid.uuid4()
        )
    return db, moved


async def test_relocation_keeps_settled_volume_of_the_other_members():
    """
              a                    a
             / \\                 / \\
       (50) x   b      ->   (50) x   b
           /                        /
    (100) m                        m (100)

    a settled x's 50 on its left leg before m's 100 arrived.
    """
    a = make_node(left="150", left_flushed="50")
    x = make_node(a, "left", personal="50", left="100")
    b = make_node(a, "right")
    m = make_node(x, "left", personal="100")
    arena = arena_of(a, x, b, m)

    db, moved = await _relocate(arena, m, b, "left")

    assert moved is m
    assert x.left_child_id is None
    assert b.left_child_id == m.id
    assert (m.parent_id, m.leg, m.depth) == (b.id, "left", 2)

    # x's settled 50 stays settled, m's unpaid 100 stays open on the right
    assert (a.left_leg_volume, a.left_flushed_volume) == (Decimal("50"), Decimal("50"))
    assert (a.right_leg_volume, a.right_flushed_volume) == (Decimal("100"), 0)
    assert (x.left_leg_volume, x.left_flushed_volume) == (0, 0)
    assert (b.left_leg_volume, b.left_flushed_volume) == (Decimal("100"), 0)

    audit = db.add.call_args.args[0]
    assert audit.action == "network.relocate"
    assert audit.old_values["parent_id"] == str(x.id)
    assert audit.new_values["moved_volume"] == "100"
    assert audit.new_values["subtree_size"] == 1


async def test_relocation_keeps_settled_volume_settled_for_shared_ancestors():
    """m's 100 was already settled by x and a; b never saw it."""
    a = make_node(left="100", left_flushed="100")
    x = make_node(a, "left", left="100", left_flushed="100")
    b = make_node(a, "right")
    m = make_node(x, "left", personal="60", right="40")
    n = make_node(m, "right", personal="40")
    arena = arena_of(a, x, b, m, n)

    await _relocate(arena, m, b, "left")

    assert (x.left_leg_volume, x.left_flushed_volume) == (0, 0)
    assert (a.left_leg_volume, a.left_flushed_volume) == (0, 0)
    assert (a.right_leg_volume, a.right_flushed_volume) == (Decimal("100"), Decimal("100"))
    assert (b.left_leg_volume, b.left_flushed_volume) == (Decimal("100"), 0)
    assert (m.depth, n.depth) == (2, 3)


# ── Root activation ──────────────────────────────────────────────────────

async def test_root_for_placed_affiliate_conflicts():
    with (
        patch("app.services.directory.get_affiliate", AsyncMock(return_value=MagicMock())),
        patch("app.services.tree_store.get_node_by_affiliate", AsyncMock(return_value=make_node())),
    ):
        with pytest.raises(HTTPException) as exc:
            await tree_store.create_root_node(_mock_db(), uuid.uuid4(), uuid.uuid4())
    assert exc.value.status_code == 409


async def test_root_is_created_at_depth_zero():
    affiliate = MagicMock()
    affiliate.sponsor_id = None
    db = _mock_db()

    with (
        patch("app.services.directory.get_affiliate", AsyncMock(return_value=affiliate)),
        patch("app.services.tree_store.get_node_by_affiliate", AsyncMock(return_value=None)),
    ):
        node = await tree_store.create_root_node(db, uuid.uuid4(), uuid.uuid4())

    assert node.parent_id is None
    assert node.leg is None
    assert node.depth == 0
    assert isinstance(db.add.call_args.args[0], AuditLog)
