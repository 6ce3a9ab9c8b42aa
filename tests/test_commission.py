"""Binary commission cycle: matching, cap, carryover lifetime and per-node settlement."""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError

from app.models.carryover import CarryoverEntry
from app.models.commission import CommissionCycle, CommissionRecord, CycleSnapshot
from app.models.payout import PayoutInstruction
from app.services.carryover import LegOutcome
from app.services.commission import (
    CycleRunReport,
    NodeSnapshot,
    build_snapshots,
    compute_commission,
    record_adjustment,
    run_cycle,
    settle_node,
    settle_snapshot,
)
from tests.conftest import arena_of, make_fake_user, make_node

CUTOFF = datetime(2026, 10, 12, tzinfo=timezone.utc)
D = Decimal


def snapshot(left="0", right="0", left_carry="0", right_carry="0",
             left_cycles=0, right_cycles=0, node_id=None):
    return NodeSnapshot(
        node_id=node_id or uuid.uuid4(),
        affiliate_id=uuid.uuid4(),
        left_total=D(left),
        right_total=D(right),
        left_fresh=D(left),
        right_fresh=D(right),
        left_carry=D(left_carry),
        right_carry=D(right_carry),
        left_carry_cycles=left_cycles,
        right_carry_cycles=right_cycles,
    )


def make_cycle(cycle_id="2026-W41", percentage="10", cap="50"):
    return CommissionCycle(
        id=uuid.uuid4(),
        cycle_id=cycle_id,
        cutoff_at=CUTOFF,
        percentage=D(percentage),
        cap_per_cycle=D(cap),
        max_carryover_cycles=3,
        status="running",
        started_at=CUTOFF,
        completed_at=None,
        nodes_total=0,
        nodes_processed=0,
        nodes_failed=0,
    )


# ── settle_node ──────────────────────────────────────────────────────────

def test_match_pays_weaker_leg_and_carries_excess():
    result = settle_node(snapshot(left="100", right="30"), D("10"), D("50"), 3)

    assert result.matched_volume == D("30")
    assert result.commission_amount == D("3.00")
    assert result.capped_amount == D("3.00")
    assert result.left == LegOutcome(amount=D("70"), cycles_remaining=3)
    assert result.right.is_empty


def test_cap_limits_paid_amount_only():
    result = settle_node(snapshot(left="1000", right="800"), D("10"), D("50"), 3)

    assert result.commission_amount == D("80.00")
    assert result.capped_amount == D("50")
    assert result.left.amount == D("200")


def test_commission_rounds_half_up_to_cents():
    raw, capped = compute_commission(D("33.35"), D("10"), D("1000"))
    assert raw == D("3.34")
    assert capped == D("3.34")


def test_carryover_joins_next_cycle_match():
    result = settle_node(
        snapshot(left="0", right="50", left_carry="70", left_cycles=3), D("10"), D("50"), 3
    )

    assert result.left_volume == D("70")
    assert result.matched_volume == D("50")
    assert result.left == LegOutcome(amount=D("20"), cycles_remaining=3)
    assert result.right.is_empty


def test_weaker_leg_carryover_is_consumed():
    result = settle_node(
        snapshot(left="0", right="80", left_carry="50", left_cycles=1), D("10"), D("50"), 3
    )

    assert result.matched_volume == D("50")
    assert result.left.is_empty
    assert result.left.forfeited == 0
    assert result.right == LegOutcome(amount=D("30"), cycles_remaining=3)


def test_idle_carryover_expires_after_three_cycles():
    outcome = LegOutcome(amount=D("70"), cycles_remaining=3)
    lifetimes = []

    for _ in range(3):
        result = settle_node(
            snapshot(left_carry=str(outcome.amount), left_cycles=outcome.cycles_remaining),
            D("10"), D("50"), 3,
        )
        assert result.matched_volume == 0
        outcome = result.left
        lifetimes.append(outcome.cycles_remaining)

    assert lifetimes == [2, 1, 0]
    assert outcome.is_empty
    assert outcome.forfeited == D("70")


def test_fresh_volume_refreshes_carryover_lifetime():
    result = settle_node(
        snapshot(left="10", left_carry="70", left_cycles=1), D("10"), D("50"), 3
    )

    assert result.matched_volume == 0
    assert result.left == LegOutcome(amount=D("80"), cycles_remaining=3)


# ── build_snapshots ──────────────────────────────────────────────────────

def _always(node, personal):
    return True


def test_snapshot_excludes_volume_after_cutoff():
    root = make_node(left="100", right="30")
    left = make_node(root, "left", personal="100")
    right = make_node(root, "right", personal="30")

    snapshots = build_snapshots(
        arena_of(root, left, right), [(left.id, D("20"))], {}, _always
    )

    assert [s.node_id for s in snapshots] == [root.id]
    assert snapshots[0].left_total == D("80")
    assert snapshots[0].right_total == D("30")


def test_snapshot_subtracts_flushed_volume():
    root = make_node(left="150", right="60", left_flushed="100", right_flushed="30")

    (snap,) = build_snapshots(arena_of(root), [], {}, _always)

    assert snap.left_total == D("150")
    assert snap.left_fresh == D("50")
    assert snap.right_fresh == D("30")


def test_snapshot_carries_ledger_entries():
    root = make_node()
    entry = CarryoverEntry(node_id=root.id, leg="right", amount=D("40"), cycles_remaining=2)

    (snap,) = build_snapshots(arena_of(root), [], {(root.id, "right"): entry}, _always)

    assert snap.right_carry == D("40")
    assert snap.right_carry_cycles == 2
    assert snap.left_carry == 0


def test_ineligible_nodes_are_skipped():
    root = make_node(left="100", right="100")

    assert build_snapshots(arena_of(root), [], {}, lambda node, personal: False) == []


def test_min_personal_volume_uses_volume_at_cutoff():
    root = make_node(personal="60", left="100", right="100")

    def eligible(node, personal):
        return personal >= D("50")

    assert build_snapshots(arena_of(root), [(root.id, D("20"))], {}, eligible) == []


# ── settle_snapshot ──────────────────────────────────────────────────────

def _result(scalar=None):
    result = MagicMock()
    result.scalar_one_or_none.return_value = scalar
    return result


def _mock_db(*results):
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.execute.side_effect = list(results)
    return db


async def test_existing_record_is_not_written_twice():
    node = make_node(left="100", right="30")
    db = _mock_db(_result(scalar=uuid.uuid4()))

    with (
        patch("app.services.tree_store.get_node", AsyncMock(return_value=node)),
        patch("app.services.carryover.apply_outcome", AsyncMock()) as apply_outcome,
    ):
        record = await settle_snapshot(
            db, make_cycle(), snapshot(left="100", right="30", node_id=node.id)
        )

    assert record is None
    db.add.assert_not_called()
    apply_outcome.assert_not_called()
    assert node.left_flushed_volume == 0


async def test_node_settled_by_later_cycle_is_skipped():
    node = make_node(left="100", right="30")
    node.flushed_through = CUTOFF + timedelta(days=7)
    db = _mock_db(_result(scalar=None))

    with patch("app.services.tree_store.get_node", AsyncMock(return_value=node)):
        record = await settle_snapshot(
            db, make_cycle(), snapshot(left="100", right="30", node_id=node.id)
        )

    assert record is None
    db.add.assert_not_called()


async def test_settlement_writes_record_payout_and_flush():
    node = make_node(left="100", right="30")
    db = _mock_db(_result(scalar=None))

    with (
        patch("app.services.tree_store.get_node", AsyncMock(return_value=node)),
        patch("app.services.carryover.apply_outcome", AsyncMock()) as apply_outcome,
    ):
        record = await settle_snapshot(
            db, make_cycle(), snapshot(left="100", right="30", node_id=node.id)
        )

    assert isinstance(record, CommissionRecord)
    assert record.matched_volume == D("30")
    assert record.capped_amount == D("3.00")
    assert record.carryover_left == D("70")
    assert record.carryover_right == 0

    added = [call.args[0] for call in db.add.call_args_list]
    payouts = [obj for obj in added if isinstance(obj, PayoutInstruction)]
    assert len(payouts) == 1
    assert payouts[0].amount == D("3.00")
    assert payouts[0].cycle_id == "2026-W41"

    assert apply_outcome.await_count == 2
    assert node.left_flushed_volume == D("100")
    assert node.right_flushed_volume == D("30")
    assert node.flushed_through == CUTOFF


async def test_zero_commission_writes_no_payout():
    node = make_node(left="100")
    db = _mock_db(_result(scalar=None))

    with (
        patch("app.services.tree_store.get_node", AsyncMock(return_value=node)),
        patch("app.services.carryover.apply_outcome", AsyncMock()),
    ):
        record = await settle_snapshot(db, make_cycle(), snapshot(left="100", node_id=node.id))

    assert record.capped_amount == 0
    added = [call.args[0] for call in db.add.call_args_list]
    assert not any(isinstance(obj, PayoutInstruction) for obj in added)


async def test_missing_node_raises():
    db = _mock_db()

    with patch("app.services.tree_store.get_node", AsyncMock(return_value=None)):
        with pytest.raises(LookupError):
            await settle_snapshot(db, make_cycle(), snapshot(left="10", right="10"))


# ── run_cycle ────────────────────────────────────────────────────────────

def _session_factory(db):
    session_cm = MagicMock()
    session_cm.__aenter__.return_value = db
    db.begin = MagicMock(return_value=AsyncMock())
    return MagicMock(return_value=session_cm)


def _scalars(rows):
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows
    return result


def _snapshot_row(cycle_id):
    return CycleSnapshot(
        cycle_id=cycle_id,
        node_id=uuid.uuid4(),
        affiliate_id=uuid.uuid4(),
        left_total=D("100"),
        right_total=D("100"),
        left_fresh=D("100"),
        right_fresh=D("100"),
        left_carry=D("0"),
        right_carry=D("0"),
        left_carry_cycles=0,
        right_carry_cycles=0,
    )


async def test_one_failing_node_does_not_stop_the_cycle():
    cycle = make_cycle()
    rows = [_snapshot_row(cycle.cycle_id) for _ in range(3)]
    written = MagicMock(node_id=rows[0].node_id, capped_amount=D("10"))
    db = AsyncMock()
    db.execute.side_effect = [_scalars(rows), _scalars([written])]
    factory = _session_factory(db)

    with (
        patch("app.services.commission.open_cycle", AsyncMock(return_value=cycle)),
        patch(
            "app.services.commission._settle_in_transaction",
            AsyncMock(side_effect=[written, RuntimeError("deadlock"), None]),
        ),
        patch("app.services.commission._close_cycle", AsyncMock(return_value=cycle)) as close,
        patch("app.services.commission._notify_earners", AsyncMock()) as notify,
    ):
        report = await run_cycle(factory, cycle.cycle_id, D("10"), D("50"))

    assert report.settled_node_ids == [rows[0].node_id]
    assert report.failed_node_ids == [rows[1].node_id]
    assert report.skipped_node_ids == [rows[2].node_id]
    assert report.records == [written]
    close.assert_awaited_once_with(db, cycle.cycle_id, 1)
    notify.assert_awaited_once_with(db, [written])


async def test_reused_cycle_id_with_other_parameters_conflicts():
    from app.services.commission import open_cycle

    existing = make_cycle(percentage="10")
    db = _mock_db(_result(scalar=existing))

    with pytest.raises(HTTPException) as exc:
        await open_cycle(db, existing.cycle_id, D("12"), D("50"), None, 3)
    assert exc.value.status_code == 409


async def test_resumed_cycle_keeps_its_snapshot():
    from app.services.commission import open_cycle

    existing = make_cycle()
    existing.status = "completed_with_errors"
    db = _mock_db(_result(scalar=existing))

    cycle = await open_cycle(db, existing.cycle_id, D("10"), D("50"), None, 3)

    assert cycle is existing
    assert cycle.status == "running"
    db.add.assert_not_called()


async def test_first_run_with_naive_cutoff_is_stored_as_utc():
    from app.services.commission import open_cycle

    db = _mock_db(_result(scalar=None))
    db.begin_nested = MagicMock(return_value=AsyncMock())

    with patch("app.services.commission._take_snapshot", AsyncMock(return_value=[])) as take:
        cycle = await open_cycle(db, "2026-W41", D("10"), D("50"), datetime(2026, 10, 12), 3)

    assert cycle.cutoff_at == CUTOFF
    assert cycle.cutoff_at.tzinfo is not None
    take.assert_awaited_once_with(db, CUTOFF)


async def test_settlement_after_naive_first_run_compares_cutoffs():
    from app.services.commission import open_cycle

    db = _mock_db(_result(scalar=None))
    db.begin_nested = MagicMock(return_value=AsyncMock())
    with patch("app.services.commission._take_snapshot", AsyncMock(return_value=[])):
        cycle = await open_cycle(db, "2026-W41", D("10"), D("50"), datetime(2026, 10, 12), 3)

    node = make_node(left="100", right="30")
    node.flushed_through = CUTOFF - timedelta(days=7)
    with (
        patch("app.services.tree_store.get_node", AsyncMock(return_value=node)),
        patch("app.services.carryover.apply_outcome", AsyncMock()),
    ):
        record = await settle_snapshot(
            _mock_db(_result(scalar=None)), cycle,
            snapshot(left="100", right="30", node_id=node.id),
        )

    assert record.capped_amount == D("3.00")
    assert node.flushed_through == CUTOFF


async def test_concurrent_first_run_resumes_the_winner():
    from app.services.commission import open_cycle

    winner = make_cycle()
    db = _mock_db(_result(scalar=None), _result(scalar=winner))
    db.begin_nested = MagicMock(return_value=AsyncMock())
    db.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate cycle_id"))

    with patch("app.services.commission._take_snapshot", AsyncMock()) as take:
        cycle = await open_cycle(db, winner.cycle_id, D("10"), D("50"), CUTOFF, 3)

    assert cycle is winner
    assert cycle.status == "running"
    take.assert_not_awaited()


async def test_concurrent_first_run_with_other_parameters_conflicts():
    from app.services.commission import open_cycle

    winner = make_cycle(percentage="10")
    db = _mock_db(_result(scalar=None), _result(scalar=winner))
    db.begin_nested = MagicMock(return_value=AsyncMock())
    db.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate cycle_id"))

    with pytest.raises(HTTPException) as exc:
        await open_cycle(db, winner.cycle_id, D("12"), D("50"), CUTOFF, 3)
    assert exc.value.status_code == 409


# ── record_adjustment ────────────────────────────────────────────────────

async def test_zero_adjustment_is_rejected():
    with pytest.raises(HTTPException) as exc:
        await record_adjustment(AsyncMock(), uuid.uuid4(), "2026-W41", D("0"), "fix", uuid.uuid4())
    assert exc.value.status_code == 422


async def test_adjustment_needs_existing_record():
    db = _mock_db(_result(scalar=None))

    with pytest.raises(HTTPException) as exc:
        await record_adjustment(db, uuid.uuid4(), "2026-W41", D("-5"), "overpaid", uuid.uuid4())
    assert exc.value.status_code == 404


# ── /api/v1/commissions ──────────────────────────────────────────────────

RUN_URL = "/api/v1/commissions/cycles/2026-W41/run"


def _record(cycle_id):
    return CommissionRecord(
        id=uuid.uuid4(),
        node_id=uuid.uuid4(),
        affiliate_id=uuid.uuid4(),
        cycle_id=cycle_id,
        left_volume=D("100"),
        right_volume=D("30"),
        matched_volume=D("30"),
        percentage=D("10"),
        commission_amount=D("3.00"),
        capped_amount=D("3.00"),
        carryover_left=D("70"),
        carryover_right=D("0"),
        forfeited_volume=D("0"),
        computed_at=CUTOFF,
    )


async def test_run_requires_permission(client, override_auth, override_session_factory):
    override_auth(make_fake_user(permissions={"commissions:read"}))
    override_session_factory(MagicMock())

    resp = await client.post(RUN_URL, json={})
    assert resp.status_code == 403


async def test_run_uses_configured_plan_by_default(client, override_auth, override_session_factory):
    override_auth(make_fake_user(permissions={"commissions:run"}))
    factory = MagicMock()
    override_session_factory(factory)
    cycle = make_cycle()
    report = CycleRunReport(cycle=cycle, records=[_record(cycle.cycle_id)])

    with patch("app.services.commission.run_cycle", AsyncMock(return_value=report)) as run:
        resp = await client.post(RUN_URL, json={})

    assert resp.status_code == 200
    body = resp.json()
    assert body["cycle"]["cycle_id"] == "2026-W41"
    assert len(body["records"]) == 1
    assert body["failed_node_ids"] == []

    kwargs = run.await_args.kwargs
    assert run.await_args.args == (factory,)
    assert kwargs["percentage"] == D("10")
    assert kwargs["cap_per_cycle"] == D("10000")


async def test_invalid_cycle_id_is_rejected(client, override_auth, override_session_factory):
    override_auth(make_fake_user(is_superadmin=True))
    override_session_factory(MagicMock())

    resp = await client.post("/api/v1/commissions/cycles/bad%20id/run", json={})
    assert resp.status_code == 422


async def test_unknown_cycle_returns_404(client, override_auth, override_db):
    override_auth(make_fake_user(permissions={"commissions:read"}))
    override_db(AsyncMock())

    with patch(
        "app.services.commission.get_cycle",
        AsyncMock(side_effect=HTTPException(status_code=404, detail="Commission cycle not found")),
    ):
        resp = await client.get("/api/v1/commissions/cycles/2026-W40")

    assert resp.status_code == 404
