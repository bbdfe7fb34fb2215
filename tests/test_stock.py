from decimal import Decimal

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from conftest import make_item, make_order, make_raw
from qahwa.db import Base
from qahwa.errors import InsufficientStockError, NotFoundError, StockConflictError, ValidationError
from qahwa.models.core import (
    AlertType, BranchStock, MovementType, OrderStatus, ReferenceType, StockAlert, StockMovement,
)
from qahwa.services import stock


def _level(db, shop, raw):
    return stock.get_stock_level(db, shop["branch_id"], raw.id)["current_quantity"]


def test_in_then_out_updates_balance(db, shop):
    beans = make_raw(db, shop["tenant_id"], "BEANS", "g", "0.08", threshold=100)
    mv = stock.record_movement(db, shop["branch_id"], beans.id, "in", 1000, notes="delivery")
    db.commit()
    assert mv.previous_quantity == 0
    assert mv.new_quantity == 1000
    assert mv.quantity == 1000

    mv = stock.record_movement(db, shop["branch_id"], beans.id, MovementType.OUT, 250)
    db.commit()
    assert mv.quantity == -250
    assert mv.previous_quantity == 1000
    assert mv.new_quantity == 750
    assert _level(db, shop, beans) == 750


def test_movement_freezes_unit_cost(db, shop):
    beans = make_raw(db, shop["tenant_id"], "BEANS", "g", "0.08")
    mv = stock.record_movement(db, shop["branch_id"], beans.id, "in", 10)
    db.commit()
    beans.unit_cost = Decimal("0.5")
    db.commit()
    assert db.get(StockMovement, mv.id).unit_cost == Decimal("0.08")


def test_out_below_zero_is_rejected(db, shop):
    milk = make_raw(db, shop["tenant_id"], "MILK", "ml", "0.002")
    stock.record_movement(db, shop["branch_id"], milk.id, "in", 100)
    db.commit()

    with pytest.raises(InsufficientStockError) as exc:
        stock.record_movement(db, shop["branch_id"], milk.id, "out", 150)
    db.rollback()

    assert exc.value.available == 100
    assert exc.value.requested == 150
    assert _level(db, shop, milk) == 100
    assert db.query(StockMovement).count() == 1


def test_waste_is_negative_and_adjustment_is_signed(db, shop):
    milk = make_raw(db, shop["tenant_id"], "MILK", "ml", "0.002")
    stock.record_movement(db, shop["branch_id"], milk.id, "in", 500)
    waste = stock.record_movement(db, shop["branch_id"], milk.id, "waste", 50, notes="spilled")
    fix = stock.record_movement(db, shop["branch_id"], milk.id, "adjustment", -25, notes="count")
    db.commit()

    assert waste.quantity == -50
    assert fix.quantity == -25
    assert fix.new_quantity == 425
    for mv in db.query(StockMovement).all():
        assert mv.new_quantity == mv.previous_quantity + mv.quantity


@pytest.mark.parametrize("mtype,qty", [("in", 0), ("out", -5), ("waste", 0), ("adjustment", 0)])
def test_invalid_quantity(db, shop, mtype, qty):
    milk = make_raw(db, shop["tenant_id"], "MILK", "ml", "0.002")
    with pytest.raises(ValidationError):
        stock.record_movement(db, shop["branch_id"], milk.id, mtype, qty)


def test_invalid_movement_type_and_missing_refs(db, shop):
    milk = make_raw(db, shop["tenant_id"], "MILK", "ml", "0.002")
    with pytest.raises(ValidationError):
        stock.record_movement(db, shop["branch_id"], milk.id, "gift", 5)
    with pytest.raises(ValidationError):
        stock.record_movement(db, "", milk.id, "in", 5)
    with pytest.raises(NotFoundError):
        stock.record_movement(db, shop["branch_id"], "missing", "in", 5)


def test_inactive_raw_item_rejects_manual_movements(db, shop):
    milk = make_raw(db, shop["tenant_id"], "MILK", "ml", "0.002")
    milk.is_active = False
    db.commit()
    with pytest.raises(ValidationError):
        stock.record_movement(db, shop["branch_id"], milk.id, "in", 5)


def test_movement_unit_is_converted(db, shop):
    milk = make_raw(db, shop["tenant_id"], "MILK", "ml", "0.002")
    mv = stock.record_movement(db, shop["branch_id"], milk.id, "in", 2, unit="l")
    db.commit()
    assert mv.new_quantity == 2000


def test_low_stock_alert_at_threshold(db, shop):
    beans = make_raw(db, shop["tenant_id"], "BEANS", "g", "0.08", threshold=200)
    stock.record_movement(db, shop["branch_id"], beans.id, "in", 1000)
    assert db.query(StockAlert).count() == 0

    stock.record_movement(db, shop["branch_id"], beans.id, "out", 800)
    db.commit()
    alerts = stock.list_alerts(db, shop["branch_id"], unresolved_only=True)
    assert len(alerts) == 1
    assert alerts[0].alert_type == AlertType.LOW_STOCK
    assert alerts[0].current_quantity == 200
    assert alerts[0].threshold_quantity == 200


def test_open_alert_is_refreshed_not_duplicated(db, shop):
    beans = make_raw(db, shop["tenant_id"], "BEANS", "g", "0.08", threshold=200)
    stock.record_movement(db, shop["branch_id"], beans.id, "in", 150)
    stock.record_movement(db, shop["branch_id"], beans.id, "out", 100)
    stock.record_movement(db, shop["branch_id"], beans.id, "out", 50)
    db.commit()

    alerts = db.query(StockAlert).all()
    assert len(alerts) == 1
    assert alerts[0].alert_type == AlertType.OUT_OF_STOCK
    assert alerts[0].current_quantity == 0
    assert stock.get_stock_level(db, shop["branch_id"], beans.id)["status"] == "out_of_stock"


def test_resolve_alert_is_idempotent(db, shop):
    beans = make_raw(db, shop["tenant_id"], "BEANS", "g", "0.08", threshold=200)
    stock.record_movement(db, shop["branch_id"], beans.id, "in", 100)
    db.commit()
    alert = db.query(StockAlert).one()

    resolved, changed = stock.resolve_alert(db, alert.id, "ordered 5 kg", "manager-1")
    db.commit()
    assert changed
    first_resolved_at = resolved.resolved_at

    again, changed = stock.resolve_alert(db, alert.id, "something else", "manager-2")
    assert not changed
    assert again.resolved_at == first_resolved_at
    assert again.resolved_by == "manager-1"
    assert again.action_taken == "ordered 5 kg"

    with pytest.raises(NotFoundError):
        stock.resolve_alert(db, "missing", None, None)


def test_new_alert_after_resolution(db, shop):
    beans = make_raw(db, shop["tenant_id"], "BEANS", "g", "0.08", threshold=200)
    stock.record_movement(db, shop["branch_id"], beans.id, "in", 100)
    alert = db.query(StockAlert).one()
    stock.resolve_alert(db, alert.id, None, None)
    stock.record_movement(db, shop["branch_id"], beans.id, "out", 10)
    db.commit()
    assert len(stock.list_alerts(db, shop["branch_id"])) == 2
    assert len(stock.list_alerts(db, shop["branch_id"], unresolved_only=True)) == 1


def test_list_movements_newest_first_and_limit_clamped(db, shop):
    beans = make_raw(db, shop["tenant_id"], "BEANS", "g", "0.08")
    for q in (1, 2, 3):
        stock.record_movement(db, shop["branch_id"], beans.id, "in", q)
        db.commit()

    rows = stock.list_movements(db, shop["branch_id"], limit=2)
    assert [r.quantity for r in rows] == [3, 2]
    assert len(stock.list_movements(db, shop["branch_id"], limit=0)) == 1
    assert len(stock.list_movements(db, shop["branch_id"], limit=10_000)) == 3
    assert stock.list_movements(db, "other-branch") == []


def test_stock_rows_are_per_branch(db, shop):
    beans = make_raw(db, shop["tenant_id"], "BEANS", "g", "0.08")
    stock.record_movement(db, shop["branch_id"], beans.id, "in", 100)
    stock.record_movement(db, "branch-2", beans.id, "in", 40)
    db.commit()
    assert db.query(BranchStock).count() == 2
    assert _level(db, shop, beans) == 100


def test_deduct_for_order(db, shop):
    milk = make_raw(db, shop["tenant_id"], "MILK", "ml", "0.002")
    cup = make_raw(db, shop["tenant_id"], "CUP", "pcs", "0.25")
    latte = make_item(db, shop["tenant_id"], "Latte", 15, shop["hot"], recipe=[(milk, 200, "ml"), (cup, 1, "pcs")])
    cortado = make_item(db, shop["tenant_id"], "Cortado", 13, shop["hot"], recipe=[(milk, 100, "ml"), (cup, 1, "pcs")])
    stock.record_movement(db, shop["branch_id"], milk.id, "in", 1000)
    stock.record_movement(db, shop["branch_id"], cup.id, "in", 1)
    db.commit()

    order = make_order(db, shop, [(latte, 2, 15, "0.65"), (cortado, 1, 13, "0.45")])
    result = stock.deduct_for_order(db, order, "cashier-1")
    db.commit()

    # milk deducted once for 500 ml, cups short by 2
    assert not result["success"]
    assert len(result["deductions"]) == 1
    assert result["deductions"][0]["raw_item_id"] == milk.id
    assert result["deductions"][0]["new_qty"] == 500
    assert len(result["errors"]) == 1 and cup.id in result["errors"][0]
    assert _level(db, shop, cup) == 1

    mv = db.query(StockMovement).filter(StockMovement.reference_type == ReferenceType.ORDER).one()
    assert mv.reference_id == order.id
    assert mv.quantity == -500


def test_fractional_draw_down_to_zero(db, shop):
    milk = make_raw(db, shop["tenant_id"], "MILK", "l", 2)
    stock.record_movement(db, shop["branch_id"], milk.id, "in", "0.3")
    stock.record_movement(db, shop["branch_id"], milk.id, "out", "0.1")
    mv = stock.record_movement(db, shop["branch_id"], milk.id, "out", "0.2")
    db.commit()

    assert mv.previous_quantity == Decimal("0.2")
    assert mv.new_quantity == 0
    assert _level(db, shop, milk) == 0
    assert db.query(StockAlert).one().alert_type == AlertType.OUT_OF_STOCK

    with pytest.raises(InsufficientStockError):
        stock.record_movement(db, shop["branch_id"], milk.id, "out", "0.001")


def test_many_small_movements_do_not_drift(db, shop):
    milk = make_raw(db, shop["tenant_id"], "MILK", "l", 2)
    for _ in range(10):
        stock.record_movement(db, shop["branch_id"], milk.id, "in", "0.1")
    db.commit()
    for _ in range(10):
        stock.record_movement(db, shop["branch_id"], milk.id, "out", "0.1")
    db.commit()
    assert _level(db, shop, milk) == 0


def test_quantity_below_precision_is_rejected(db, shop):
    milk = make_raw(db, shop["tenant_id"], "MILK", "l", 2)
    with pytest.raises(ValidationError):
        stock.record_movement(db, shop["branch_id"], milk.id, "in", "0.0004")


def test_deduct_whole_stock_for_order(db, shop):
    milk = make_raw(db, shop["tenant_id"], "MILK", "l", 2)
    latte = make_item(db, shop["tenant_id"], "Latte", 15, shop["hot"], recipe=[(milk, 200, "ml")])
    stock.record_movement(db, shop["branch_id"], milk.id, "in", 1)
    db.commit()

    order = make_order(db, shop, [(latte, 5, 15, "0.4")])
    result = stock.deduct_for_order(db, order, None)
    db.commit()

    assert result["success"]
    assert result["errors"] == []
    assert result["deductions"][0]["new_qty"] == 0
    assert _level(db, shop, milk) == 0


def test_purchase_receipt_is_tagged(db, shop):
    beans = make_raw(db, shop["tenant_id"], "BEANS", "kg", 80)
    mv = stock.record_movement(
        db, shop["branch_id"], beans.id, "in", 5,
        reference_type=ReferenceType.PURCHASE, reference_id="INV-2024-0117",
    )
    db.commit()
    assert mv.reference_type == ReferenceType.PURCHASE
    assert mv.reference_id == "INV-2024-0117"

    with pytest.raises(ValidationError):
        stock.record_movement(db, shop["branch_id"], beans.id, "out", 1, reference_type="purchase")
    with pytest.raises(ValidationError):
        stock.record_movement(db, shop["branch_id"], beans.id, "in", 1, reference_type="gift")


def _racing_reads(monkeypatch, taken, every_time=False):
    """Make another writer take `taken` units right after each balance read."""
    real_read = stock._read_balance
    calls = []

    def racing_read(session, stock_id):
        cur, version = real_read(session, stock_id)
        if every_time or not calls:
            session.execute(
                update(BranchStock)
                .where(BranchStock.id == stock_id)
                .values(current_quantity=cur - taken, version=version + 1)
            )
        calls.append(version)
        return cur, version

    monkeypatch.setattr(stock, "_read_balance", racing_read)
    return calls


def test_concurrent_write_between_read_and_update_is_retried(db, shop, monkeypatch):
    beans = make_raw(db, shop["tenant_id"], "BEANS", "g", "0.08")
    stock.record_movement(db, shop["branch_id"], beans.id, "in", 10)
    db.commit()

    calls = _racing_reads(monkeypatch, 3)
    mv = stock.record_movement(db, shop["branch_id"], beans.id, "out", 4)
    db.commit()

    assert len(calls) == 2
    assert mv.previous_quantity == 7
    assert mv.new_quantity == 3
    assert _level(db, shop, beans) == 3


def test_persistent_contention_gives_up(db, shop, monkeypatch):
    beans = make_raw(db, shop["tenant_id"], "BEANS", "g", "0.08")
    stock.record_movement(db, shop["branch_id"], beans.id, "in", 100)
    db.commit()

    calls = _racing_reads(monkeypatch, 1, every_time=True)
    with pytest.raises(StockConflictError):
        stock.record_movement(db, shop["branch_id"], beans.id, "out", 4)
    assert len(calls) == stock.MAX_ATTEMPTS


def test_two_sessions_never_overwrite_each_other(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'stock.db'}")
    Base.metadata.create_all(bind=eng)
    Session = sessionmaker(bind=eng, autoflush=False, autocommit=False)
    first, second = Session(), Session()
    try:
        beans = make_raw(first, "t1", "BEANS", "g", "0.08")
        stock.record_movement(first, "b1", beans.id, "in", 10)
        first.commit()

        # both sessions hold the same row at 10
        row_a = first.query(BranchStock).one()
        row_b = second.query(BranchStock).one()
        assert row_a.current_quantity == row_b.current_quantity == 10

        stock.record_movement(first, "b1", beans.id, "out", 3)
        first.commit()

        mv = stock.record_movement(second, "b1", beans.id, "out", 4)
        second.commit()

        assert mv.previous_quantity == 7
        assert mv.new_quantity == 3
        check = Session()
        assert check.query(BranchStock).one().current_quantity == 3
        assert check.query(StockMovement).count() == 3
        check.close()
    finally:
        first.close()
        second.close()
        eng.dispose()
