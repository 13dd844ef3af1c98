"""
Tests for orphan matching, orphan orders and price drift detection.
"""
import json
import pytest
from datetime import timedelta
from decimal import Decimal

from app.models.reconciliation import (
    OrphanCandidate, MatchOutcome, PricedLineItem, InconsistencyType,
    CorrectionField, AuditType
)
from app.services.inconsistency_detector import (
    rank_orphan_candidates, link_orphan_tickets, detect_orphan_orders,
    find_price_inconsistencies, build_corrections, detect_price_inconsistencies,
    scan_window
)
from tests.utils.factories import (
    OrderFactory, LineItemFactory, TicketFactory, now_utc, minutes_ago, hours_ago
)

TOLERANCE = timedelta(minutes=5)


def candidate(order_id, created_at, line_item_id=None):
    return OrphanCandidate(
        line_item_id=line_item_id or f"li-{order_id}",
        order_id=order_id,
        created_at=created_at
    )


def priced(id, order_id="o-1", event_id="conf-2025", unit="100", quantity=1, total=None, catalog=None, **kwargs):
    unit_price = Decimal(unit)
    return PricedLineItem(
        id=id,
        order_id=order_id,
        event_id=event_id,
        unit_price=unit_price,
        quantity=quantity,
        total_price=Decimal(total) if total is not None else unit_price * quantity,
        catalog_price=Decimal(catalog) if catalog is not None else None,
        **kwargs
    )


class TestRankOrphanCandidates:

    def test_no_candidates(self):
        match = rank_orphan_candidates(now_utc(), [], TOLERANCE)

        assert match.outcome == MatchOutcome.NONE
        assert match.selected is None

    def test_candidates_outside_tolerance_are_ignored(self):
        t = now_utc()
        match = rank_orphan_candidates(t, [candidate("A", t + timedelta(minutes=6))], TOLERANCE)

        assert match.outcome == MatchOutcome.NONE

    def test_single_candidate(self):
        t = now_utc()
        match = rank_orphan_candidates(t, [candidate("A", t + timedelta(minutes=2))], TOLERANCE)

        assert match.outcome == MatchOutcome.UNIQUE
        assert match.selected.order_id == "A"
        assert match.heuristic is False

    def test_several_lines_of_one_order_are_unique(self):
        t = now_utc()
        candidates = [
            candidate("A", t + timedelta(seconds=30), "li-1"),
            candidate("A", t - timedelta(seconds=30), "li-2"),
        ]

        match = rank_orphan_candidates(t, candidates, TOLERANCE)

        assert match.outcome == MatchOutcome.UNIQUE
        assert match.selected.order_id == "A"

    def test_closest_candidate_wins(self):
        t = now_utc()
        candidates = [
            candidate("A", t + timedelta(minutes=3)),
            candidate("B", t - timedelta(minutes=1)),
        ]

        match = rank_orphan_candidates(t, candidates, TOLERANCE)

        assert match.outcome == MatchOutcome.CLOSEST
        assert match.selected.order_id == "B"
        assert match.delta_seconds == 60
        assert match.heuristic is True

    def test_tie_is_ambiguous(self):
        t = now_utc()
        candidates = [
            candidate("A", t + timedelta(minutes=1)),
            candidate("B", t - timedelta(minutes=1)),
        ]

        match = rank_orphan_candidates(t, candidates, TOLERANCE)

        assert match.outcome == MatchOutcome.AMBIGUOUS
        assert match.selected is None
        assert {c.order_id for c in match.candidates} == {"A", "B"}


class TestLinkOrphanTickets:

    @pytest.mark.asyncio
    async def test_unique_match_is_linked_and_audited(self, store):
        ticket = store.add_ticket(TicketFactory.create(created_at=minutes_ago(10)))
        order = store.add_order(OrderFactory.create())
        store.add_line_item(LineItemFactory.create(
            order["id"], ticket_id=ticket["id"], created_at=minutes_ago(9)
        ))

        report = await link_orphan_tickets("exec-1")

        assert report.processed == 1
        assert report.linked == 1
        assert report.heuristic_links == 0
        assert store.tickets[ticket["id"]]["order_id"] == order["id"]

        audits = store.audits_of(AuditType.ORPHAN_TICKET_LINKED.value)
        assert len(audits) == 1
        assert json.loads(audits[0]["metadata"])["heuristic"] is False

    @pytest.mark.asyncio
    async def test_closest_match_is_linked_as_heuristic(self, store):
        ticket = store.add_ticket(TicketFactory.create(created_at=minutes_ago(10)))
        near = store.add_order(OrderFactory.create())
        far = store.add_order(OrderFactory.create())
        store.add_line_item(LineItemFactory.create(near["id"], ticket_id=ticket["id"], created_at=minutes_ago(9)))
        store.add_line_item(LineItemFactory.create(far["id"], ticket_id=ticket["id"], created_at=minutes_ago(13)))

        report = await link_orphan_tickets("exec-1")

        assert report.linked == 1
        assert report.heuristic_links == 1
        assert store.tickets[ticket["id"]]["order_id"] == near["id"]
        audit = store.audits_of(AuditType.ORPHAN_TICKET_LINKED.value)[0]
        assert json.loads(audit["metadata"])["heuristic"] is True

    @pytest.mark.asyncio
    async def test_ambiguous_match_is_left_for_review(self, store):
        created = minutes_ago(10)
        ticket = store.add_ticket(TicketFactory.create(created_at=created))
        for offset in (timedelta(minutes=2), -timedelta(minutes=2)):
            order = store.add_order(OrderFactory.create())
            store.add_line_item(LineItemFactory.create(
                order["id"], ticket_id=ticket["id"], created_at=created + offset
            ))

        report = await link_orphan_tickets("exec-1")

        assert report.linked == 0
        assert report.errors == []
        assert len(report.unresolved) == 1
        assert report.unresolved[0].outcome == MatchOutcome.AMBIGUOUS
        assert len(report.unresolved[0].candidate_order_ids) == 2
        assert store.tickets[ticket["id"]]["order_id"] is None
        assert store.audits_of(AuditType.ORPHAN_TICKET_LINKED.value) == []

    @pytest.mark.asyncio
    async def test_no_candidate_is_unresolved_not_error(self, store):
        store.add_ticket(TicketFactory.create(created_at=minutes_ago(10)))

        report = await link_orphan_tickets("exec-1")

        assert report.linked == 0
        assert report.errors == []
        assert report.unresolved[0].outcome == MatchOutcome.NONE

    @pytest.mark.asyncio
    async def test_tickets_outside_lookback_are_ignored(self, store):
        store.add_ticket(TicketFactory.create(created_at=hours_ago(30)))

        report = await link_orphan_tickets("exec-1", lookback=timedelta(hours=24))

        assert report.processed == 0

    @pytest.mark.asyncio
    async def test_store_error_is_collected_per_ticket(self, store):
        store.add_ticket(TicketFactory.create(created_at=minutes_ago(10)))
        store.fail_on = ["FROM order_line_items WHERE ticket_id"]

        report = await link_orphan_tickets("exec-1")

        assert report.processed == 1
        assert len(report.errors) == 1


class TestDetectOrphanOrders:

    @pytest.mark.asyncio
    async def test_only_uncharged_pending_orders_in_age_window(self, store):
        orphan = store.add_order(OrderFactory.create(status="pending", created_at=hours_ago(2)))
        store.add_line_item(LineItemFactory.create(orphan["id"], ticket_id="t-1"))
        charged = store.add_order(OrderFactory.create(status="pending", created_at=hours_ago(2)))
        store.add_payment_charge(charged["id"])
        store.add_order(OrderFactory.create(status="pending", created_at=minutes_ago(30)))
        store.add_order(OrderFactory.create(status="pending", created_at=hours_ago(24 * 8)))
        store.add_order(OrderFactory.create(status="paid", created_at=hours_ago(2)))

        orphans = await detect_orphan_orders("exec-1")

        assert [o.order_id for o in orphans] == [orphan["id"]]
        assert orphans[0].items_count == 1
        assert orphans[0].has_tickets is True

    @pytest.mark.asyncio
    async def test_orphan_orders_are_audited_once_and_never_changed(self, store):
        orphan = store.add_order(OrderFactory.create(status="pending", created_at=hours_ago(3)))

        await detect_orphan_orders("exec-1")
        second = await detect_orphan_orders("exec-2")

        assert len(second) == 1
        assert len(store.audits_of(AuditType.ORPHAN_ORDER_DETECTED.value)) == 1
        assert store.orders[orphan["id"]]["status"] == "pending"


class TestFindPriceInconsistencies:

    def test_catalog_mismatch(self):
        found = find_price_inconsistencies([priced("a", unit="120", catalog="150")])

        assert [i.inconsistency_type for i in found] == [InconsistencyType.PRICE_MISMATCH]
        assert found[0].expected_value == Decimal("150")
        assert found[0].actual_value == Decimal("120")

    def test_total_mismatch(self):
        found = find_price_inconsistencies([priced("a", unit="100", quantity=3, total="250")])

        assert [i.inconsistency_type for i in found] == [InconsistencyType.TOTAL_MISMATCH]
        assert found[0].expected_value == Decimal("300")

    def test_within_epsilon_is_consistent(self):
        assert find_price_inconsistencies([priced("a", unit="100.00", total="100.01", catalog="99.99")]) == []

    def test_intra_order_mismatch(self):
        items = [
            priced("a", unit="80", quantity=2),
            priced("b", unit="100"),
            priced("c", unit="80", order_id="o-2"),
        ]

        found = find_price_inconsistencies(items)

        assert len(found) == 1
        assert found[0].inconsistency_type == InconsistencyType.INTRA_ORDER_PRICE_MISMATCH
        assert found[0].line_item_id == "a"
        assert found[0].expected_value == Decimal("100")

    def test_non_ticket_items_are_ignored(self):
        item = priced("a", event_id=None, unit="5", total="999", name="Parking")

        assert find_price_inconsistencies([item]) == []


class TestBuildCorrections:

    def test_catalog_mismatch_fixes_unit_and_total(self):
        found = find_price_inconsistencies([priced("a", unit="120", quantity=2, catalog="150")])

        corrections = {c.field: c for c in build_corrections(found)}

        assert corrections[CorrectionField.UNIT_PRICE].new_value == Decimal("150")
        assert corrections[CorrectionField.TOTAL_PRICE].old_value == Decimal("240")
        assert corrections[CorrectionField.TOTAL_PRICE].new_value == Decimal("300")

    def test_one_correction_per_field(self):
        found = find_price_inconsistencies([priced("a", unit="120", quantity=2, total="100", catalog="150")])

        corrections = build_corrections(found)

        assert sorted(c.field.value for c in corrections) == ["total_price", "unit_price"]
        total = next(c for c in corrections if c.field == CorrectionField.TOTAL_PRICE)
        assert total.old_value == Decimal("100")
        assert total.new_value == Decimal("300")

    def test_highest_price_rule_without_catalog(self):
        found = find_price_inconsistencies([priced("a", unit="80"), priced("b", unit="100")])

        corrections = build_corrections(found)

        assert {(c.line_item_id, c.field.value, c.new_value) for c in corrections} == {
            ("a", "unit_price", Decimal("100")),
            ("a", "total_price", Decimal("100")),
        }

    def test_catalog_takes_precedence_over_highest_price(self):
        items = [priced("a", unit="140", catalog="150"), priced("b", unit="160", catalog="150")]

        corrections = build_corrections(find_price_inconsistencies(items))

        unit_targets = {c.line_item_id: c.new_value for c in corrections if c.field == CorrectionField.UNIT_PRICE}
        assert unit_targets == {"a": Decimal("150"), "b": Decimal("150")}

    def test_source_is_recorded(self):
        found = find_price_inconsistencies([priced("a", unit="120", catalog="150")])

        corrections = build_corrections(found, source=AuditType.BATCH_VALIDATION)

        assert all(c.source == AuditType.BATCH_VALIDATION for c in corrections)


class TestDetectPriceInconsistencies:

    @pytest.mark.asyncio
    async def test_only_pending_orders_in_window(self, store):
        store.set_catalog_price("conf-2025", "150")
        pending = store.add_order(OrderFactory.create(status="pending", created_at=minutes_ago(20)))
        store.add_line_item(LineItemFactory.create(pending["id"], unit_price="120"))
        paid = store.add_order(OrderFactory.create(status="paid", created_at=minutes_ago(20)))
        store.add_line_item(LineItemFactory.create(paid["id"], unit_price="120"))
        old = store.add_order(OrderFactory.create(status="pending", created_at=hours_ago(48)))
        store.add_line_item(LineItemFactory.create(old["id"], unit_price="120"))

        found = await detect_price_inconsistencies(lookback=timedelta(hours=24))

        assert [i.order_id for i in found] == [pending["id"]]
        assert found[0].catalog_price == Decimal("150")


class TestScanWindow:

    @pytest.mark.asyncio
    async def test_scan_changes_nothing(self, store):
        ticket = store.add_ticket(TicketFactory.create(created_at=minutes_ago(10)))
        order = store.add_order(OrderFactory.create(status="pending", created_at=hours_ago(2)))
        item = store.add_line_item(LineItemFactory.create(
            order["id"], ticket_id=ticket["id"], unit_price="90", created_at=minutes_ago(10)
        ))
        store.set_catalog_price("conf-2025", "100")

        scan = await scan_window()

        assert [t.ticket_id for t in scan.orphan_tickets] == [ticket["id"]]
        assert [o.order_id for o in scan.orphan_orders] == [order["id"]]
        assert len(scan.price_inconsistencies) == 1
        assert store.audit == []
        assert store.tickets[ticket["id"]]["order_id"] is None
        assert store.line_items[item["id"]]["unit_price"] == Decimal("90")
