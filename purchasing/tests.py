import uuid
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.test import APIClient

from common.permissions import actor_from_user
from core.models import Branch
from inventory.models import ImmutableRecordError, Product, Stock, StockMovement, Supplier
from inventory.services import apply_stock_movement, get_stock_balance
from purchasing import services, workflow
from purchasing.models import PurchaseHistory, PurchaseOrder, PurchaseOrderItem, PurchaseOrderStatus
from purchasing.services import AcceptItem, FinanceItem, NewItem, ReceivedItem, RegisterItem


class TransitionTableTests(SimpleTestCase):
    def test_terminal_statuses_have_no_outgoing_edges(self):
        self.assertEqual(
            workflow.TERMINAL_STATUSES,
            {workflow.FULLY_APPROVED, workflow.REJECTED, workflow.CANCELLED},
        )
        for status in workflow.TERMINAL_STATUSES:
            for target in PurchaseOrderStatus.values:
                self.assertFalse(workflow.is_allowed_transition(status, target))

    def test_every_status_has_a_row(self):
        self.assertEqual(set(workflow.ALLOWED_TRANSITIONS), set(PurchaseOrderStatus.values))

    def test_cancel_is_only_reachable_before_registration(self):
        sources = {status for status, targets in workflow.ALLOWED_TRANSITIONS.items() if workflow.CANCELLED in targets}
        self.assertEqual(sources, {workflow.PENDING_ADMIN_ACCEPTANCE, workflow.ACCEPTED_BY_ADMIN})

    def test_every_non_terminal_status_can_be_rejected(self):
        for status, targets in workflow.ALLOWED_TRANSITIONS.items():
            if status not in workflow.TERMINAL_STATUSES:
                self.assertIn(workflow.REJECTED, targets)

    def test_registration_decision_ignores_items_accepted_at_zero(self):
        items = [
            PurchaseOrderItem(quantity_requested=5, quantity_accepted=5, quantity_registered=5),
            PurchaseOrderItem(quantity_requested=3, quantity_accepted=0),
        ]
        self.assertEqual(workflow.status_after_registration(items), workflow.COMPLETELY_REGISTERED)

    def test_finance_decision_keeps_status_when_nothing_verified(self):
        item = PurchaseOrderItem(quantity_requested=1, quantity_accepted=1, quantity_registered=1, finance_verified=False)
        self.assertEqual(
            workflow.status_after_finance(workflow.COMPLETELY_REGISTERED, [item], [item]),
            workflow.COMPLETELY_REGISTERED,
        )


class PurchaseWorkflowTestCase(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.branch_a = Branch.objects.create(code="PA", name="Purchasing A")
        self.branch_b = Branch.objects.create(code="PB", name="Purchasing B")

        self.sales_user = self.user_model.objects.create_user(
            username="po-sales", password="pass1234", branch=self.branch_a, role="sales"
        )
        self.sales_b_user = self.user_model.objects.create_user(
            username="po-sales-b", password="pass1234", branch=self.branch_b, role="sales"
        )
        self.finance_user = self.user_model.objects.create_user(username="po-finance", password="pass1234", role="finance")
        self.manager_user = self.user_model.objects.create_user(username="po-manager", password="pass1234", role="manager")

        self.sales = actor_from_user(self.sales_user)
        self.sales_b = actor_from_user(self.sales_b_user)
        self.finance = actor_from_user(self.finance_user)
        self.manager = actor_from_user(self.manager_user)

        self.p1 = Product.objects.create(sku="PO-1", name="First", price=Decimal("1.00"))
        self.p2 = Product.objects.create(sku="PO-2", name="Second", price=Decimal("1.00"))
        self.supplier = Supplier.objects.create(code="PO-SUP", name="PO Supplier")

    def _create(self, lines=None, actor=None, branch=None):
        lines = lines or [(self.p1, 5), (self.p2, 3)]
        result = services.create_purchase_order(
            actor=actor or self.sales,
            branch_id=(branch or self.branch_a).id,
            items=[NewItem(product.id, quantity) for product, quantity in lines],
        )
        self.assertTrue(result.ok, result.message)
        return result.data

    def _item(self, order, product):
        return PurchaseOrderItem.objects.get(purchase_order=order, product=product)

    def _accept(self, order, quantities):
        return services.accept_quantities_by_admin(
            actor=self.manager,
            order_id=order.id,
            items=[AcceptItem(self._item(order, product).id, quantity) for product, quantity in quantities.items()],
        )

    def _register(self, order, quantities, actor=None):
        return services.register_received_quantities(
            actor=actor or self.sales,
            order_id=order.id,
            items=[RegisterItem(self._item(order, product).id, quantity) for product, quantity in quantities.items()],
        )

    def _finance(self, order, entries, supplier_id=None):
        return services.finance_verification(
            actor=self.finance,
            order_id=order.id,
            items=[
                FinanceItem(self._item(order, product).id, verified, Decimal(price) if price is not None else None)
                for product, (verified, price) in entries.items()
            ],
            supplier_id=supplier_id,
        )

    def _status(self, order):
        return PurchaseOrder.objects.get(id=order.id).status

    def _processed_order(self, quantity=10, price="2.50"):
        order = self._create([(self.p1, quantity)])
        self.assertTrue(self._accept(order, {self.p1: quantity}).ok)
        self.assertTrue(self._register(order, {self.p1: quantity}).ok)
        self.assertTrue(self._finance(order, {self.p1: (True, price)}).ok)
        self.assertEqual(self._status(order), workflow.PROCESSED_BY_FINANCE)
        return order

    def _registered_order(self):
        order = self._create()
        self.assertTrue(self._accept(order, {self.p1: 5, self.p2: 3}).ok)
        self.assertTrue(self._register(order, {self.p1: 5, self.p2: 3}).ok)
        self.assertEqual(self._status(order), workflow.COMPLETELY_REGISTERED)
        return order


class CreatePurchaseOrderTests(PurchaseWorkflowTestCase):
    def test_create_builds_pending_order_with_untouched_items(self):
        order = self._create()

        self.assertEqual(order.status, workflow.PENDING_ADMIN_ACCEPTANCE)
        self.assertEqual(order.branch_id, self.branch_a.id)
        self.assertEqual(order.created_by_id, self.sales_user.id)
        items = list(order.items.all())
        self.assertEqual(len(items), 2)
        for item in items:
            self.assertIsNone(item.quantity_accepted)
            self.assertIsNone(item.quantity_registered)
            self.assertIsNone(item.finance_verified)
            self.assertIsNone(item.unit_price)
        self.assertFalse(PurchaseHistory.objects.filter(purchase_order=order).exists())

    def test_inactive_product_aborts_whole_creation(self):
        self.p2.is_active = False
        self.p2.save(update_fields=["is_active"])

        result = services.create_purchase_order(
            actor=self.sales,
            branch_id=self.branch_a.id,
            items=[NewItem(self.p1.id, 5), NewItem(self.p2.id, 3)],
        )

        self.assertFalse(result.ok)
        self.assertEqual(result.code, "invariant_violation")
        self.assertIn("product_id", result.errors)
        self.assertEqual(PurchaseOrder.objects.count(), 0)
        self.assertEqual(PurchaseOrderItem.objects.count(), 0)

    def test_inactive_branch_is_not_found(self):
        self.branch_a.is_active = False
        self.branch_a.save(update_fields=["is_active"])

        result = services.create_purchase_order(actor=self.manager, branch_id=self.branch_a.id, items=[NewItem(self.p1.id, 1)])

        self.assertEqual(result.code, "not_found")

    def test_empty_items_are_refused(self):
        result = services.create_purchase_order(actor=self.sales, branch_id=self.branch_a.id, items=[])

        self.assertEqual(result.code, "invariant_violation")

    def test_sales_cannot_create_for_another_branch(self):
        result = services.create_purchase_order(actor=self.sales, branch_id=self.branch_b.id, items=[NewItem(self.p1.id, 1)])

        self.assertEqual(result.code, "permission_denied")
        self.assertEqual(PurchaseOrder.objects.count(), 0)

    def test_finance_cannot_create(self):
        result = services.create_purchase_order(actor=self.finance, branch_id=self.branch_a.id, items=[NewItem(self.p1.id, 1)])

        self.assertEqual(result.code, "permission_denied")

    def test_missing_actor_is_authentication_failure(self):
        result = services.create_purchase_order(actor=None, branch_id=self.branch_a.id, items=[NewItem(self.p1.id, 1)])

        self.assertEqual(result.code, "authentication_failed")

    def test_quantity_beyond_column_range_is_refused(self):
        with self.assertLogs("purchasing.workflow", level="WARNING"):
            result = services.create_purchase_order(
                actor=self.sales,
                branch_id=self.branch_a.id,
                items=[NewItem(self.p1.id, 10**20)],
            )

        self.assertEqual(result.code, "invariant_violation")
        self.assertIn("quantity_requested", result.errors)
        self.assertEqual(PurchaseOrder.objects.count(), 0)

    def test_largest_storable_quantity_is_accepted(self):
        order = self._create([(self.p1, workflow.MAX_QUANTITY)])

        self.assertEqual(self._item(order, self.p1).quantity_requested, workflow.MAX_QUANTITY)


class AcceptQuantitiesTests(PurchaseWorkflowTestCase):
    def test_partial_acceptance_moves_to_accepted_by_admin(self):
        order = self._create()

        result = self._accept(order, {self.p1: 4, self.p2: 0})

        self.assertTrue(result.ok)
        self.assertEqual(result.data.status, workflow.ACCEPTED_BY_ADMIN)
        item = self._item(order, self.p1)
        self.assertEqual(item.quantity_accepted, 4)
        self.assertEqual(item.accepted_by_id, self.manager_user.id)
        self.assertIsNotNone(item.accepted_at)
        self.assertEqual(
            list(PurchaseHistory.objects.filter(purchase_order=order).values_list("action", flat=True)),
            ["QuantitiesAcceptedByAdmin"],
        )

    def test_accepting_zero_everywhere_rejects_the_order(self):
        order = self._create()

        result = self._accept(order, {self.p1: 0, self.p2: 0})

        self.assertTrue(result.ok)
        self.assertEqual(self._status(order), workflow.REJECTED)

    def test_accepting_more_than_requested_fails_without_changes(self):
        order = self._create()

        result = self._accept(order, {self.p1: 6, self.p2: 3})

        self.assertEqual(result.code, "invariant_violation")
        self.assertIn(str(self._item(order, self.p1).id), result.message)
        self.assertIsNone(self._item(order, self.p2).quantity_accepted)
        self.assertEqual(self._status(order), workflow.PENDING_ADMIN_ACCEPTANCE)

    def test_item_from_another_order_is_refused(self):
        order = self._create()
        other = self._create([(self.p1, 2)])

        result = services.accept_quantities_by_admin(
            actor=self.manager,
            order_id=order.id,
            items=[AcceptItem(self._item(other, self.p1).id, 1)],
        )

        self.assertEqual(result.code, "invariant_violation")
        self.assertIn("items", result.errors)

    def test_second_acceptance_is_an_invalid_transition(self):
        order = self._create()
        self.assertTrue(self._accept(order, {self.p1: 5}).ok)

        result = self._accept(order, {self.p1: 1})

        self.assertEqual(result.code, "invalid_transition")
        self.assertEqual(self._item(order, self.p1).quantity_accepted, 5)

    def test_sales_cannot_accept(self):
        order = self._create()

        result = services.accept_quantities_by_admin(
            actor=self.sales, order_id=order.id, items=[AcceptItem(self._item(order, self.p1).id, 1)]
        )

        self.assertEqual(result.code, "permission_denied")

    def test_accept_all_uses_requested_quantities(self):
        order = self._create()

        result = services.accept_all_requested(actor=self.manager, order_id=order.id)

        self.assertTrue(result.ok)
        self.assertEqual(self._item(order, self.p1).quantity_accepted, 5)
        self.assertEqual(self._item(order, self.p2).quantity_accepted, 3)
        self.assertEqual(self._status(order), workflow.ACCEPTED_BY_ADMIN)

    def test_accept_all_checks_capability_before_looking_up_order(self):
        order = self._create()

        self.assertEqual(services.accept_all_requested(actor=self.sales, order_id=order.id).code, "permission_denied")
        self.assertEqual(services.accept_all_requested(actor=self.sales, order_id=uuid.uuid4()).code, "permission_denied")
        self.assertEqual(services.accept_all_requested(actor=self.manager, order_id=uuid.uuid4()).code, "not_found")


class RegisterQuantitiesTests(PurchaseWorkflowTestCase):
    def test_partial_registration(self):
        order = self._create()
        self._accept(order, {self.p1: 5, self.p2: 3})

        result = self._register(order, {self.p1: 5, self.p2: 0})

        self.assertTrue(result.ok)
        self.assertEqual(self._status(order), workflow.PARTIALLY_REGISTERED)
        self.assertEqual(
            list(PurchaseHistory.objects.filter(purchase_order=order).values_list("action", flat=True)),
            ["QuantitiesAcceptedByAdmin", "QuantitiesRegisteredBySales"],
        )

    def test_completing_a_partial_registration_counts_the_edit(self):
        order = self._create()
        self._accept(order, {self.p1: 5, self.p2: 3})
        self._register(order, {self.p1: 4})

        result = self._register(order, {self.p1: 5, self.p2: 3})

        self.assertTrue(result.ok)
        self.assertEqual(self._status(order), workflow.COMPLETELY_REGISTERED)
        item = self._item(order, self.p1)
        self.assertEqual(item.quantity_registered, 5)
        self.assertEqual(item.registration_edit_count, 1)
        self.assertIsNotNone(item.last_registration_edit_at)
        self.assertEqual(self._item(order, self.p2).registration_edit_count, 0)

    def test_nothing_received_means_pending_registration(self):
        order = self._create()
        self._accept(order, {self.p1: 5, self.p2: 3})

        self._register(order, {self.p1: 0, self.p2: 0})

        self.assertEqual(self._status(order), workflow.PENDING_REGISTRATION)

    def test_item_accepted_at_zero_does_not_block_completion(self):
        order = self._create()
        self._accept(order, {self.p1: 5, self.p2: 0})

        self._register(order, {self.p1: 5})

        self.assertEqual(self._status(order), workflow.COMPLETELY_REGISTERED)

    def test_registering_more_than_accepted_fails(self):
        order = self._create()
        self._accept(order, {self.p1: 2, self.p2: 3})

        result = self._register(order, {self.p1: 3})

        self.assertEqual(result.code, "invariant_violation")
        self.assertIsNone(self._item(order, self.p1).quantity_registered)

    def test_item_not_accepted_by_admin_cannot_be_registered(self):
        order = self._create()
        self._accept(order, {self.p1: 5})

        result = self._register(order, {self.p2: 1})

        self.assertEqual(result.code, "invariant_violation")
        self.assertIn("not been accepted", result.message)

    def test_registration_before_acceptance_is_an_invalid_transition(self):
        order = self._create()

        result = self._register(order, {self.p1: 1})

        self.assertEqual(result.code, "invalid_transition")

    def test_receive_maps_received_quantities(self):
        order = self._create()
        self._accept(order, {self.p1: 5, self.p2: 3})

        result = services.receive_purchase_order(
            actor=self.sales,
            order_id=order.id,
            items=[
                ReceivedItem(self._item(order, self.p1).id, 5),
                ReceivedItem(self._item(order, self.p2).id, 3),
            ],
        )

        self.assertTrue(result.ok)
        self.assertEqual(self._status(order), workflow.COMPLETELY_REGISTERED)
        self.assertEqual(self._item(order, self.p2).registered_by_id, self.sales_user.id)


class FinanceVerificationTests(PurchaseWorkflowTestCase):
    def test_all_verified_and_priced_moves_to_processed_by_finance(self):
        order = self._registered_order()

        result = self._finance(order, {self.p1: (True, "2.00"), self.p2: (True, "1.50")}, supplier_id=self.supplier.id)

        self.assertTrue(result.ok)
        order.refresh_from_db()
        self.assertEqual(order.status, workflow.PROCESSED_BY_FINANCE)
        self.assertEqual(order.supplier_id, self.supplier.id)
        item = self._item(order, self.p1)
        self.assertEqual(item.unit_price, Decimal("2.00"))
        self.assertEqual(item.finance_verified_by_id, self.finance_user.id)
        entry = PurchaseHistory.objects.filter(purchase_order=order, action="FinanceVerification").get()
        self.assertIn("Verified items: 2/2", entry.details)

    def test_partial_verification_moves_to_pending_finance_processing(self):
        order = self._registered_order()

        self._finance(order, {self.p1: (True, "2.00")})

        self.assertEqual(self._status(order), workflow.PENDING_FINANCE_PROCESSING)

    def test_unverified_items_leave_status_unchanged(self):
        order = self._registered_order()

        result = self._finance(order, {self.p1: (False, "2.00"), self.p2: (None, "1.00")})

        self.assertTrue(result.ok)
        self.assertEqual(self._status(order), workflow.COMPLETELY_REGISTERED)

    def test_verified_but_unpriced_items_do_not_finish_processing(self):
        order = self._registered_order()

        self._finance(order, {self.p1: (True, "2.00"), self.p2: (True, None)})

        self.assertEqual(self._status(order), workflow.PENDING_FINANCE_PROCESSING)

    def test_price_edits_are_counted(self):
        order = self._registered_order()
        self._finance(order, {self.p1: (True, "2.00")})

        result = self._finance(order, {self.p1: (None, "2.50"), self.p2: (True, "1.00")})

        self.assertTrue(result.ok)
        self.assertEqual(self._status(order), workflow.PROCESSED_BY_FINANCE)
        self.assertEqual(self._item(order, self.p1).price_edit_count, 1)
        self.assertEqual(self._item(order, self.p1).unit_price, Decimal("2.50"))
        self.assertEqual(self._item(order, self.p2).price_edit_count, 0)

    def test_non_positive_price_is_refused(self):
        order = self._registered_order()

        result = self._finance(order, {self.p1: (True, "0")})

        self.assertEqual(result.code, "invariant_violation")
        self.assertIsNone(self._item(order, self.p1).unit_price)
        self.assertEqual(self._status(order), workflow.COMPLETELY_REGISTERED)

    def test_non_finite_price_is_refused(self):
        order = self._registered_order()
        item = self._item(order, self.p1)

        for bad in (Decimal("NaN"), "NaN", Decimal("Infinity"), "-Infinity"):
            with self.subTest(price=bad):
                with self.assertLogs("purchasing.workflow", level="WARNING") as logs:
                    result = services.finance_verification(
                        actor=self.finance,
                        order_id=order.id,
                        items=[FinanceItem(item.id, True, bad)],
                    )

                self.assertEqual(result.code, "invariant_violation")
                self.assertIn("unit_price", result.errors)
                self.assertEqual(logs.records[0].order_id, order.id)

        self.assertIsNone(self._item(order, self.p1).unit_price)
        self.assertEqual(self._status(order), workflow.COMPLETELY_REGISTERED)

    def test_price_beyond_column_range_is_refused(self):
        order = self._registered_order()

        result = self._finance(order, {self.p1: (True, "99999999999999")})

        self.assertEqual(result.code, "invariant_violation")
        self.assertIsNone(self._item(order, self.p1).unit_price)

    def test_largest_storable_price_is_accepted(self):
        order = self._registered_order()

        result = self._finance(order, {self.p1: (True, "9999999999.99")})

        self.assertTrue(result.ok)
        self.assertEqual(self._item(order, self.p1).unit_price, workflow.MAX_UNIT_PRICE)

    def test_item_without_registered_quantity_is_refused(self):
        order = self._create()
        self._accept(order, {self.p1: 5, self.p2: 0})
        self._register(order, {self.p1: 5})

        result = self._finance(order, {self.p2: (True, "1.00")})

        self.assertEqual(result.code, "invariant_violation")
        self.assertIn("quantity_registered", result.errors)

    def test_inactive_supplier_is_not_found(self):
        order = self._registered_order()
        self.supplier.is_active = False
        self.supplier.save(update_fields=["is_active"])

        result = self._finance(order, {self.p1: (True, "2.00")}, supplier_id=self.supplier.id)

        self.assertEqual(result.code, "not_found")

    def test_finance_before_registration_is_an_invalid_transition(self):
        order = self._create()
        self._accept(order, {self.p1: 5, self.p2: 3})

        result = self._finance(order, {self.p1: (True, "2.00")})

        self.assertEqual(result.code, "invalid_transition")

    def test_checkout_verifies_priced_items(self):
        order = self._registered_order()
        self._finance(order, {self.p1: (None, "2.00"), self.p2: (None, "1.00")})
        self.assertEqual(self._status(order), workflow.COMPLETELY_REGISTERED)

        result = services.checkout_by_finance(actor=self.finance, order_id=order.id)

        self.assertTrue(result.ok)
        self.assertEqual(self._status(order), workflow.PROCESSED_BY_FINANCE)
        self.assertTrue(self._item(order, self.p2).finance_verified)

    def test_checkout_checks_capability_before_looking_up_order(self):
        order = self._registered_order()

        self.assertEqual(services.checkout_by_finance(actor=self.sales, order_id=order.id).code, "permission_denied")
        self.assertEqual(services.checkout_by_finance(actor=self.sales, order_id=uuid.uuid4()).code, "permission_denied")
        self.assertEqual(services.checkout_by_finance(actor=self.finance, order_id=uuid.uuid4()).code, "not_found")


class FinalApprovalTests(PurchaseWorkflowTestCase):
    def test_final_approval_commits_stock_once(self):
        order = self._processed_order(quantity=10, price="2.50")

        result = services.final_approval_by_admin(actor=self.manager, order_id=order.id)

        self.assertTrue(result.ok, result.message)
        self.assertEqual(self._status(order), workflow.FULLY_APPROVED)
        self.assertEqual(get_stock_balance(self.p1.id, self.branch_a.id), Decimal("10"))
        movement = StockMovement.objects.get(purchase_order=order)
        self.assertEqual(movement.movement_type, StockMovement.MovementType.PURCHASE)
        self.assertEqual(movement.previous_quantity, Decimal("0"))
        self.assertEqual(movement.new_quantity, Decimal("10"))
        self.assertEqual(movement.unit_price, Decimal("2.50"))
        self.p1.refresh_from_db()
        self.assertEqual(self.p1.price, Decimal("2.50"))
        item = self._item(order, self.p1)
        self.assertEqual(item.approved_by_id, self.manager_user.id)
        entry = PurchaseHistory.objects.get(purchase_order=order, action="FinalApprovedByAdmin")
        self.assertIn("Total value: 25.00", entry.details)

        again = services.final_approval_by_admin(actor=self.manager, order_id=order.id)

        self.assertEqual(again.code, "invalid_transition")
        self.assertEqual(get_stock_balance(self.p1.id, self.branch_a.id), Decimal("10"))
        self.assertEqual(StockMovement.objects.filter(purchase_order=order).count(), 1)

    def test_existing_stock_is_increased(self):
        apply_stock_movement(product=self.p1, branch_id=self.branch_a.id, quantity=5, performed_by_id=self.manager_user.id)
        order = self._processed_order(quantity=4)

        services.final_approval_by_admin(actor=self.manager, order_id=order.id)

        movement = StockMovement.objects.get(purchase_order=order)
        self.assertEqual(movement.previous_quantity, Decimal("5"))
        self.assertEqual(movement.new_quantity, Decimal("9"))
        self.assertEqual(Stock.objects.get(product=self.p1, branch=self.branch_a).quantity, Decimal("9"))

    def test_unverified_items_are_not_committed(self):
        order = self._registered_order()
        self._finance(order, {self.p2: (False, "1.00")})
        self._finance(order, {self.p1: (True, "2.00")})
        self.assertEqual(self._status(order), workflow.PROCESSED_BY_FINANCE)

        result = services.final_approval_by_admin(actor=self.manager, order_id=order.id)

        self.assertTrue(result.ok)
        self.assertEqual(get_stock_balance(self.p1.id, self.branch_a.id), Decimal("5"))
        self.assertEqual(get_stock_balance(self.p2.id, self.branch_a.id), Decimal("0"))
        self.assertIsNone(self._item(order, self.p2).approved_at)

    def test_approval_before_finance_is_an_invalid_transition(self):
        order = self._registered_order()

        result = services.final_approval_by_admin(actor=self.manager, order_id=order.id)

        self.assertEqual(result.code, "invalid_transition")
        self.assertFalse(StockMovement.objects.exists())

    def test_finance_cannot_give_final_approval(self):
        order = self._processed_order()

        result = services.final_approval_by_admin(actor=self.finance, order_id=order.id)

        self.assertEqual(result.code, "permission_denied")
        self.assertEqual(self._status(order), workflow.PROCESSED_BY_FINANCE)

    def test_storage_failure_rolls_back_stock(self):
        order = self._processed_order()

        with patch("purchasing.store.save_order", side_effect=DatabaseError("disk full")):
            with self.assertLogs("purchasing.workflow", level="ERROR"):
                result = services.final_approval_by_admin(actor=self.manager, order_id=order.id)

        self.assertEqual(result.code, "persistence_failure")
        self.assertEqual(self._status(order), workflow.PROCESSED_BY_FINANCE)
        self.assertFalse(StockMovement.objects.exists())
        self.assertEqual(get_stock_balance(self.p1.id, self.branch_a.id), Decimal("0"))


class RejectAndCancelTests(PurchaseWorkflowTestCase):
    def test_reject_records_reason(self):
        order = self._registered_order()

        result = services.reject_purchase_order(actor=self.finance, order_id=order.id, reason="  Wrong supplier  ")

        self.assertTrue(result.ok)
        self.assertEqual(self._status(order), workflow.REJECTED)
        entry = PurchaseHistory.objects.get(purchase_order=order, action="Rejected")
        self.assertEqual(entry.details, "Purchase order rejected. Reason: Wrong supplier")
        self.assertEqual(entry.performed_by_id, self.finance_user.id)

    def test_reject_requires_reason(self):
        order = self._create()

        result = services.reject_purchase_order(actor=self.manager, order_id=order.id, reason="   ")

        self.assertEqual(result.code, "invariant_violation")
        self.assertEqual(self._status(order), workflow.PENDING_ADMIN_ACCEPTANCE)

    @override_settings(PURCHASE_REJECT_REASON_MAX_LENGTH=10)
    def test_reject_reason_length_is_limited(self):
        order = self._create()

        result = services.reject_purchase_order(actor=self.manager, order_id=order.id, reason="x" * 11)

        self.assertEqual(result.code, "invariant_violation")
        self.assertIn("reason", result.errors)

    def test_fully_approved_order_cannot_be_rejected(self):
        order = self._processed_order()
        services.final_approval_by_admin(actor=self.manager, order_id=order.id)

        result = services.reject_purchase_order(actor=self.manager, order_id=order.id, reason="Too late")

        self.assertEqual(result.code, "invalid_transition")
        self.assertEqual(self._status(order), workflow.FULLY_APPROVED)

    def test_sales_cannot_reject(self):
        order = self._create()

        result = services.reject_purchase_order(actor=self.sales, order_id=order.id, reason="No")

        self.assertEqual(result.code, "permission_denied")

    def test_cancel_deactivates_order_and_items(self):
        order = self._create()

        result = services.cancel_purchase_order(actor=self.sales, order_id=order.id)

        self.assertTrue(result.ok)
        stored = PurchaseOrder.objects.get(id=order.id)
        self.assertEqual(stored.status, workflow.CANCELLED)
        self.assertFalse(stored.is_active)
        self.assertFalse(PurchaseOrderItem.objects.filter(purchase_order=order, is_active=True).exists())
        self.assertTrue(PurchaseHistory.objects.filter(purchase_order=order, action="Cancelled").exists())
        self.assertEqual(services.get_purchase_order(actor=self.sales, order_id=order.id).code, "not_found")

    def test_cancel_after_registration_is_an_invalid_transition(self):
        order = self._registered_order()

        with self.assertLogs("purchasing.workflow", level="WARNING") as logs:
            result = services.cancel_purchase_order(actor=self.manager, order_id=order.id)

        self.assertEqual(result.code, "invalid_transition")
        stored = PurchaseOrder.objects.get(id=order.id)
        self.assertTrue(stored.is_active)
        self.assertEqual(stored.status, workflow.COMPLETELY_REGISTERED)
        record = logs.records[0]
        self.assertEqual(record.transition, "completely_registered->cancelled")
        self.assertEqual(record.error_code, "invalid_transition")
        self.assertEqual(record.order_id, order.id)


class UpdateAndStatusTests(PurchaseWorkflowTestCase):
    def test_update_replaces_items_while_pending(self):
        order = self._create()

        result = services.update_purchase_order(actor=self.sales, order_id=order.id, items=[NewItem(self.p2.id, 9)])

        self.assertTrue(result.ok)
        items = list(PurchaseOrderItem.objects.filter(purchase_order=order))
        self.assertEqual([(item.product_id, item.quantity_requested) for item in items], [(self.p2.id, 9)])
        self.assertTrue(PurchaseHistory.objects.filter(purchase_order=order, action="PurchaseOrderUpdated").exists())

    def test_update_after_acceptance_is_an_invalid_transition(self):
        order = self._create()
        self._accept(order, {self.p1: 5})

        result = services.update_purchase_order(actor=self.sales, order_id=order.id, items=[NewItem(self.p2.id, 9)])

        self.assertEqual(result.code, "invalid_transition")
        self.assertEqual(PurchaseOrderItem.objects.filter(purchase_order=order).count(), 2)

    def test_generic_status_update_follows_transition_table(self):
        order = self._registered_order()

        result = services.update_purchase_order_status(
            actor=self.manager, order_id=order.id, target=workflow.PENDING_FINANCE_PROCESSING
        )

        self.assertTrue(result.ok)
        self.assertEqual(self._status(order), workflow.PENDING_FINANCE_PROCESSING)
        entry = PurchaseHistory.objects.get(purchase_order=order, action="StatusUpdated")
        self.assertIn("completely_registered to pending_finance_processing", entry.details)

    def test_generic_status_update_refuses_skipping_ahead(self):
        order = self._create()

        result = services.update_purchase_order_status(actor=self.manager, order_id=order.id, target=workflow.FULLY_APPROVED)

        self.assertEqual(result.code, "invalid_transition")
        self.assertFalse(StockMovement.objects.exists())

    def test_same_status_is_not_a_transition(self):
        order = self._create()

        result = services.update_purchase_order_status(
            actor=self.manager, order_id=order.id, target=workflow.PENDING_ADMIN_ACCEPTANCE
        )

        self.assertEqual(result.code, "invalid_transition")

    def test_status_update_to_fully_approved_commits_stock(self):
        order = self._processed_order(quantity=3)

        result = services.update_purchase_order_status(actor=self.manager, order_id=order.id, target=workflow.FULLY_APPROVED)

        self.assertTrue(result.ok)
        self.assertEqual(get_stock_balance(self.p1.id, self.branch_a.id), Decimal("3"))

    def test_status_update_to_cancelled_deactivates(self):
        order = self._create()

        services.update_purchase_order_status(actor=self.manager, order_id=order.id, target=workflow.CANCELLED)

        self.assertFalse(PurchaseOrder.objects.get(id=order.id).is_active)

    def test_unknown_status_is_refused(self):
        order = self._create()

        result = services.update_purchase_order_status(actor=self.manager, order_id=order.id, target="shipped")

        self.assertEqual(result.code, "invariant_violation")

    def test_sales_cannot_set_status(self):
        order = self._create()

        result = services.update_purchase_order_status(actor=self.sales, order_id=order.id, target=workflow.ACCEPTED_BY_ADMIN)

        self.assertEqual(result.code, "permission_denied")


class BranchScopeAndQueryTests(PurchaseWorkflowTestCase):
    def test_other_branch_sales_cannot_read_or_act(self):
        order = self._create()

        self.assertEqual(services.get_purchase_order(actor=self.sales_b, order_id=order.id).code, "permission_denied")
        self.assertEqual(services.get_purchase_history(actor=self.sales_b, order_id=order.id).code, "permission_denied")
        self.assertEqual(services.cancel_purchase_order(actor=self.sales_b, order_id=order.id).code, "permission_denied")
        self.assertEqual(self._status(order), workflow.PENDING_ADMIN_ACCEPTANCE)

    def test_listing_is_scoped_for_branch_actors(self):
        own = self._create()
        other = self._create(actor=self.sales_b, branch=self.branch_b)

        own_ids = {order.id for order in services.list_purchase_orders(actor=self.sales).data}
        all_ids = {order.id for order in services.list_purchase_orders(actor=self.finance).data}

        self.assertEqual(own_ids, {own.id})
        self.assertEqual(all_ids, {own.id, other.id})

    def test_listing_filters_by_status(self):
        pending = self._create()
        rejected = self._create()
        self._accept(rejected, {self.p1: 0, self.p2: 0})

        result = services.list_purchase_orders(actor=self.manager, status=workflow.REJECTED)

        self.assertEqual([order.id for order in result.data], [rejected.id])
        self.assertNotIn(pending.id, [order.id for order in result.data])

    @override_settings(PURCHASING_BRANCH_SCOPING=False)
    def test_branch_scoping_can_be_disabled(self):
        order = self._create()

        result = services.get_purchase_order(actor=self.sales_b, order_id=order.id)

        self.assertTrue(result.ok)

    def test_malformed_or_unknown_id_is_not_found(self):
        self.assertEqual(services.get_purchase_order(actor=self.manager, order_id="not-a-uuid").code, "not_found")
        self.assertEqual(services.get_purchase_order(actor=self.manager, order_id=uuid.uuid4()).code, "not_found")

    def test_history_is_ordered_and_append_only(self):
        order = self._create()
        self._accept(order, {self.p1: 5, self.p2: 3})
        self._register(order, {self.p1: 5, self.p2: 3})

        history = services.get_purchase_history(actor=self.sales, order_id=order.id).data

        self.assertEqual([entry.action for entry in history], ["QuantitiesAcceptedByAdmin", "QuantitiesRegisteredBySales"])
        entry = history[0]
        entry.details = "edited"
        with self.assertRaises(ImmutableRecordError):
            entry.save()
        with self.assertRaises(ImmutableRecordError):
            entry.delete()


class PurchaseOrderApiTests(PurchaseWorkflowTestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def _post(self, user, path, payload=None):
        self.client.force_authenticate(user=user)
        return self.client.post(path, payload or {}, format="json")

    def test_full_workflow_over_http(self):
        response = self._post(
            self.sales_user,
            "/api/v1/purchase-orders/",
            {"items": [{"product_id": str(self.p1.id), "quantity_requested": 10}]},
        )
        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["status"], "pending_admin_acceptance")
        self.assertEqual(payload["branch"], str(self.branch_a.id))
        order_id = payload["id"]
        item_id = payload["items"][0]["id"]
        base = f"/api/v1/purchase-orders/{order_id}"

        response = self._post(self.manager_user, f"{base}/accept-all/")
        self.assertEqual(response.json()["status"], "accepted_by_admin")

        response = self._post(
            self.sales_user,
            f"{base}/receive/",
            {"items": [{"id": item_id, "quantity_received": 10}]},
        )
        self.assertEqual(response.json()["status"], "completely_registered")

        response = self._post(
            self.finance_user,
            f"{base}/finance-verification/",
            {
                "supplier_id": str(self.supplier.id),
                "items": [{"item_id": item_id, "finance_verified": True, "unit_price": "2.50"}],
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "processed_by_finance")
        self.assertEqual(response.json()["supplier_name"], "PO Supplier")

        response = self._post(self.manager_user, f"{base}/final-approval/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "fully_approved")
        self.assertEqual(response.json()["total_value"], "25.00")

        response = self._post(self.manager_user, f"{base}/final-approval/")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "invalid_transition")

        self.client.force_authenticate(user=self.sales_user)
        response = self.client.get(f"{base}/history/")
        self.assertEqual(
            [entry["action"] for entry in response.json()],
            ["QuantitiesAcceptedByAdmin", "QuantitiesRegisteredBySales", "FinanceVerification", "FinalApprovedByAdmin"],
        )

        response = self.client.get("/api/v1/stock/", {"product": str(self.p1.id)})
        self.assertEqual(response.json()["results"][0]["quantity"], "10.00")

        response = self.client.get("/api/v1/stock-movements/", {"purchase_order": order_id})
        self.assertEqual(response.json()["count"], 1)

    def test_list_is_paginated_and_filtered(self):
        self._create()
        rejected = self._create()
        self._accept(rejected, {self.p1: 0, self.p2: 0})
        self.client.force_authenticate(user=self.sales_user)

        response = self.client.get("/api/v1/purchase-orders/", {"status": "rejected"})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        self.assertEqual([item["id"] for item in payload["results"]], [str(rejected.id)])

    def test_role_without_capability_gets_403(self):
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self._post(
                self.finance_user,
                "/api/v1/purchase-orders/",
                {"items": [{"product_id": str(self.p1.id), "quantity_requested": 1}]},
            )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_global_actor_must_name_a_branch(self):
        response = self._post(
            self.manager_user,
            "/api/v1/purchase-orders/",
            {"items": [{"product_id": str(self.p1.id), "quantity_requested": 1}]},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("branch_id", response.json()["errors"])

    def test_zero_quantity_is_a_validation_error(self):
        response = self._post(
            self.sales_user,
            "/api/v1/purchase-orders/",
            {"items": [{"product_id": str(self.p1.id), "quantity_requested": 0}]},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_oversized_quantity_is_a_validation_error(self):
        response = self._post(
            self.sales_user,
            "/api/v1/purchase-orders/",
            {"items": [{"product_id": str(self.p1.id), "quantity_requested": 10**20}]},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertEqual(PurchaseOrder.objects.count(), 0)

    def test_unknown_product_is_an_invariant_violation(self):
        response = self._post(
            self.sales_user,
            "/api/v1/purchase-orders/",
            {"items": [{"product_id": str(uuid.uuid4()), "quantity_requested": 1}]},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invariant_violation")

    def test_cancel_after_registration_returns_conflict(self):
        order = self._registered_order()

        response = self._post(self.sales_user, f"/api/v1/purchase-orders/{order.id}/cancel/")

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "invalid_transition")
        self.assertEqual(payload["status"], 409)
        self.assertIn("status", payload["errors"])

    def test_reject_requires_reason(self):
        order = self._create()

        response = self._post(self.manager_user, f"/api/v1/purchase-orders/{order.id}/reject/", {"reason": ""})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_other_branch_detail_is_forbidden(self):
        order = self._create()
        self.client.force_authenticate(user=self.sales_b_user)

        response = self.client.get(f"/api/v1/purchase-orders/{order.id}/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_malformed_id_is_not_found(self):
        self.client.force_authenticate(user=self.manager_user)

        response = self.client.get("/api/v1/purchase-orders/not-a-uuid/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_status_endpoint(self):
        order = self._create()

        response = self._post(
            self.manager_user,
            f"/api/v1/purchase-orders/{order.id}/status/",
            {"status": "rejected", "reason": "Duplicate order"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "rejected")
        entry = PurchaseHistory.objects.get(purchase_order=order, action="Rejected")
        self.assertIn("Duplicate order", entry.details)


class SeedPurchasingDemoCommandTests(TestCase):
    def test_seed_is_idempotent(self):
        call_command("seed_purchasing_demo", stdout=StringIO())
        call_command("seed_purchasing_demo", stdout=StringIO())

        user_model = get_user_model()
        self.assertEqual(user_model.objects.get(username="manager").role, "manager")
        self.assertTrue(user_model.objects.get(username="sales").check_password("sales1234"))
        self.assertEqual(Product.objects.filter(sku__startswith="SKU-").count(), 3)
        self.assertEqual(Supplier.objects.filter(code="SUP-001").count(), 1)
