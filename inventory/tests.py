import uuid
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.db import transaction
from django.test import TestCase
from rest_framework.test import APIClient

from core.models import Branch
from inventory.models import ImmutableRecordError, Product, Stock, StockMovement, Supplier
from inventory.services import apply_stock_movement, get_stock_balance, update_product_unit_price
from purchasing.errors import InvariantViolationError, NotFoundError


class StockLedgerTests(TestCase):
    def setUp(self):
        self.branch = Branch.objects.create(code="L", name="Ledger Branch")
        self.user = get_user_model().objects.create_user(username="ledger-manager", password="pass1234", role="manager")
        self.product = Product.objects.create(sku="L-001", name="Ledger Product", price=Decimal("1.00"))

    def test_first_movement_creates_stock_row(self):
        self.assertFalse(Stock.objects.filter(product=self.product, branch=self.branch).exists())

        stock, movement = apply_stock_movement(
            product=self.product,
            branch_id=self.branch.id,
            quantity=10,
            performed_by_id=self.user.id,
            unit_price=Decimal("2.5"),
            reason="initial delivery",
        )

        self.assertEqual(stock.quantity, Decimal("10"))
        self.assertEqual(movement.previous_quantity, Decimal("0"))
        self.assertEqual(movement.new_quantity, Decimal("10"))
        self.assertEqual(movement.unit_price, Decimal("2.50"))
        self.assertEqual(movement.movement_type, StockMovement.MovementType.PURCHASE)
        self.assertEqual(get_stock_balance(self.product.id, self.branch.id), Decimal("10"))

    def test_movements_chain_previous_and_new_quantities(self):
        apply_stock_movement(product=self.product, branch_id=self.branch.id, quantity=4, performed_by_id=self.user.id)
        _, second = apply_stock_movement(
            product=self.product,
            branch_id=self.branch.id,
            quantity=-3,
            performed_by_id=self.user.id,
            movement_type=StockMovement.MovementType.ADJUSTMENT,
        )

        self.assertEqual(second.previous_quantity, Decimal("4"))
        self.assertEqual(second.new_quantity, Decimal("1"))
        self.assertEqual(Stock.objects.get(product=self.product, branch=self.branch).quantity, Decimal("1"))
        for movement in StockMovement.objects.filter(product=self.product):
            self.assertEqual(movement.new_quantity, movement.previous_quantity + movement.quantity)

    def test_movement_below_zero_is_refused_and_leaves_nothing(self):
        apply_stock_movement(product=self.product, branch_id=self.branch.id, quantity=2, performed_by_id=self.user.id)

        with self.assertRaises(InvariantViolationError), transaction.atomic():
            apply_stock_movement(product=self.product, branch_id=self.branch.id, quantity=-5, performed_by_id=self.user.id)

        self.assertEqual(get_stock_balance(self.product.id, self.branch.id), Decimal("2"))
        self.assertEqual(StockMovement.objects.filter(product=self.product).count(), 1)

    def test_balance_of_unknown_pair_is_zero(self):
        self.assertEqual(get_stock_balance(self.product.id, self.branch.id), Decimal("0"))

    def test_movement_is_logged(self):
        with self.assertLogs("inventory.ledger", level="INFO") as logs:
            apply_stock_movement(product=self.product, branch_id=self.branch.id, quantity=1, performed_by_id=self.user.id)

        self.assertTrue(any("stock_movement_applied" in line for line in logs.output))

    def test_stock_movements_are_append_only(self):
        _, movement = apply_stock_movement(
            product=self.product, branch_id=self.branch.id, quantity=3, performed_by_id=self.user.id
        )

        movement.reason = "rewritten"
        with self.assertRaises(ImmutableRecordError):
            movement.save()
        with self.assertRaises(ImmutableRecordError):
            movement.delete()

        movement.refresh_from_db()
        self.assertEqual(movement.reason, "")

    def test_update_product_unit_price(self):
        product = update_product_unit_price(self.product.id, Decimal("3.456"))

        self.assertEqual(product.price, Decimal("3.46"))
        self.product.refresh_from_db()
        self.assertEqual(self.product.price, Decimal("3.46"))

    def test_update_price_of_missing_product(self):
        with self.assertRaises(NotFoundError):
            update_product_unit_price(uuid.uuid4(), Decimal("1.00"))


class BranchScopedInventoryTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.branch_a = Branch.objects.create(code="A", name="Branch A")
        self.branch_b = Branch.objects.create(code="B", name="Branch B")

        self.sales_a = self.user_model.objects.create_user(
            username="sales-a",
            password="pass1234",
            branch=self.branch_a,
            role="sales",
        )
        self.manager = self.user_model.objects.create_user(
            username="manager",
            password="pass1234",
            role="manager",
        )

        self.product = Product.objects.create(sku="P-001", name="Shared Product", price=Decimal("10.00"))
        self.inactive_product = Product.objects.create(sku="P-OLD", name="Old Product", is_active=False)
        self.supplier = Supplier.objects.create(code="S-001", name="Supplier")

        _, self.move_a = apply_stock_movement(
            product=self.product, branch_id=self.branch_a.id, quantity=5, performed_by_id=self.manager.id
        )
        _, self.move_b = apply_stock_movement(
            product=self.product, branch_id=self.branch_b.id, quantity=7, performed_by_id=self.manager.id
        )

    def test_sales_user_sees_only_own_branch_stock(self):
        self.client.force_authenticate(user=self.sales_a)

        response = self.client.get("/api/v1/stock/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        branches = {item["branch"] for item in payload["results"]}
        self.assertEqual(branches, {str(self.branch_a.id)})
        self.assertEqual(payload["results"][0]["quantity"], "5.00")

    def test_manager_sees_all_branches_and_can_filter(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/stock/")
        self.assertEqual(response.json()["count"], 2)

        response = self.client.get("/api/v1/stock/", {"branch": str(self.branch_b.id)})
        results = response.json()["results"]
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0]["quantity"], "7.00")

    def test_movement_listing_is_branch_scoped(self):
        self.client.force_authenticate(user=self.sales_a)

        response = self.client.get("/api/v1/stock-movements/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertIn(str(self.move_a.id), ids)
        self.assertNotIn(str(self.move_b.id), ids)

    def test_sales_user_cannot_read_other_branch_movement_detail(self):
        self.client.force_authenticate(user=self.sales_a)

        response = self.client.get(f"/api/v1/stock-movements/{self.move_b.id}/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_catalog_lists_active_products_and_suppliers(self):
        self.client.force_authenticate(user=self.sales_a)

        products = self.client.get("/api/v1/products/").json()["results"]
        suppliers = self.client.get("/api/v1/suppliers/").json()["results"]

        self.assertEqual([item["sku"] for item in products], ["P-001"])
        self.assertEqual([item["code"] for item in suppliers], ["S-001"])

    def test_user_without_role_capability_is_denied(self):
        outsider = self.user_model.objects.create_user(username="outsider", password="pass1234", role="")
        self.client.force_authenticate(user=outsider)

        with self.assertLogs("security.authorization", level="WARNING") as logs:
            response = self.client.get("/api/v1/stock/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("inventory.view" in line for line in logs.output))
