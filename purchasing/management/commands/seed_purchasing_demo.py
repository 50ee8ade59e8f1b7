from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand

from core.models import Branch
from inventory.models import Product, Supplier


class Command(BaseCommand):
    help = "Seed a branch, one user per role, products and a supplier for local development."

    def add_arguments(self, parser):
        parser.add_argument("--password-suffix", default="1234", help="Appended to each username to form its password.")

    def handle(self, *args, **options):
        User = get_user_model()
        suffix = options["password_suffix"]

        branch, _ = Branch.objects.get_or_create(
            code="MAIN",
            defaults={"name": "Main Branch", "timezone": "UTC", "is_active": True},
        )

        users = {}
        for username, role, user_branch in (
            ("sales", User.Role.SALES, branch),
            ("finance", User.Role.FINANCE, None),
            ("manager", User.Role.MANAGER, None),
        ):
            user, created = User.objects.get_or_create(
                username=username,
                defaults={
                    "email": f"{username}@example.com",
                    "role": role,
                    "branch": user_branch,
                    "is_active": True,
                },
            )
            if created:
                user.set_password(f"{username}{suffix}")
                user.save(update_fields=["password"])
            users[username] = user

        supplier, _ = Supplier.objects.get_or_create(
            code="SUP-001",
            defaults={"name": "Default Supplier", "is_active": True},
        )

        products = [
            ("SKU-001", "Notebook A5", Decimal("2.50"), "Stationery"),
            ("SKU-002", "Ballpoint Pen", Decimal("0.80"), "Stationery"),
            ("SKU-003", "Desk Lamp", Decimal("18.00"), "Electronics"),
        ]
        for sku, name, price, category in products:
            Product.objects.get_or_create(
                sku=sku,
                defaults={"name": name, "price": price, "category": category, "is_active": True},
            )

        self.stdout.write(
            self.style.SUCCESS(
                f"Seeded branch {branch.code}, users {', '.join(sorted(users))}, "
                f"supplier {supplier.code} and {len(products)} products."
            )
        )
