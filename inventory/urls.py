from rest_framework.routers import DefaultRouter

from inventory.views import ProductViewSet, StockMovementViewSet, StockViewSet, SupplierViewSet

router = DefaultRouter()
router.register(r"products", ProductViewSet, basename="product")
router.register(r"suppliers", SupplierViewSet, basename="supplier")
router.register(r"stock", StockViewSet, basename="stock")
router.register(r"stock-movements", StockMovementViewSet, basename="stock-movement")

urlpatterns = router.urls
