from rest_framework.routers import DefaultRouter

from purchasing.views import PurchaseOrderViewSet

router = DefaultRouter()
router.register(r"purchase-orders", PurchaseOrderViewSet, basename="purchase-order")

urlpatterns = router.urls
