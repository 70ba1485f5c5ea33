from rest_framework.routers import DefaultRouter

from inventory.views import PartViewSet, StockTransactionViewSet

router = DefaultRouter()
router.register(r"parts", PartViewSet, basename="part")
router.register(r"stock-transactions", StockTransactionViewSet, basename="stock-transaction")

urlpatterns = router.urls
