from rest_framework.routers import DefaultRouter

from apps.customizations.views import CustomizationRequestViewSet

router = DefaultRouter()
router.register("customizations", CustomizationRequestViewSet, basename="customization")

urlpatterns = router.urls
