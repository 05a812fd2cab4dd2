from django.urls import include, path

from apps.escrow.views import RewardTotalView

urlpatterns = [
    path("api/orders/", include("apps.escrow.urls")),
    path("api/rewards/<str:user_id>/total/", RewardTotalView.as_view(), name="rewards-total"),
    path("", include("apps.monitoring.urls")),
]
