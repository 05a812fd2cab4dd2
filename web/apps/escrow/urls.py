from django.urls import path

from .views import (
    AcceptProposalView,
    ConfirmDeliveryView,
    OrderMessagesView,
    OrdersCollectionView,
    OrdersPingView,
    ProposeAgainView,
    RejectProposalView,
    RetrieveOrderView,
    SellerConfirmationView,
    SubmitPaymentView,
)

app_name = "escrow"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<uuid:oid>/messages/", OrderMessagesView.as_view(), name="orders-messages"),
    path("<uuid:oid>/accept/", AcceptProposalView.as_view(), name="orders-accept"),
    path("<uuid:oid>/reject/", RejectProposalView.as_view(), name="orders-reject"),
    path("<uuid:oid>/proposals/", ProposeAgainView.as_view(), name="orders-propose"),
    path("<uuid:oid>/payment/", SubmitPaymentView.as_view(), name="orders-payment"),
    path("<uuid:oid>/seller-confirmation/", SellerConfirmationView.as_view(), name="orders-seller-confirmation"),
    path("<uuid:oid>/delivery/", ConfirmDeliveryView.as_view(), name="orders-delivery"),
]
