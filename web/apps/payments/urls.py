from django.urls import path

from .views import LatestPaymentView, PaymentCallbackView, PaymentInitiateView

app_name = "payments"

urlpatterns = [
    path("initiate/", PaymentInitiateView.as_view(), name="payments-initiate"),
    path("<str:gateway>/callback/", PaymentCallbackView.as_view(), name="payments-callback"),
    path("orders/<uuid:oid>/", LatestPaymentView.as_view(), name="payments-latest"),
]
