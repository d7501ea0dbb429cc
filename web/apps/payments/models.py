import uuid
from django.db import models
from django.utils import timezone

from apps.orders.models import OrderModel


class PaymentAttemptModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(OrderModel, related_name="payment_attempts", on_delete=models.PROTECT)

    class Gateway(models.TextChoices):
        ESEWA = "esewa"
        KHALTI = "khalti"

    class Status(models.TextChoices):
        PENDING = "pending"
        COMPLETED = "completed"
        FAILED = "failed"
        REFUNDED = "refunded"

    gateway = models.CharField(max_length=16, choices=Gateway.choices)
    # eSewa pid or Khalti pidx
    transaction_ref = models.CharField(max_length=128)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    gateway_response = models.JSONField(default=dict, blank=True)
    error_message = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "payment_attempts"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(fields=["gateway", "transaction_ref"], name="payment_attempt_ref_unique"),
        ]
        indexes = [models.Index(fields=["order", "-created_at"], name="payment_attempt_order_recent")]

    def __str__(self):
        return f"{self.gateway}:{self.transaction_ref} ({self.status})"
