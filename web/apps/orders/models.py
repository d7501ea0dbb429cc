import uuid
from django.db import models
from django.utils import timezone


class OrderModel(models.Model):
    # UUID PK exposed by the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_number = models.CharField(max_length=32, unique=True, editable=False)

    class Status(models.TextChoices):
        PENDING = "pending"
        CONFIRMED = "confirmed"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending"
        COMPLETED = "completed"
        FAILED = "failed"
        REFUNDED = "refunded"

    class PaymentMethod(models.TextChoices):
        COD = "cod"
        ESEWA = "esewa"
        KHALTI = "khalti"

    buyer_id = models.CharField(max_length=64, db_index=True)
    shipping_address = models.JSONField(default=dict)
    payment_method = models.CharField(max_length=16, choices=PaymentMethod.choices)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    payment_transaction_id = models.CharField(max_length=128, null=True, blank=True)

    subtotal = models.DecimalField(max_digits=12, decimal_places=2)
    shipping_cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True)
    tracking_code = models.CharField(max_length=128, null=True, blank=True)
    # Catalog reservation holding this order's stock
    reservation_id = models.UUIDField(null=True, blank=True)

    # Not auto_now_add: the domain supplies the creation instant.
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)
    confirmed_at = models.DateTimeField(null=True, blank=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["buyer_id", "-created_at"], name="orders_buyer_recent")]

    def __str__(self):
        return f"{self.order_number} ({self.status})"


class OrderItemModel(models.Model):
    order = models.ForeignKey(OrderModel, related_name="items", on_delete=models.PROTECT)
    position = models.PositiveIntegerField()
    product_id = models.CharField(max_length=64)
    title = models.CharField(max_length=255)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    quantity = models.PositiveIntegerField()
    seller_id = models.CharField(max_length=64, db_index=True)

    class Meta:
        db_table = "order_items"
        ordering = ["position"]


class OrderSequence(models.Model):
    # One row per calendar year; incremented in place by the repository
    year = models.PositiveIntegerField(primary_key=True)
    last_value = models.BigIntegerField(default=0)

    class Meta:
        db_table = "order_sequences"


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=255, unique=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
