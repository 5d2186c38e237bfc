from app.models.user import User
from app.models.order import Order, OrderItem
# Shiprocket fulfillment
from app.models.shipment import ShipmentStatus, WebhookFailure
