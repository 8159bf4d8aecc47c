"""ATA CRM — SQLAlchemy models."""
from crm.models.company import Client, Company, User
from crm.models.delivery_note import DeliveryNote
from crm.models.history import OrderHistory
from crm.models.order import Order
from crm.models.payment import Payment
from crm.models.purchase_order import PurchaseOrder
from crm.models.quotation import Quotation

__all__ = [
    "Company", "Client", "User",
    "Order",
    "Quotation",
    "PurchaseOrder",
    "Payment",
    "DeliveryNote",
    "OrderHistory",
]
