from newsai.models.credit import CreditRefund, ProcessedPaymentEvent, User
from newsai.models.kv import KeyValueEntry

__all__ = ["CreditRefund", "KeyValueEntry", "ProcessedPaymentEvent", "User"]
