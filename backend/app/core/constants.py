"""Status vocabularies shared by models, services and routers."""

# User roles
ROLE_BUYER = "BUYER"
ROLE_SELLER = "SELLER"
ROLE_ADMIN = "ADMIN"

# Order lifecycle
ORDER_PENDING = "PENDING"
ORDER_CONFIRMED = "CONFIRMED"
ORDER_PREPARING = "PREPARING"
ORDER_READY = "READY"
ORDER_DELIVERED = "DELIVERED"
ORDER_COMPLETED = "COMPLETED"
ORDER_CANCELLED = "CANCELLED"

# Statuses a seller may set on an order
SELLER_ORDER_STATUSES = (ORDER_PENDING, ORDER_PREPARING, ORDER_READY, ORDER_DELIVERED, ORDER_CANCELLED)
# Orders in these statuses are closed for changes
FINAL_ORDER_STATUSES = (ORDER_CANCELLED, ORDER_COMPLETED)
# Statuses that prove the buyer received the goods (review eligibility)
RECEIVED_ORDER_STATUSES = (ORDER_DELIVERED, ORDER_COMPLETED)

# Payment
PAYMENT_PENDING = "PENDING"
PAYMENT_PAID = "PAID"
PAYMENT_FAILED = "FAILED"
FINAL_PAYMENT_STATUSES = (PAYMENT_PAID, PAYMENT_FAILED)

PAYMENT_METHOD_MPESA = "MPESA"
PAYMENT_METHOD_COD = "COD"
PAYMENT_METHODS = (PAYMENT_METHOD_MPESA, PAYMENT_METHOD_COD)

# Seller profile moderation
SELLER_PENDING = "PENDING"
SELLER_APPROVED = "APPROVED"
SELLER_REJECTED = "REJECTED"
SELLER_SUSPENDED = "SUSPENDED"
SELLER_STATUSES = (SELLER_PENDING, SELLER_APPROVED, SELLER_REJECTED, SELLER_SUSPENDED)

# Notification types
NOTIFY_ORDER = "ORDER"
NOTIFY_ORDER_STATUS = "ORDER_STATUS"
NOTIFY_PAYMENT = "PAYMENT"
NOTIFY_SELLER_STATUS = "SELLER_STATUS"
NOTIFY_ACCOUNT_FREEZE = "ACCOUNT_FREEZE"
NOTIFY_ACCOUNT_UNFREEZE = "ACCOUNT_UNFREEZE"

CURRENCY = "KES"
