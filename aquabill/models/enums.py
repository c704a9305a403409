from enum import Enum


class Role(str, Enum):
    OWNER = "owner"
    TENANT = "tenant"


class BillStatus(str, Enum):
    PENDING = "pending"
    PENDING_VERIFICATION = "pending_verification"
    PAID = "paid"


class PaymentMethod(str, Enum):
    GATEWAY = "gateway"
    PROOF_UPLOAD = "proof_upload"


class PaymentStatus(str, Enum):
    COMPLETED = "completed"
    PENDING_VERIFICATION = "pending_verification"
