# Automatically load all models so metadata knows them
from tuition_billing.models.audit_log_model import AuditLog
from tuition_billing.models.discount_model import (
    DiscountAssignment,
    DiscountDefinition,
    ReferralBonus,
    SiblingDiscountState,
)
from tuition_billing.models.invoice_model import Invoice
from tuition_billing.models.ledger_model import LedgerAccount, LedgerEntry, LedgerTransaction
from tuition_billing.models.payment_model import (
    Payment,
    PaymentAllocation,
    PaymentDeletion,
    PaymentModification,
)
from tuition_billing.models.roster_model import (
    Attendance,
    ClassGroup,
    ClassSession,
    Enrollment,
    Family,
    Student,
    Teacher,
)
from tuition_billing.models.settlement_model import Settlement
from tuition_billing.models.user_model import User, UserRole
