from src.models.billing import (  # noqa: F401
    ENTITLED_STATUSES,
    TERMINAL_STATUSES,
    BillingInterval,
    CreditAccount,
    CreditTransaction,
    DeadLetterStatus,
    PaymentKind,
    PaymentRecord,
    PaymentStatus,
    TransactionSource,
    TransactionType,
    signed_delta,
)
