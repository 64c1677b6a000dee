"""SQLModel table models — import here so metadata is populated."""

from tradefin.models.invoice import CreditRating, Invoice, InvoiceStatus  # noqa: F401
from tradefin.models.investment import Investment  # noqa: F401
from tradefin.models.verification import VerificationRecord  # noqa: F401
