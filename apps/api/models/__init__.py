"""Models package."""

from .user import User
from .credit_ledger import LedgerEvent
from .credit_package import CreditPackage
from .payment_transaction import PaymentTransaction
from .spending_limit import SpendingLimit
from .self_exclusion import SelfExclusion
