"""
Expense Records

Categories and expenses as stored by the tracker. Loan payments only ever
create one kind of each: the per-user "Loan Interest" expense category and
the interest expense for a payment.
"""

from datetime import datetime, date
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Any, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageRecord

# Fixed namespace so category ids are stable across processes
CATEGORY_NAMESPACE = uuid.UUID("6f1c7d2e-3b8a-4e53-9a61-2c4d8f0b7e15")


class CategoryType(Enum):
    EXPENSE = "expense"
    INCOME = "income"


def category_id_for(user_id: str, name: str, category_type: CategoryType) -> str:
    """
    Deterministic id for a (user, name, type) category.

    Used as the primary key so that insert-if-absent on it behaves like a
    unique constraint on the triple.
    """
    key = f"{user_id}:{name.strip().lower()}:{category_type.value}"
    return str(uuid.uuid5(CATEGORY_NAMESPACE, key))


@dataclass
class Category(StorageRecord):
    """Expense or income bucket owned by a user"""
    user_id: str
    name: str
    type: CategoryType
    color: str

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['type'] = self.type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Category':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            name=data['name'],
            type=CategoryType(data['type']),
            color=data['color']
        )


@dataclass
class Expense(StorageRecord):
    """A spend booked against a category"""
    user_id: str
    category_id: str
    amount: Money
    date: date
    description: str
    loan_payment_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'user_id': self.user_id,
            'category_id': self.category_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'date': self.date.isoformat(),
            'description': self.description,
            'loan_payment_id': self.loan_payment_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Expense':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            category_id=data['category_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            date=date.fromisoformat(data['date']),
            description=data['description'],
            loan_payment_id=data.get('loan_payment_id')
        )


def interest_expense_description(loan_number: str, lender_name: str, payment_number: int) -> str:
    return f"Interest payment for {loan_number} - {lender_name} (Payment #{payment_number})"
