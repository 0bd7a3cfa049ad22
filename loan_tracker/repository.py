"""
Loan Repository

Table-level access for loans, loan payments, categories and expenses on top
of an AsyncStorageInterface. Every read is scoped to the owning user.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, Tuple
import uuid

from .async_storage import AsyncStorageInterface
from .exceptions import DuplicateRecordError, LoanNotFoundError
from .expenses import Category, CategoryType, Expense, category_id_for
from .loans import Loan, LoanPayment, LoanStatus


class LoanRepository:
    """Typed access to the loan tracker tables"""

    LOANS_TABLE = "loans"
    PAYMENTS_TABLE = "loan_payments"
    CATEGORIES_TABLE = "categories"
    EXPENSES_TABLE = "expenses"

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage

    @property
    def supports_transactions(self) -> bool:
        return self.storage.supports_transactions

    def atomic(self):
        return self.storage.atomic()

    # Loans

    async def insert_loan(self, loan: Loan) -> Loan:
        _, created = await self.storage.insert_if_absent(self.LOANS_TABLE, loan.id, loan.to_dict())
        if not created:
            raise DuplicateRecordError(self.LOANS_TABLE, loan.id)
        return loan

    async def get_loan(self, loan_id: str, user_id: str) -> Optional[Loan]:
        data = await self.storage.load(self.LOANS_TABLE, loan_id)
        if data is None or data['user_id'] != user_id:
            return None
        return Loan.from_dict(data)

    async def list_loans(self, user_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        filters = {'user_id': user_id}
        if status is not None:
            filters['status'] = status.value
        loans = [Loan.from_dict(data) for data in await self.storage.find(self.LOANS_TABLE, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    async def update_loan(self, loan_id: str, fields: Dict[str, Any]) -> Loan:
        """Merge fields into a stored loan"""
        data = await self.storage.load(self.LOANS_TABLE, loan_id)
        if data is None:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        data.update(fields)
        await self.storage.save(self.LOANS_TABLE, loan_id, data)
        return Loan.from_dict(data)

    # Loan payments

    async def get_loan_payments(self, loan_id: str, user_id: str) -> List[LoanPayment]:
        """Recorded payments for a loan in payment_number order"""
        rows = await self.storage.find(self.PAYMENTS_TABLE, {'loan_id': loan_id, 'user_id': user_id})
        payments = [LoanPayment.from_dict(data) for data in rows]
        payments.sort(key=lambda payment: payment.payment_number)
        return payments

    async def insert_loan_payment(self, payment: LoanPayment) -> LoanPayment:
        """
        Insert a payment row.

        Payment ids are derived from (loan_id, payment_number), so a second
        insert for the same number raises DuplicateRecordError.
        """
        _, created = await self.storage.insert_if_absent(
            self.PAYMENTS_TABLE, payment.id, payment.to_dict()
        )
        if not created:
            raise DuplicateRecordError(self.PAYMENTS_TABLE, payment.id)
        return payment

    async def update_loan_payment(self, payment_id: str, fields: Dict[str, Any]) -> LoanPayment:
        data = await self.storage.load(self.PAYMENTS_TABLE, payment_id)
        if data is None:
            raise KeyError(f"Loan payment {payment_id} not found")
        data.update(fields)
        data['updated_at'] = datetime.now(timezone.utc).isoformat()
        await self.storage.save(self.PAYMENTS_TABLE, payment_id, data)
        return LoanPayment.from_dict(data)

    # Categories

    async def find_category(self, user_id: str, name: str,
                            category_type: CategoryType) -> Optional[Category]:
        data = await self.storage.load(
            self.CATEGORIES_TABLE, category_id_for(user_id, name, category_type)
        )
        return Category.from_dict(data) if data else None

    async def insert_category(self, category: Category) -> Category:
        _, created = await self.storage.insert_if_absent(
            self.CATEGORIES_TABLE, category.id, category.to_dict()
        )
        if not created:
            raise DuplicateRecordError(self.CATEGORIES_TABLE, category.id)
        return category

    async def find_or_create_category(self, user_id: str, name: str,
                                      category_type: CategoryType,
                                      color: str) -> Tuple[Category, bool]:
        """
        Return the user's category, creating it if absent.

        Check and insert are one storage operation keyed on the deterministic
        category id, so concurrent callers always end up with the same row.
        """
        now = datetime.now(timezone.utc)
        category = Category(
            id=category_id_for(user_id, name, category_type),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            name=name,
            type=category_type,
            color=color
        )
        data, created = await self.storage.insert_if_absent(
            self.CATEGORIES_TABLE, category.id, category.to_dict()
        )
        return Category.from_dict(data), created

    async def list_categories(self, user_id: str) -> List[Category]:
        rows = await self.storage.find(self.CATEGORIES_TABLE, {'user_id': user_id})
        return [Category.from_dict(data) for data in rows]

    # Expenses

    async def insert_expense(self, expense: Expense) -> Expense:
        if not expense.id:
            expense.id = str(uuid.uuid4())
        _, created = await self.storage.insert_if_absent(
            self.EXPENSES_TABLE, expense.id, expense.to_dict()
        )
        if not created:
            raise DuplicateRecordError(self.EXPENSES_TABLE, expense.id)
        return expense

    async def list_expenses(self, user_id: str) -> List[Expense]:
        rows = await self.storage.find(self.EXPENSES_TABLE, {'user_id': user_id})
        expenses = [Expense.from_dict(data) for data in rows]
        expenses.sort(key=lambda expense: expense.created_at)
        return expenses
