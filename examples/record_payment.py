#!/usr/bin/env python3
"""
Example: Creating a loan and recording payments

Walks through loan creation, schedule projection, payment recording with
an interest expense, and the audit trail, using the storage backend picked
by LOAN_TRACKER_STORAGE_BACKEND.
"""

import asyncio
import os
import sys
from datetime import date

# Add the loan tracker package to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from loan_tracker.amortization import calculate_loan_details
from loan_tracker.async_storage import create_async_storage
from loan_tracker.audit import create_audit_trail
from loan_tracker.config import TrackerConfig
from loan_tracker.exceptions import LoanTrackerError, PaymentValidationError
from loan_tracker.loans import LoanManager
from loan_tracker.logging_config import setup_logging_from_config
from loan_tracker.payments import PaymentRecorder, PaymentRequest
from loan_tracker.receipts import create_receipt_store
from loan_tracker.repository import LoanRepository


async def main():
    print("💳 Loan Tracker - Payment Recording Example")
    print("=" * 60)

    # 1. Configuration
    print("\n1. 🔧 Configuration Setup")
    config = TrackerConfig()
    setup_logging_from_config(config)
    print(f"   Storage backend: {config.storage_backend}")
    print(f"   Receipt store: {config.receipts_base_url or 'in-memory'}")

    # 2. Components
    print("\n2. 🏗️  Tracker Initialization")
    storage = create_async_storage(config)
    repository = LoanRepository(storage)
    audit_trail = create_audit_trail(storage, config)
    manager = LoanManager(repository, audit_trail, config)
    recorder = PaymentRecorder(
        repository, create_receipt_store(config), audit_trail, config,
        on_recorded=lambda recorded: print(f"   🔄 Refresh: balance now {recorded.loan.current_balance.to_string()}")
    )
    print(f"   ✅ Transactions supported: {repository.supports_transactions}")

    # 3. Loan terms
    print("\n3. 📐 Loan Terms")
    details = calculate_loan_details(12000, 6, 12)
    print(f"   Monthly payment: {details.monthly_payment:.2f}")
    print(f"   Total interest: {details.total_interest:.2f}")

    loan = await manager.create_loan(
        user_id="demo-user",
        lender_name="First Community Bank",
        principal_amount=12000,
        interest_rate=6,
        term_months=12,
        start_date=date.today()
    )
    print(f"   ✅ Loan created: {loan.loan_number}")

    # 4. Payments
    print("\n4. 💰 Recording Payments")
    for _ in range(3):
        payments = await manager.get_loan_payments(loan.id, loan.user_id)
        request = PaymentRequest.for_loan(loan, manager.next_scheduled_payment(loan, payments), payments)
        try:
            recorded = await recorder.submit(request)
        except PaymentValidationError as e:
            print(f"   ❌ Invalid payment: {e}")
            break
        except LoanTrackerError as e:
            print(f"   ❌ Payment failed: {e}")
            break
        loan = recorded.loan
        print(f"   ✅ Payment #{recorded.payment.payment_number}: "
              f"{recorded.payment.principal_amount.to_string()} principal, "
              f"{recorded.payment.interest_amount.to_string()} interest")

    # 5. Overpayment is rejected without writing anything
    print("\n5. 🚫 Overpayment")
    try:
        await recorder.submit(PaymentRequest(loan, date.today(), loan.current_balance.amount + 1))
    except PaymentValidationError as e:
        print(f"   ✅ Rejected: {e}")

    # 6. Status
    print("\n6. 📊 Loan Status")
    print(f"   Balance: {loan.current_balance.to_string()}")
    print(f"   Progress: {loan.progress:.1f}%")
    print(f"   Interest paid: {loan.total_interest_paid.to_string()}")
    integrity = await audit_trail.verify_integrity()
    print(f"   Audit events: {integrity['total_events']} (valid: {integrity['valid']})")

    # 7. Cleanup
    print("\n7. 🧹 Cleanup")
    await storage.close()
    print("   ✅ Storage connection closed")

    print("\n🎉 Example completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
