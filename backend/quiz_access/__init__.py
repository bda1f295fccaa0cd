"""
Quiz Access Module
Access control and credit settlement for quizzes and AI features

This module provides:
- Package reconciliation (live packages, entitled courses, access type)
- Quiz and AI access authorization
- Concurrency-safe atomic credit debits
- Append-only credit ledger
- Payment settlement for confirmed purchases

Collections used:
- users: Entitlement state and credit balance
- payments: Purchase records (read-mostly, flipped by settlement)
- packages: Purchasable entitlement templates
- quizzes: Quiz catalog (credit hours, question groups)
- questions: Moderation attribution
- credit_ledger: Immutable credit transaction log
"""

__version__ = "1.0.0"
