"""
FireFund API package - modular FastAPI routers
"""

from . import auth, transactions, tours, receipts, qr, webhooks, admin

__all__ = ['auth', 'transactions', 'tours', 'receipts', 'qr', 'webhooks', 'admin']
