from .factories import OrderFactory, TransactionFactory

__all__ = ["OrderFactory", "TransactionFactory"]
