from .inventory import Product, ProductUnit, StockMovement
from .sales import Sale, SaleItem, SoldProductUnit
from .suppliers import SupplierTransaction, SupplierTransactionItem, UnitEntry

__all__ = [
    'Product', 'ProductUnit', 'StockMovement',
    'Sale', 'SaleItem', 'SoldProductUnit',
    'SupplierTransaction', 'SupplierTransactionItem', 'UnitEntry',
]
