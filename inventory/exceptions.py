from rest_framework import status
from rest_framework.exceptions import APIException


class InventoryError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Inventory operation failed."
    default_code = "inventory_error"


class InvalidTransactionType(InventoryError):
    default_detail = "Invalid transaction type."
    default_code = "invalid_transaction_type"

    def __init__(self, transaction_type):
        super().__init__(f"Invalid transaction type: {transaction_type}")


class InvalidTransactionState(InventoryError):
    default_detail = "Stock transaction is not in a valid state for this operation."
    default_code = "invalid_state"


class DepartmentScopeViolation(InventoryError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "You can only update inventory for parts in your department."
    default_code = "department_scope_violation"


class PartNotFound(InventoryError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Part not found."
    default_code = "part_not_found"


class InsufficientStock(InventoryError):
    default_detail = "Insufficient stock."
    default_code = "insufficient_stock"

    def __init__(self, part, current_quantity, quantity_change):
        self.current_quantity = current_quantity
        self.quantity_change = quantity_change
        super().__init__(
            f"Insufficient stock for {part.part_number}. Current: {current_quantity}, requested change: {quantity_change}"
        )


class InventoryValidationError(InventoryError):
    default_detail = "Invalid inventory change."
    default_code = "validation_error"


class PersistenceError(InventoryError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Failed to persist inventory change."
    default_code = "persistence_error"


class StockUnavailable(InventoryError):
    default_detail = "Insufficient stock for one or more items."
    default_code = "stock_unavailable"

    def __init__(self, issues):
        self.issues = issues
        super().__init__({"detail": self.default_detail, "issues": issues})
