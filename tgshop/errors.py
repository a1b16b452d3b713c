class ShopError(Exception):
    pass


class StockConflict(ShopError):
    """Stock went below the requested quantity between validation and decrement."""

    def __init__(self, item_id, name, available, requested):
        super().__init__(f"{name}: only {available} available (requested {requested})")
        self.item_id = item_id
        self.name = name
        self.available = available
        self.requested = requested


class DuplicateOrderNumber(ShopError):
    def __init__(self, order_number):
        super().__init__(f"Order number {order_number} already exists")
        self.order_number = order_number


class OrderNotFound(ShopError):
    def __init__(self, order_id):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class ItemNotFound(ShopError):
    def __init__(self, item_id):
        super().__init__(f"Item {item_id} not found")
        self.item_id = item_id


class StockAdjustmentError(ShopError):
    pass


class InvalidInitData(ShopError):
    pass
