from __future__ import annotations


class MealcartError(Exception):
    """Base class for domain errors raised by the services layer."""


class ShoppingListNotFound(MealcartError):
    def __init__(self, shopping_list_id: str) -> None:
        super().__init__(f"Shopping list {shopping_list_id} not found")
        self.shopping_list_id = shopping_list_id


class ShoppingListItemNotFound(MealcartError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"Shopping list item {item_id} not found")
        self.item_id = item_id


class InvalidMergeDecision(MealcartError):
    pass


class ClassifierError(MealcartError):
    """The external ingredient classifier could not produce a usable answer."""


class UnitConversionError(MealcartError):
    pass
