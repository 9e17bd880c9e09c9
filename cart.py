"""
Client-side shopping cart.

The cart never touches the server: it holds product snapshots taken when an
item was added and the stock seen at that moment, and only produces the
payloads for /orders/validate-stock and /orders/create. `to_dict` and
`from_dict` back its local persistence between page loads.
"""
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

GST_RATE = 0.18
FLAT_SHIPPING = 50.0


def compute_prices(items_price: float) -> Dict[str, float]:
    """Checkout totals for an items subtotal: 18% GST, free shipping on any non-empty cart."""
    items_price = round(float(items_price), 2)
    shipping_price = 0.0 if items_price > 0 else FLAT_SHIPPING
    tax_price = round(items_price * GST_RATE, 2)
    return {
        "items_price": items_price,
        "tax_price": tax_price,
        "shipping_price": shipping_price,
        "total_price": round(items_price + tax_price + shipping_price, 2),
    }


@dataclass
class CartEntry:
    product_id: str
    name: str
    price: float
    image: str = ""
    quantity: int = 1
    max_stock: int = 0


@dataclass
class Cart:
    entries: Dict[str, CartEntry] = field(default_factory=dict)

    def add(self, product: dict) -> bool:
        """Add one unit of `product`; returns False when stock does not allow it."""
        product_id = product["id"]
        entry = self.entries.get(product_id)
        if entry is not None:
            if entry.quantity >= entry.max_stock:
                return False
            entry.quantity += 1
            return True
        stock = int(product.get("stock") or 0)
        if stock <= 0:
            return False
        self.entries[product_id] = CartEntry(
            product_id=product_id,
            name=product["name"],
            price=float(product["price"]),
            image=product.get("image") or "",
            quantity=1,
            max_stock=stock,
        )
        return True

    def remove(self, product_id: str) -> None:
        self.entries.pop(product_id, None)

    def update_quantity(self, product_id: str, quantity: int) -> None:
        if quantity <= 0:
            self.remove(product_id)
            return
        entry = self.entries.get(product_id)
        if entry is not None:
            entry.quantity = min(quantity, entry.max_stock)

    def clear(self) -> None:
        self.entries.clear()

    def total(self) -> float:
        return round(sum(e.price * e.quantity for e in self.entries.values()), 2)

    def count(self) -> int:
        return sum(e.quantity for e in self.entries.values())

    def contains(self, product_id: str) -> bool:
        return product_id in self.entries

    def quantity_of(self, product_id: str) -> int:
        entry = self.entries.get(product_id)
        return entry.quantity if entry else 0

    def is_max_quantity(self, product_id: str) -> bool:
        entry = self.entries.get(product_id)
        return entry is not None and entry.quantity >= entry.max_stock

    def stock_left(self, product_id: str) -> Optional[int]:
        entry = self.entries.get(product_id)
        if entry is None:
            return None
        return max(0, entry.max_stock - entry.quantity)

    # Checkout payloads

    def stock_check_items(self) -> List[dict]:
        return [
            {"product_id": e.product_id, "name": e.name, "quantity": e.quantity}
            for e in self.entries.values()
        ]

    def order_items(self) -> List[dict]:
        return [
            {"product_id": e.product_id, "name": e.name, "price": e.price, "image": e.image, "quantity": e.quantity}
            for e in self.entries.values()
        ]

    def prices(self) -> Dict[str, float]:
        return compute_prices(self.total())

    # Local persistence

    def to_dict(self) -> dict:
        return {"items": [asdict(e) for e in self.entries.values()]}

    @classmethod
    def from_dict(cls, data: dict) -> "Cart":
        cart = cls()
        for raw in (data or {}).get("items", []):
            entry = CartEntry(**raw)
            cart.entries[entry.product_id] = entry
        return cart
